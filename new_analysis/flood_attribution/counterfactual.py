"""
Counterfactual Predictor
========================
Fitted case counts under overrides of the exposure variables.

The linear predictor for row i is

    eta_i = intercept + sum_r beta_r * x_ir + FE_city(i) + FE_week(i) + offset_i

with ``overrides[r]`` replacing x_ir where given. Fixed effects and offset are
evaluated identically in every call, so the ratio of two predictions on the
same row depends on the overridden exposure terms only.
"""

from typing import Any, Dict, Mapping, Optional, Sequence
import logging
import warnings

import numpy as np
import pandas as pd

from .config import ModelSpec
from .errors import MissingRequiredColumnError, UnmatchedGroupKeyWarning
from .fe_poisson import FittedModel

logger = logging.getLogger("flood_attribution.counterfactual")


def zero_exposure_overrides(terms: Sequence[str]) -> Dict[str, float]:
    """Counterfactual "no flood": every exposure term set to 0."""
    return {t: 0.0 for t in terms}


def sd_scenario_overrides(spec: ModelSpec, sd: float) -> Dict[str, float]:
    """Current exposure set to ``sd``, all lags to 0."""
    overrides = {spec.current_term: float(sd)}
    overrides.update({t: 0.0 for t in spec.lag_terms})
    return overrides


def _column_values(rows: pd.DataFrame, name: str, overrides: Mapping[str, Any]) -> Optional[np.ndarray]:
    n = len(rows)
    if name in overrides:
        value = np.asarray(overrides[name], dtype=float)
        if value.ndim > 0 and value.shape[0] != n:
            raise ValueError(f"Override for {name} has {value.shape[0]} values, expected {n}")
        return np.broadcast_to(value, (n,)).astype(float)
    if name in rows.columns:
        return rows[name].to_numpy(dtype=float)
    return None


def fixed_effect_contribution(model: FittedModel, rows: pd.DataFrame) -> np.ndarray:
    """Sum of fixed-effect contributions per row; unseen keys contribute 0."""
    total = np.zeros(len(rows), dtype=float)
    for dim, lookup in model.fixed_effects.items():
        if dim not in rows.columns:
            logger.debug("Rows carry no %s column; its fixed effect contributes 0", dim)
            continue
        contrib = rows[dim].map(lookup)
        unmatched = contrib.isna()
        if unmatched.any():
            keys = rows.loc[unmatched, dim].unique()[:5]
            msg = (f"{int(unmatched.sum())} row(s) with {dim} keys absent from the fit "
                   f"(e.g. {list(keys)}); treated as 0")
            logger.warning(msg)
            warnings.warn(msg, UnmatchedGroupKeyWarning, stacklevel=3)
        total += contrib.fillna(0.0).to_numpy(dtype=float)
    return total


def linear_predictor(
    model: FittedModel,
    rows: pd.DataFrame,
    overrides: Optional[Mapping[str, Any]] = None,
) -> np.ndarray:
    """
    Log expected count for each row.

    Parameters:
    -----------
    model : FittedModel
    rows : Observation rows (panel or a subset / constructed rows)
    overrides : {regressor: scalar or per-row array} replacing row values

    Returns:
    --------
    eta : 1D array, one value per row
    """
    overrides = dict(overrides or {})
    unknown = [k for k in overrides if k not in model.coefficients.index]
    if unknown:
        raise MissingRequiredColumnError(unknown, model.coefficients.index)

    eta = np.full(len(rows), model.intercept, dtype=float)
    for name, beta in model.coefficients.items():
        values = _column_values(rows, name, overrides)
        if values is None:
            logger.debug("Regressor %s not in rows; skipped", name)
            continue
        eta += beta * values

    eta += fixed_effect_contribution(model, rows)

    if model.offset is not None:
        if model.offset not in rows.columns:
            raise MissingRequiredColumnError([model.offset], rows.columns)
        eta += rows[model.offset].to_numpy(dtype=float)
    return eta


def predict(
    model: FittedModel,
    rows: pd.DataFrame,
    overrides: Optional[Mapping[str, Any]] = None,
) -> np.ndarray:
    """Expected case counts, exp(linear predictor)."""
    return np.exp(linear_predictor(model, rows, overrides))


def counterfactual_pair(
    model: FittedModel,
    rows: pd.DataFrame,
    counterfactual_overrides: Mapping[str, Any],
    factual_overrides: Optional[Mapping[str, Any]] = None,
) -> pd.DataFrame:
    """
    Factual and counterfactual predictions for the same rows.

    Returns:
    --------
    DataFrame (index aligned with rows) with predicted_factual and
    predicted_counterfactual columns
    """
    factual = predict(model, rows, factual_overrides)
    counterfactual = predict(model, rows, counterfactual_overrides)
    return pd.DataFrame(
        {'predicted_factual': factual, 'predicted_counterfactual': counterfactual},
        index=rows.index,
    )
