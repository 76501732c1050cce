"""
Fixed-Effects Poisson Fitter
============================
Thin adapter over statsmodels GLM: city and year-week fixed effects enter as
indicator columns, log(population) as the offset. The result is reduced to an
immutable ``FittedModel`` holding only what downstream stages consume:

- coefficients / covariance over the exposure + control regressors
- additive fixed-effect contributions per group key (reference level = 0)
- the intercept and the offset column name

Fitting follows the quasi-Poisson convention (scale='X2') with city-clustered
covariance, falling back to the model-based covariance when the robust
sandwich cannot be computed.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence
import logging

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.genmod.generalized_linear_model import GLM
from statsmodels.genmod.families import Poisson

from .config import Config, ModelSpec
from .errors import FittingError, MissingRequiredColumnError
from .panel import validate_panel

logger = logging.getLogger("flood_attribution.fe_poisson")


@dataclass(frozen=True)
class FittedModel:
    """Read-only output of the fixed-effects Poisson fit.

    The freeze is shallow: ``coefficients``, ``covariance`` and the lookup
    dicts are private copies taken at construction, but they are still
    mutable pandas / dict objects. Nothing in this package writes to them,
    and ``coef``, ``cov`` and ``se`` return fresh arrays callers may modify.
    """

    coefficients: pd.Series
    covariance: pd.DataFrame
    fixed_effects: Mapping[str, Mapping[Any, float]]
    intercept: float = 0.0
    offset: Optional[str] = None
    n_obs: int = 0
    dispersion: float = 1.0
    aic: Optional[float] = None
    converged: bool = True
    cov_type: str = 'nonrobust'
    meta: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        coefs = pd.Series(self.coefficients, dtype=float).copy()
        cov = pd.DataFrame(self.covariance, dtype=float).copy()
        names = list(coefs.index)
        if set(cov.index) != set(names) or set(cov.columns) != set(names):
            raise ValueError(
                "Covariance must be indexed by the coefficient names; "
                f"coefficients={names}, covariance={list(cov.index)}"
            )
        cov = cov.loc[names, names]
        if not np.allclose(cov.to_numpy(), cov.to_numpy().T, rtol=1e-8, atol=1e-12, equal_nan=True):
            logger.warning("Covariance matrix is not symmetric; symmetrising")
            values = cov.to_numpy()
            cov = pd.DataFrame((values + values.T) / 2, index=names, columns=names)
        frozen_fe = {str(dim): dict(lookup) for dim, lookup in self.fixed_effects.items()}
        object.__setattr__(self, 'coefficients', coefs)
        object.__setattr__(self, 'covariance', cov)
        object.__setattr__(self, 'fixed_effects', frozen_fe)
        object.__setattr__(self, 'meta', dict(self.meta))

    @property
    def regressors(self):
        return list(self.coefficients.index)

    def _check_terms(self, terms: Sequence[str]) -> None:
        missing = [t for t in terms if t not in self.coefficients.index]
        if missing:
            raise MissingRequiredColumnError(missing, self.coefficients.index)

    def coef(self, terms: Sequence[str]) -> np.ndarray:
        """Coefficient vector for ``terms`` in the given order."""
        self._check_terms(terms)
        return self.coefficients.loc[list(terms)].to_numpy(dtype=float)

    def cov(self, terms: Sequence[str]) -> np.ndarray:
        """Covariance submatrix Sigma_K for ``terms`` in the given order."""
        self._check_terms(terms)
        terms = list(terms)
        return self.covariance.loc[terms, terms].to_numpy(dtype=float)

    def se(self, terms: Sequence[str]) -> np.ndarray:
        return np.sqrt(np.clip(np.diag(self.cov(terms)), 0, None))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'coefficients': {k: float(v) for k, v in self.coefficients.items()},
            'covariance': self.covariance.to_numpy().tolist(),
            'regressors': list(self.coefficients.index),
            # key/value pairs keep integer year-week keys intact through JSON
            'fixed_effects': {
                dim: [[k, float(v)] for k, v in lookup.items()]
                for dim, lookup in self.fixed_effects.items()
            },
            'intercept': float(self.intercept),
            'offset': self.offset,
            'n_obs': int(self.n_obs),
            'dispersion': float(self.dispersion),
            'aic': None if self.aic is None else float(self.aic),
            'converged': bool(self.converged),
            'cov_type': self.cov_type,
            'meta': dict(self.meta),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'FittedModel':
        names = list(d['regressors'])
        return cls(
            coefficients=pd.Series(d['coefficients'], dtype=float).loc[names],
            covariance=pd.DataFrame(np.asarray(d['covariance'], dtype=float), index=names, columns=names),
            fixed_effects={dim: {k: v for k, v in pairs} for dim, pairs in d['fixed_effects'].items()},
            intercept=float(d.get('intercept', 0.0)),
            offset=d.get('offset'),
            n_obs=int(d.get('n_obs', 0)),
            dispersion=float(d.get('dispersion', 1.0)),
            aic=d.get('aic'),
            converged=bool(d.get('converged', True)),
            cov_type=d.get('cov_type', 'nonrobust'),
            meta=d.get('meta', {}),
        )


# =============================================================================
# DESIGN MATRIX
# =============================================================================

def fixed_effect_dummies(values: pd.Series, dim: str):
    """
    Indicator columns for one fixed-effect dimension (first level dropped).

    Returns:
    --------
    (dummies DataFrame, list of (column name, group key) for the kept levels,
     reference key)
    """
    cat = pd.Categorical(values)
    dummies = pd.get_dummies(cat, drop_first=True, dtype=float)
    categories = cat.categories.tolist()
    keys = categories[1:]
    names = [f'fe_{dim}[{i}]' for i in range(1, len(cat.categories))]
    dummies.columns = names
    dummies.index = values.index
    return dummies, list(zip(names, keys)), categories[0]


def build_design(panel: pd.DataFrame, spec: ModelSpec):
    """Regressors + fixed-effect indicators + constant."""
    blocks = [panel[list(spec.regressors)].astype(float)]
    fe_columns = {}
    for dim in spec.fixed_effects:
        dummies, name_keys, ref_key = fixed_effect_dummies(panel[dim], dim)
        blocks.append(dummies)
        fe_columns[dim] = (name_keys, ref_key)
    X = pd.concat(blocks, axis=1)
    X = sm.add_constant(X, has_constant='add')
    return X, fe_columns


# =============================================================================
# FIT
# =============================================================================

def fit_poisson_fe(
    panel: pd.DataFrame,
    spec: ModelSpec,
    cov_type: str = Config.COV_TYPE,
    scale: Optional[str] = Config.SCALE,
    max_iter: int = Config.MAX_ITER,
) -> FittedModel:
    """
    Fit the Poisson fixed-effects model described by ``spec``.

    Parameters:
    -----------
    panel : Prepared Observation panel
    spec : ModelSpec from build_panel
    cov_type : 'cluster' (on city), 'HC1', or 'nonrobust'
    scale : 'X2' for quasi-Poisson dispersion, None for pure Poisson
    max_iter : IRLS iteration cap

    Returns:
    --------
    FittedModel

    Raises:
    -------
    MissingRequiredColumnError : panel lacks a column the ModelSpec names
    FittingError : GLM fit failed
    """
    validate_panel(panel, spec)

    y = panel[spec.response].astype(float)
    X, fe_columns = build_design(panel, spec)
    offset = panel[spec.offset].to_numpy(dtype=float) if spec.offset else None

    fit_kwargs = {'maxiter': max_iter}
    if scale is not None:
        fit_kwargs['scale'] = scale

    robust_kwargs = {}
    if cov_type == 'cluster':
        groups = pd.Categorical(panel[spec.fixed_effects[0]]).codes
        robust_kwargs = {'cov_type': 'cluster', 'cov_kwds': {'groups': groups}}
    elif cov_type != 'nonrobust':
        robust_kwargs = {'cov_type': cov_type}

    used_cov_type = cov_type
    try:
        model = GLM(y, X, family=Poisson(), offset=offset)
        try:
            res = model.fit(**fit_kwargs, **robust_kwargs)
        except np.linalg.LinAlgError:
            logger.warning("%s covariance failed, falling back to non-robust", cov_type)
            res = model.fit(**fit_kwargs)
            used_cov_type = 'nonrobust'
    except Exception as e:
        raise FittingError(f"Poisson fixed-effects fit failed: {type(e).__name__}: {e}") from e

    if not res.converged:
        logger.warning("GLM did not fully converge after %d iterations", max_iter)

    params = res.params
    cov = res.cov_params()
    regressors = list(spec.regressors)
    missing = [r for r in regressors if r not in params.index or not np.isfinite(params[r])]
    if missing:
        raise FittingError(f"Fit produced no finite coefficient for {missing}")

    fixed_effects = {}
    for dim, (name_keys, ref_key) in fe_columns.items():
        lookup = {ref_key: 0.0}
        for name, key in name_keys:
            lookup[key] = float(params[name])
        fixed_effects[dim] = lookup

    try:
        aic = float(res.aic)
    except (AttributeError, ValueError):
        aic = None

    fitted = FittedModel(
        coefficients=params.loc[regressors],
        covariance=cov.loc[regressors, regressors],
        fixed_effects=fixed_effects,
        intercept=float(params['const']),
        offset=spec.offset,
        n_obs=int(res.nobs),
        dispersion=float(res.scale),
        aic=aic,
        converged=bool(res.converged),
        cov_type=used_cov_type,
        meta={'response': spec.response, 'exposure_terms': list(spec.exposure_terms)},
    )
    logger.info(
        "Fitted %d obs, %d regressors, dispersion=%.3f, cov_type=%s",
        fitted.n_obs, len(regressors), fitted.dispersion, used_cov_type,
    )
    return fitted
