"""
Effect & Interval Engine
========================
Point estimates and delta-method confidence intervals for the nonlinear
quantities derived from the fitted flood coefficients.

Key quantities (K = selected exposure terms, Sigma_K their covariance):

1. Total effect        theta   = w' beta_K            Var = w' Sigma_K w
2. Per-observation      theta_i = x_i' beta_K          Var = x_i' Sigma_K x_i
3. Attributable frac.  PAF     = 1 - exp(-theta)      Var ~ exp(-theta)^2 Var(theta)
4. Rate ratio          RR      = exp(theta)           pct change = (RR - 1) * 100
5. Attributable cases  PAF * observed cases, or factual - counterfactual

The variances are full quadratic forms: the lag coefficients are correlated
through shared flood events, so cross terms are never dropped.

PAF, RR and percent change are strictly increasing in theta, so the interval
endpoints map directly: theta_lower -> lower, theta_upper -> upper. Every
transformed interval is checked for lower <= point <= upper before it leaves
this module.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd
from scipy import stats

from .config import AnalysisConfig, Config, ModelSpec, z_value
from .counterfactual import counterfactual_pair, zero_exposure_overrides
from .errors import (
    DegenerateExposureError,
    InvalidBoundOrderingError,
    SingularCovarianceError,
)
from .fe_poisson import FittedModel

logger = logging.getLogger("flood_attribution.effects")


# =============================================================================
# ESTIMATE RECORD
# =============================================================================

def check_bound_ordering(lower, point, upper, name: str = 'estimate',
                         tol: float = Config.BOUND_TOLERANCE) -> None:
    """
    Assert lower <= point <= upper elementwise (NaN fails the check).

    Raises:
    -------
    InvalidBoundOrderingError
    """
    lower = np.asarray(lower, dtype=float)
    point = np.asarray(point, dtype=float)
    upper = np.asarray(upper, dtype=float)
    slack = tol * (1.0 + np.abs(point))
    ok = (lower <= point + slack) & (point <= upper + slack)
    if not np.all(ok):
        bad = np.flatnonzero(~np.atleast_1d(ok))
        i = int(bad[0])
        lo, pt, hi = (np.atleast_1d(a)[i] for a in (lower, point, upper))
        raise InvalidBoundOrderingError(
            f"{name}: interval ordering violated at {len(bad)} position(s), "
            f"first at {i}: lower={lo}, point={pt}, upper={hi}"
        )


@dataclass(frozen=True)
class EffectEstimate:
    """A derived quantity with its standard error and confidence interval."""

    name: str
    point: float
    se: float
    ci_lower: float
    ci_upper: float
    scale: str = 'log'
    flags: Tuple[str, ...] = ()

    def __post_init__(self):
        check_bound_ordering(self.ci_lower, self.point, self.ci_upper, self.name)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d['flags'] = list(self.flags)
        if self.scale == 'paf':
            d['point_pct'] = self.point * 100
            d['se_pct'] = self.se * 100
            d['ci_lower_pct'] = self.ci_lower * 100
            d['ci_upper_pct'] = self.ci_upper * 100
        return d


# =============================================================================
# QUADRATIC FORMS
# =============================================================================

def check_covariance(cov: np.ndarray, name: str = 'Sigma_K',
                     max_condition: float = Config.MAX_COVARIANCE_CONDITION) -> np.ndarray:
    """
    Validate a covariance submatrix for quadratic-form evaluation.

    Rejects non-finite, asymmetric, indefinite, singular and ill-conditioned
    matrices rather than letting them produce NaN or negative variances.
    """
    cov = np.atleast_2d(np.asarray(cov, dtype=float))
    if cov.ndim != 2 or cov.shape[0] != cov.shape[1]:
        raise SingularCovarianceError(f"{name}: covariance must be square, got shape {cov.shape}")
    if not np.all(np.isfinite(cov)):
        raise SingularCovarianceError(f"{name}: covariance has non-finite entries")
    if not np.allclose(cov, cov.T, rtol=1e-8, atol=1e-14):
        raise SingularCovarianceError(f"{name}: covariance is not symmetric")

    eig = np.linalg.eigvalsh(cov)
    top = float(np.max(np.abs(eig))) if eig.size else 0.0
    if top == 0.0:
        raise SingularCovarianceError(f"{name}: covariance is identically zero")
    if eig.min() < -1e-10 * top:
        raise SingularCovarianceError(f"{name}: covariance is not positive semi-definite "
                                      f"(min eigenvalue {eig.min():.3g})")
    if eig.min() <= 0 or top / eig.min() > max_condition:
        raise SingularCovarianceError(f"{name}: covariance is singular or ill-conditioned "
                                      f"(eigenvalues {eig.min():.3g} .. {top:.3g})")
    return cov


def quadratic_form_variance(weights, cov: np.ndarray) -> float:
    """Var(w' beta) = w' Sigma w."""
    w = np.atleast_1d(np.asarray(weights, dtype=float))
    var = float(w @ cov @ w)
    return max(var, 0.0)


def row_quadratic_forms(X: np.ndarray, cov: np.ndarray) -> np.ndarray:
    """x_i' Sigma x_i for every row of X."""
    X = np.atleast_2d(np.asarray(X, dtype=float))
    var = np.einsum('ij,jk,ik->i', X, cov, X)
    return np.clip(var, 0.0, None)


# =============================================================================
# LINEAR COMBINATIONS OF COEFFICIENTS
# =============================================================================

def linear_combination(
    model: FittedModel,
    terms: Sequence[str],
    weights: Optional[Sequence[float]] = None,
    ci_level: float = Config.CI_LEVEL,
    name: Optional[str] = None,
) -> EffectEstimate:
    """
    theta = w' beta_K with SE sqrt(w' Sigma_K w) and a normal CI.

    Parameters:
    -----------
    model : FittedModel
    terms : Coefficient subset K
    weights : Weight per term (default all ones: the total effect)
    ci_level : Confidence level

    Returns:
    --------
    EffectEstimate on the log (linear predictor) scale
    """
    terms = list(terms)
    w = np.ones(len(terms)) if weights is None else np.asarray(weights, dtype=float)
    if w.shape != (len(terms),):
        raise ValueError(f"Expected {len(terms)} weights, got shape {w.shape}")
    beta = model.coef(terms)
    cov = check_covariance(model.cov(terms), name=f"Sigma[{', '.join(terms)}]")

    theta = float(w @ beta)
    se = float(np.sqrt(quadratic_form_variance(w, cov)))
    z = z_value(ci_level)
    return EffectEstimate(
        name=name or f"sum({', '.join(terms)})",
        point=theta,
        se=se,
        ci_lower=theta - z * se,
        ci_upper=theta + z * se,
        scale='log',
    )


def total_effect(model: FittedModel, terms: Sequence[str],
                 ci_level: float = Config.CI_LEVEL) -> EffectEstimate:
    """Sum of the selected coefficients (e.g. current + 4 lags)."""
    return linear_combination(model, terms, None, ci_level, name='total_effect')


def coefficient_effect(model: FittedModel, term: str,
                       ci_level: float = Config.CI_LEVEL) -> EffectEstimate:
    return linear_combination(model, [term], None, ci_level, name=term)


# =============================================================================
# MONOTONE TRANSFORMS
# =============================================================================

def paf_transform(theta, theta_lower, theta_upper):
    """
    PAF = 1 - exp(-theta) applied to point and bounds, clipped to [0, 1].

    Increasing in theta: theta_lower gives the lower PAF bound.
    """
    lo_clip, hi_clip = Config.PAF_BOUNDS
    paf = np.clip(-np.expm1(-np.asarray(theta, dtype=float)), lo_clip, hi_clip)
    paf_lower = np.clip(-np.expm1(-np.asarray(theta_lower, dtype=float)), lo_clip, hi_clip)
    paf_upper = np.clip(-np.expm1(-np.asarray(theta_upper, dtype=float)), lo_clip, hi_clip)
    return paf, paf_lower, paf_upper


def paf_from_effect(effect: EffectEstimate) -> EffectEstimate:
    """Population attributable fraction with delta-method SE."""
    paf, lower, upper = paf_transform(effect.point, effect.ci_lower, effect.ci_upper)
    se = float(np.exp(-effect.point) * effect.se)
    flags = tuple(effect.flags)
    raw = -np.expm1(-effect.point)
    if raw < Config.PAF_BOUNDS[0] or raw > Config.PAF_BOUNDS[1]:
        flags += ('clipped',)
    return EffectEstimate(
        name=f"paf[{effect.name}]",
        point=float(paf),
        se=se,
        ci_lower=float(lower),
        ci_upper=float(upper),
        scale='paf',
        flags=flags,
    )


def rate_ratio(effect: EffectEstimate) -> EffectEstimate:
    """RR = exp(theta), CI from exponentiated endpoints."""
    rr = float(np.exp(effect.point))
    return EffectEstimate(
        name=f"rr[{effect.name}]",
        point=rr,
        se=rr * effect.se,
        ci_lower=float(np.exp(effect.ci_lower)),
        ci_upper=float(np.exp(effect.ci_upper)),
        scale='rr',
        flags=tuple(effect.flags),
    )


def percent_change(effect: EffectEstimate) -> EffectEstimate:
    """(RR - 1) * 100, CI from exponentiated endpoints."""
    return EffectEstimate(
        name=f"pct[{effect.name}]",
        point=float(np.expm1(effect.point) * 100),
        se=float(np.exp(effect.point) * effect.se * 100),
        ci_lower=float(np.expm1(effect.ci_lower) * 100),
        ci_upper=float(np.expm1(effect.ci_upper) * 100),
        scale='percent',
        flags=tuple(effect.flags),
    )


def percent_change_per_sd(
    model: FittedModel,
    terms: Sequence[str],
    sd: float,
    ci_level: float = Config.CI_LEVEL,
) -> EffectEstimate:
    """Percent change in expected cases for a one-SD exposure increase on every term in K."""
    if sd is None or not np.isfinite(sd) or sd <= 0:
        raise DegenerateExposureError(f"Exposure SD {sd} cannot define a one-SD increase")
    terms = list(terms)
    theta = linear_combination(model, terms, np.full(len(terms), float(sd)), ci_level,
                               name=f"per_sd({sd:.4g})")
    return percent_change(theta)


def counterfactual_percent_change(factual, baseline) -> Tuple[np.ndarray, np.ndarray]:
    """
    (factual - baseline) / baseline * 100.

    Rows with a zero (or non-finite) baseline get 0 and a True flag instead of
    NaN / Inf.

    Returns:
    --------
    (percent change array, zero-baseline flag array)
    """
    factual = np.atleast_1d(np.asarray(factual, dtype=float))
    baseline = np.atleast_1d(np.asarray(baseline, dtype=float))
    zero = ~np.isfinite(baseline) | (baseline == 0) | ~np.isfinite(factual)
    pct = np.zeros_like(factual)
    np.divide((factual - baseline) * 100.0, baseline, out=pct, where=~zero)
    if zero.any():
        logger.warning("%d counterfactual baseline(s) are zero; percent change set to 0", int(zero.sum()))
    return pct, zero


# =============================================================================
# LAG TABLE
# =============================================================================

def lag_effect_table(model: FittedModel, spec: ModelSpec,
                     ci_level: float = Config.CI_LEVEL) -> pd.DataFrame:
    """Per-lag coefficient, SE, p-value, RR and percent change, plus the total."""
    z = z_value(ci_level)
    rows = []
    for lag, term in enumerate(spec.exposure_terms):
        beta = float(model.coefficients[term])
        se = float(np.sqrt(max(model.covariance.loc[term, term], 0.0)))
        p = float(2 * (1 - stats.norm.cdf(abs(beta / se)))) if se > 0 else np.nan
        rows.append({
            'term': term,
            'lag': lag,
            'coefficient': beta,
            'std_error': se,
            'p_value': p,
            'rr': float(np.exp(beta)),
            'rr_lower': float(np.exp(beta - z * se)),
            'rr_upper': float(np.exp(beta + z * se)),
            'percent_change': float(np.expm1(beta) * 100),
            'percent_change_lower': float(np.expm1(beta - z * se) * 100),
            'percent_change_upper': float(np.expm1(beta + z * se) * 100),
        })

    total = total_effect(model, spec.exposure_terms, ci_level)
    rr = rate_ratio(total)
    pct = percent_change(total)
    rows.append({
        'term': 'total',
        'lag': np.nan,
        'coefficient': total.point,
        'std_error': total.se,
        'p_value': float(2 * (1 - stats.norm.cdf(abs(total.point / total.se)))) if total.se > 0 else np.nan,
        'rr': rr.point,
        'rr_lower': rr.ci_lower,
        'rr_upper': rr.ci_upper,
        'percent_change': pct.point,
        'percent_change_lower': pct.ci_lower,
        'percent_change_upper': pct.ci_upper,
    })
    return pd.DataFrame(rows)


# =============================================================================
# PER-OBSERVATION EFFECTS
# =============================================================================

PASSTHROUGH_COLUMNS = [
    Config.CITY_COL, Config.YEAR_COL, Config.WEEK_COL, Config.YEAR_WEEK_COL,
    Config.FLOOD_WEEK_COL, 'population', 'population_density',
]


def per_observation_effects(
    panel: pd.DataFrame,
    model: FittedModel,
    spec: ModelSpec,
    config: Optional[AnalysisConfig] = None,
) -> pd.DataFrame:
    """
    Observation-level total flood effect, PAF and attributable cases.

    For row i with exposure vector x_i over K:
      theta_i = x_i' beta_K, Var(theta_i) = x_i' Sigma_K x_i
      PAF_i   = 1 - exp(-theta_i), bounds from theta_i bounds, clipped to [0, 1]
      attributable (paf)        = PAF_i * observed cases_i
      attributable (difference) = predicted_factual_i - predicted_counterfactual_i
        with SE = predicted_factual_i * se(theta_i) (gradient of the difference)

    Both estimators are returned; ``attributable_cases*`` mirror the one
    selected by ``config.attributable_estimator`` and the ``estimator`` column
    names it.

    Returns:
    --------
    New DataFrame aligned with the panel index; the panel is not modified.
    """
    config = config or AnalysisConfig()
    terms = list(config.terms_for(spec))
    z = config.z

    beta = model.coef(terms)
    cov = check_covariance(model.cov(terms), name=f"Sigma[{', '.join(terms)}]")
    X = panel[terms].to_numpy(dtype=float)

    theta = X @ beta
    theta_se = np.sqrt(row_quadratic_forms(X, cov))
    theta_lower = theta - z * theta_se
    theta_upper = theta + z * theta_se
    check_bound_ordering(theta_lower, theta, theta_upper, 'theta_i')

    paf, paf_lower, paf_upper = paf_transform(theta, theta_lower, theta_upper)
    check_bound_ordering(paf_lower, paf, paf_upper, 'paf_i')
    paf_se = np.exp(-theta) * theta_se

    observed = panel[spec.response].to_numpy(dtype=float)
    attr_paf = paf * observed
    attr_paf_lower = paf_lower * observed
    attr_paf_upper = paf_upper * observed

    pair = counterfactual_pair(model, panel, zero_exposure_overrides(terms))
    factual = pair['predicted_factual'].to_numpy()
    counterfactual = pair['predicted_counterfactual'].to_numpy()
    attr_diff = factual - counterfactual
    attr_diff_se = factual * theta_se
    attr_diff_lower = attr_diff - z * attr_diff_se
    attr_diff_upper = attr_diff + z * attr_diff_se
    check_bound_ordering(attr_diff_lower, attr_diff, attr_diff_upper, 'attributable_difference_i')

    pct, zero_baseline = counterfactual_percent_change(factual, counterfactual)

    keep = [c for c in PASSTHROUGH_COLUMNS if c in panel.columns]
    out = panel[keep + [spec.response] + terms].copy()
    out['theta'] = theta
    out['theta_se'] = theta_se
    out['theta_lower'] = theta_lower
    out['theta_upper'] = theta_upper
    out['paf'] = paf
    out['paf_se'] = paf_se
    out['paf_lower'] = paf_lower
    out['paf_upper'] = paf_upper
    out['attributable_paf'] = attr_paf
    out['attributable_paf_lower'] = attr_paf_lower
    out['attributable_paf_upper'] = attr_paf_upper
    out['predicted_factual'] = factual
    out['predicted_counterfactual'] = counterfactual
    out['attributable_difference'] = attr_diff
    out['attributable_difference_se'] = attr_diff_se
    out['attributable_difference_lower'] = attr_diff_lower
    out['attributable_difference_upper'] = attr_diff_upper
    out['percent_change'] = pct
    out['zero_baseline'] = zero_baseline

    active = 'attributable_paf' if config.attributable_estimator == 'paf' else 'attributable_difference'
    out['attributable_cases'] = out[active]
    out['attributable_cases_lower'] = out[f'{active}_lower']
    out['attributable_cases_upper'] = out[f'{active}_upper']
    out['estimator'] = config.attributable_estimator
    out.attrs['estimator'] = config.attributable_estimator
    out.attrs['effect_terms'] = terms

    logger.info(
        "Per-observation effects: %d rows, estimator=%s, total attributable=%.1f",
        len(out), config.attributable_estimator, float(out['attributable_cases'].sum()),
    )
    return out
