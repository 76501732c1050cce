"""
City & Global Aggregation
=========================
Collapses the per-observation effect table to one row per city and combines
city PAFs into global attribution estimates under three weightings.

City interval for total attributable cases:
- 'sum_of_bounds': sum of the per-observation bounds (conservative, ignores
  the shared coefficient uncertainty structure)
- 'delta': delta method on the city total, gradient g = sum_i dA_i/dbeta_K and
  Var = g' Sigma_K g
"""

from typing import Dict, List, Optional
import logging

import numpy as np
import pandas as pd

from .config import AnalysisConfig, Config, ModelSpec
from .effects import check_bound_ordering, check_covariance, quadratic_form_variance
from .fe_poisson import FittedModel
from .report import EstimationReport, run_estimate

logger = logging.getLogger("flood_attribution.aggregate")


def _safe_share(numerator: float, denominator: float) -> float:
    if denominator == 0 or not np.isfinite(denominator):
        return 0.0
    return float(numerator / denominator)


def city_attributable_delta(
    city_obs: pd.DataFrame,
    model: FittedModel,
    terms: List[str],
    estimator: str,
    z: float,
) -> Dict[str, float]:
    """
    Delta-method interval for one city's total attributable cases.

    PAF estimator: A = sum_i Y_i PAF_i, dA/dbeta = sum_i Y_i exp(-theta_i) x_i
    over observations whose PAF is not clipped; bounds are kept within
    [0, total cases].
    Difference estimator: A = sum_i (f_i - cf_i), dA/dbeta = sum_i f_i x_i.
    """
    X = city_obs[terms].to_numpy(dtype=float)
    cov = check_covariance(model.cov(terms), name=f"Sigma[{', '.join(terms)}]")

    if estimator == 'paf':
        theta = city_obs['theta'].to_numpy(dtype=float)
        y = city_obs[Config.RESPONSE_COL].to_numpy(dtype=float)
        raw_paf = -np.expm1(-theta)
        active = (raw_paf > Config.PAF_BOUNDS[0]) & (raw_paf < Config.PAF_BOUNDS[1])
        weights = np.where(active, y * np.exp(-theta), 0.0)
        point = float(city_obs['attributable_paf'].sum())
    else:
        weights = city_obs['predicted_factual'].to_numpy(dtype=float)
        point = float(city_obs['attributable_difference'].sum())

    gradient = weights @ X
    se = float(np.sqrt(quadratic_form_variance(gradient, cov)))
    lower, upper = point - z * se, point + z * se
    if estimator == 'paf':
        total_cases = float(city_obs[Config.RESPONSE_COL].sum())
        lower, upper = max(lower, 0.0), min(upper, total_cases)
    check_bound_ordering(lower, point, upper, 'city_attributable_delta')
    return {'point': point, 'se': se, 'lower': lower, 'upper': upper}


def aggregate_by_city(
    obs: pd.DataFrame,
    spec: ModelSpec,
    config: Optional[AnalysisConfig] = None,
    model: Optional[FittedModel] = None,
    report: Optional[EstimationReport] = None,
) -> pd.DataFrame:
    """
    One row per city from the per-observation effect table.

    Parameters:
    -----------
    obs : Output of per_observation_effects
    spec : ModelSpec
    config : AnalysisConfig (estimator / city CI method)
    model : Required when config.city_ci_method == 'delta'
    report : Collects per-city delta-method failures

    Returns:
    --------
    DataFrame with flood_weeks, total_cases, PAF summaries, total and average
    weekly attributable cases with bounds, attributable share, and a
    ci_status column ('ok' or the failure type).
    """
    config = config or AnalysisConfig()
    city = Config.CITY_COL

    grouped = obs.groupby(city, sort=True)
    table = pd.DataFrame({
        'n_weeks': grouped.size(),
        'flood_weeks': grouped[Config.FLOOD_WEEK_COL].sum(),
        'total_cases': grouped[spec.response].sum(),
        'paf_mean': grouped['paf'].mean(),
        'paf_median': grouped['paf'].median(),
        'paf_lower_mean': grouped['paf_lower'].mean(),
        'paf_upper_mean': grouped['paf_upper'].mean(),
        'total_attributable_cases': grouped['attributable_cases'].sum(),
        'total_attributable_lower': grouped['attributable_cases_lower'].sum(),
        'total_attributable_upper': grouped['attributable_cases_upper'].sum(),
    })
    if spec.offset_available and 'population' in obs.columns:
        table['population_mean'] = grouped['population'].mean()
    if spec.population_density_available and 'population_density' in obs.columns:
        table['population_density_mean'] = grouped['population_density'].mean()

    table['ci_status'] = 'ok'
    if config.city_ci_method == 'delta':
        if model is None:
            raise ValueError("city_ci_method='delta' needs the fitted model")
        terms = list(config.terms_for(spec))
        for city_id, city_obs in grouped:
            result = run_estimate(
                city_id, 'city_delta_ci', city_attributable_delta,
                city_obs, model, terms, config.attributable_estimator, config.z,
                report=report,
            )
            if result.ok:
                table.loc[city_id, 'total_attributable_lower'] = result.value['lower']
                table.loc[city_id, 'total_attributable_upper'] = result.value['upper']
            else:
                table.loc[city_id, ['total_attributable_lower', 'total_attributable_upper']] = np.nan
                table.loc[city_id, 'ci_status'] = result.failure.error_type

    ok = table['ci_status'] == 'ok'
    check_bound_ordering(table.loc[ok, 'paf_lower_mean'], table.loc[ok, 'paf_mean'],
                         table.loc[ok, 'paf_upper_mean'], 'city paf_mean')
    check_bound_ordering(table.loc[ok, 'total_attributable_lower'],
                         table.loc[ok, 'total_attributable_cases'],
                         table.loc[ok, 'total_attributable_upper'], 'city attributable cases')

    table['avg_weekly_attributable'] = table['total_attributable_cases'] / table['n_weeks']
    table['avg_weekly_attributable_lower'] = table['total_attributable_lower'] / table['n_weeks']
    table['avg_weekly_attributable_upper'] = table['total_attributable_upper'] / table['n_weeks']
    table['attributable_share'] = [
        _safe_share(a, c) for a, c in zip(table['total_attributable_cases'], table['total_cases'])
    ]
    for col in ('paf_mean', 'paf_median', 'paf_lower_mean', 'paf_upper_mean'):
        table[f'{col}_pct'] = table[col] * 100
    table['estimator'] = config.attributable_estimator
    table['city_ci_method'] = config.city_ci_method

    table = table.reset_index()
    logger.info("Aggregated %d cities (%s, %s)", len(table),
                config.attributable_estimator, config.city_ci_method)
    return table


def _weights(city_table: pd.DataFrame, weighting: str) -> np.ndarray:
    if weighting == 'flood_weeks':
        return city_table['flood_weeks'].to_numpy(dtype=float)
    if weighting == 'cases':
        return city_table['total_cases'].to_numpy(dtype=float)
    if weighting == 'unweighted':
        return np.ones(len(city_table))
    raise ValueError(f"weighting must be one of {Config.WEIGHTINGS}, got {weighting!r}")


def global_attribution(
    city_table: pd.DataFrame,
    weightings=Config.WEIGHTINGS,
) -> pd.DataFrame:
    """
    Weighted average of city PAFs (point and bounds) per weighting scheme.

    A weighted mean of ordered (lower, point, upper) triples stays ordered. A
    scheme whose weights sum to zero reports 0 with zero_total_weight set.
    """
    rows = []
    for weighting in weightings:
        w = _weights(city_table, weighting)
        total_weight = float(w.sum())
        zero = total_weight == 0 or len(city_table) == 0
        if zero:
            logger.warning("Global attribution (%s): total weight is zero; reporting 0", weighting)
            paf = lower = upper = 0.0
        else:
            paf = float(w @ city_table['paf_mean'].to_numpy(dtype=float) / total_weight)
            lower = float(w @ city_table['paf_lower_mean'].to_numpy(dtype=float) / total_weight)
            upper = float(w @ city_table['paf_upper_mean'].to_numpy(dtype=float) / total_weight)
        check_bound_ordering(lower, paf, upper, f'global paf ({weighting})')
        rows.append({
            'weighting': weighting,
            'paf': paf,
            'paf_lower': lower,
            'paf_upper': upper,
            'paf_pct': paf * 100,
            'paf_lower_pct': lower * 100,
            'paf_upper_pct': upper * 100,
            'total_weight': total_weight,
            'n_cities': int(len(city_table)),
            'zero_total_weight': bool(zero),
        })
    return pd.DataFrame(rows)


def national_totals(city_table: pd.DataFrame) -> Dict[str, float]:
    """Sum of city totals; the interval is the sum of city bounds (None if any city lacks one)."""
    complete = bool((city_table['ci_status'] == 'ok').all())
    total_cases = float(city_table['total_cases'].sum())
    attributable = float(city_table['total_attributable_cases'].sum())
    return {
        'n_cities': int(len(city_table)),
        'total_cases': total_cases,
        'total_attributable_cases': attributable,
        'total_attributable_lower': float(city_table['total_attributable_lower'].sum()) if complete else None,
        'total_attributable_upper': float(city_table['total_attributable_upper'].sum()) if complete else None,
        'attributable_share': _safe_share(attributable, total_cases),
    }
