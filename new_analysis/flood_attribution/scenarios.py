"""
Scenario Projector
==================
Future malaria burden per city under a one-standard-deviation flood scenario,
optionally scaled by projected population (SSP pathways).

For each city:
1. Percent change from the counterfactual predictor on the city's last
   observed week: current exposure = city SD, lags = 0, versus all exposure 0.
   Its interval comes from the linear combination sd * beta_current.
2. Historical annual baseline = total cases / number of observed years.
3. Future baseline = historical baseline, or historical baseline x projected
   population / historical mean population when the offset is in the model
   and projections are supplied.
4. scenario cases = future baseline x (1 + pct / 100),
   additional cases = scenario cases - future baseline.
"""

from typing import Dict, Optional, Tuple
import logging

import numpy as np
import pandas as pd

from .config import AnalysisConfig, Config, ModelSpec
from .counterfactual import counterfactual_pair, sd_scenario_overrides, zero_exposure_overrides
from .effects import (
    EffectEstimate,
    counterfactual_percent_change,
    linear_combination,
    percent_change,
)
from .errors import DegenerateExposureError, MissingProjectionError
from .fe_poisson import FittedModel
from .panel import check_required_columns
from .report import EstimationReport, run_estimate

logger = logging.getLogger("flood_attribution.scenarios")

PROJECTION_COLUMNS = [Config.CITY_COL, 'scenario', 'year', 'population']


def scenario_arithmetic(baseline: float, pct_change: float) -> Tuple[float, float]:
    """(scenario cases, additional cases) for a baseline and a percent change."""
    scenario = baseline * (1 + pct_change / 100)
    return scenario, scenario - baseline


def historical_baseline(panel: pd.DataFrame, spec: ModelSpec) -> pd.DataFrame:
    """Per-city annual case baseline and mean population over the observed years."""
    grouped = panel.groupby(Config.CITY_COL, sort=True)
    table = pd.DataFrame({
        'n_years': grouped[Config.YEAR_COL].nunique(),
        'total_cases': grouped[spec.response].sum(),
        Config.CITY_SD_COL: grouped[Config.CITY_SD_COL].first(),
    })
    table['baseline_annual_cases'] = table['total_cases'] / table['n_years']
    if spec.offset_available and 'population' in panel.columns:
        table['population_mean'] = grouped['population'].mean()
    return table


def city_percent_change(
    model: FittedModel,
    spec: ModelSpec,
    city_rows: pd.DataFrame,
    sd: float,
    ci_level: float = Config.CI_LEVEL,
) -> EffectEstimate:
    """
    Percent change in expected weekly cases for a one-SD flood in the current week.

    Raises:
    -------
    DegenerateExposureError : the city SD is zero or undefined
    """
    if sd is None or not np.isfinite(sd) or sd <= 0:
        raise DegenerateExposureError(f"City exposure SD is {sd}; no one-SD scenario")
    if city_rows.empty:
        raise ValueError("city_rows is empty")

    row = city_rows.tail(1)
    pair = counterfactual_pair(
        model, row,
        counterfactual_overrides=zero_exposure_overrides(spec.exposure_terms),
        factual_overrides=sd_scenario_overrides(spec, sd),
    )
    pct, zero = counterfactual_percent_change(pair['predicted_factual'], pair['predicted_counterfactual'])

    if zero[0]:
        return EffectEstimate(name='scenario_pct', point=0.0, se=0.0, ci_lower=0.0, ci_upper=0.0,
                              scale='percent', flags=('zero_baseline',))

    weights = [float(sd)] + [0.0] * len(spec.lag_terms)
    interval = percent_change(
        linear_combination(model, spec.exposure_terms, weights, ci_level, name='scenario')
    )
    # predicted point and exp(sd * beta) agree up to rounding
    point = float(np.clip(pct[0], interval.ci_lower, interval.ci_upper))
    return EffectEstimate(
        name='scenario_pct',
        point=point,
        se=interval.se,
        ci_lower=interval.ci_lower,
        ci_upper=interval.ci_upper,
        scale='percent',
    )


def _projection_lookup(projections: pd.DataFrame) -> Dict[Tuple[str, str, int], float]:
    check_required_columns(projections, PROJECTION_COLUMNS)
    proj = projections.copy()
    proj[Config.CITY_COL] = proj[Config.CITY_COL].astype(str)
    proj['year'] = proj['year'].astype(int)
    return {
        (c, str(s), int(y)): float(p)
        for c, s, y, p in proj[PROJECTION_COLUMNS].itertuples(index=False)
    }


def _future_baseline(city_id, scenario, year, base_row, lookup):
    future_pop = lookup.get((city_id, scenario, year))
    if future_pop is None or not np.isfinite(future_pop):
        raise MissingProjectionError(
            f"No projected population for city {city_id}, {scenario} {year}"
        )
    hist_pop = base_row.get('population_mean', np.nan)
    if not np.isfinite(hist_pop) or hist_pop <= 0:
        raise MissingProjectionError(
            f"City {city_id} has no historical population to scale from"
        )
    return float(base_row['baseline_annual_cases'] * future_pop / hist_pop), future_pop


def project_scenarios(
    panel: pd.DataFrame,
    model: FittedModel,
    spec: ModelSpec,
    projections: Optional[pd.DataFrame] = None,
    config: Optional[AnalysisConfig] = None,
    report: Optional[EstimationReport] = None,
) -> pd.DataFrame:
    """
    Scenario projections for every city x (scenario, year).

    Parameters:
    -----------
    panel : Observation panel
    model : FittedModel
    spec : ModelSpec
    projections : Optional table with city_id, scenario, year, population
    config : AnalysisConfig (population_adjustment, scenario grid, ci_level)
    report : Collects per-city / per-scenario failures

    Returns:
    --------
    DataFrame, one row per city x requested (scenario, year) that could be
    computed; the rest are recorded in ``report``. The grid always comes from
    ``config.scenarios`` x ``config.scenario_years``; projection rows outside
    it are ignored.
    """
    config = config or AnalysisConfig()
    report = report if report is not None else EstimationReport()

    adjusted = (
        config.population_adjustment == 'auto'
        and spec.offset_available
        and projections is not None
        and len(projections) > 0
    )
    if config.population_adjustment == 'auto' and projections is not None and not spec.offset_available:
        logger.warning("Population projections supplied but the model has no offset; "
                       "baselines are not scaled")

    lookup = _projection_lookup(projections) if adjusted else {}
    grid = [(str(s), int(y)) for s in config.scenarios for y in config.scenario_years]
    if adjusted:
        extra = sorted({(s, y) for (_, s, y) in lookup} - set(grid))
        if extra:
            logger.info("Ignoring %d projected (scenario, year) pairs outside the requested grid: %s",
                        len(extra), extra[:5])

    baselines = historical_baseline(panel, spec)
    rows = []
    for city_id, city_rows in panel.groupby(Config.CITY_COL, sort=True):
        base = baselines.loc[city_id]
        sd = float(base[Config.CITY_SD_COL])
        effect = run_estimate(
            city_id, 'scenario_effect', city_percent_change,
            model, spec, city_rows, sd, config.ci_level, report=report,
        )
        if not effect.ok:
            continue
        pct = effect.value

        for scenario, year in grid:
            key = (city_id, scenario, year)
            if adjusted:
                future = run_estimate(key, 'scenario_population', _future_baseline,
                                      city_id, scenario, year, base, lookup, report=report)
                if not future.ok:
                    continue
                baseline, future_pop = future.value
            else:
                baseline, future_pop = float(base['baseline_annual_cases']), np.nan

            cases, additional = scenario_arithmetic(baseline, pct.point)
            cases_lower, additional_lower = scenario_arithmetic(baseline, pct.ci_lower)
            cases_upper, additional_upper = scenario_arithmetic(baseline, pct.ci_upper)
            rows.append({
                Config.CITY_COL: city_id,
                'scenario': scenario,
                'year': int(year),
                'city_exposure_sd': sd,
                'historical_annual_cases': float(base['baseline_annual_cases']),
                'projected_population': future_pop,
                'baseline_cases': baseline,
                'pct_change': pct.point,
                'pct_change_lower': pct.ci_lower,
                'pct_change_upper': pct.ci_upper,
                'scenario_cases': cases,
                'scenario_cases_lower': cases_lower,
                'scenario_cases_upper': cases_upper,
                'additional_cases': additional,
                'additional_cases_lower': additional_lower,
                'additional_cases_upper': additional_upper,
                'population_adjusted': bool(adjusted),
                'zero_baseline': 'zero_baseline' in pct.flags,
            })

    columns = [Config.CITY_COL, 'scenario', 'year', 'city_exposure_sd', 'historical_annual_cases',
               'projected_population', 'baseline_cases', 'pct_change', 'pct_change_lower',
               'pct_change_upper', 'scenario_cases', 'scenario_cases_lower', 'scenario_cases_upper',
               'additional_cases', 'additional_cases_lower', 'additional_cases_upper',
               'population_adjusted', 'zero_baseline']
    out = pd.DataFrame(rows, columns=columns)
    logger.info("Scenario projections: %d rows for %d cities (population_adjusted=%s)",
                len(out), out[Config.CITY_COL].nunique(), adjusted)
    return out


def scenario_summary(projections: pd.DataFrame) -> pd.DataFrame:
    """National totals per (scenario, year)."""
    if projections.empty:
        return pd.DataFrame(columns=['scenario', 'year', 'n_cities', 'baseline_cases',
                                     'scenario_cases', 'additional_cases',
                                     'additional_cases_lower', 'additional_cases_upper'])
    return (
        projections.groupby(['scenario', 'year'], sort=True)
        .agg(n_cities=(Config.CITY_COL, 'nunique'),
             baseline_cases=('baseline_cases', 'sum'),
             scenario_cases=('scenario_cases', 'sum'),
             additional_cases=('additional_cases', 'sum'),
             additional_cases_lower=('additional_cases_lower', 'sum'),
             additional_cases_upper=('additional_cases_upper', 'sum'))
        .reset_index()
    )
