"""
Flood-attributable malaria burden for Peruvian ADM3 cities.

Contains:
- panel: city x epi-week panel, exposure lags 0..4, derived covariates
- fe_poisson: Poisson fixed-effects fit (city + year-week FE, log-population offset)
- counterfactual: fitted counts under exposure overrides
- effects: total effect, per-observation PAF, delta-method intervals
- aggregate: city tables and global attribution under three weightings
- scenarios: SSP population-scaled one-SD flood projections
- report: per-estimate success / failure bookkeeping, JSON helpers

Typical pipeline:
1. build_panel -> (panel, spec)
2. fit_poisson_fe(panel, spec) -> FittedModel
3. per_observation_effects -> aggregate_by_city -> global_attribution
4. project_scenarios
"""

from .config import (
    Config,
    ModelSpec,
    AnalysisConfig,
    lag_column,
    z_value,
)
from .errors import (
    FloodAttributionError,
    MissingRequiredColumnError,
    MissingProjectionError,
    DegenerateExposureError,
    SingularCovarianceError,
    InvalidBoundOrderingError,
    FittingError,
    UnmatchedGroupKeyWarning,
    EffectFailure,
)
from .panel import (
    build_panel,
    add_exposure_lags,
    epi_weeks_in_year,
    exposure_terms,
    validate_panel,
    summarize_panel,
)
from .fe_poisson import (
    FittedModel,
    fit_poisson_fe,
)
from .counterfactual import (
    linear_predictor,
    predict,
    counterfactual_pair,
    zero_exposure_overrides,
    sd_scenario_overrides,
)
from .effects import (
    EffectEstimate,
    check_bound_ordering,
    linear_combination,
    total_effect,
    coefficient_effect,
    paf_from_effect,
    paf_transform,
    rate_ratio,
    percent_change,
    percent_change_per_sd,
    counterfactual_percent_change,
    lag_effect_table,
    per_observation_effects,
)
from .aggregate import (
    aggregate_by_city,
    global_attribution,
    national_totals,
)
from .scenarios import (
    scenario_arithmetic,
    historical_baseline,
    city_percent_change,
    project_scenarios,
    scenario_summary,
)
from .report import (
    EffectResult,
    EstimationReport,
    run_estimate,
    convert_to_json_serializable,
    write_json,
    read_table,
    city_join_table,
)

__all__ = [
    # Configuration
    'Config',
    'ModelSpec',
    'AnalysisConfig',
    'lag_column',
    'z_value',

    # Errors
    'FloodAttributionError',
    'MissingRequiredColumnError',
    'MissingProjectionError',
    'DegenerateExposureError',
    'SingularCovarianceError',
    'InvalidBoundOrderingError',
    'FittingError',
    'UnmatchedGroupKeyWarning',
    'EffectFailure',

    # Panel
    'build_panel',
    'add_exposure_lags',
    'epi_weeks_in_year',
    'exposure_terms',
    'validate_panel',
    'summarize_panel',

    # Model fitting
    'FittedModel',
    'fit_poisson_fe',

    # Prediction
    'linear_predictor',
    'predict',
    'counterfactual_pair',
    'zero_exposure_overrides',
    'sd_scenario_overrides',

    # Effects
    'EffectEstimate',
    'check_bound_ordering',
    'linear_combination',
    'total_effect',
    'coefficient_effect',
    'paf_from_effect',
    'paf_transform',
    'rate_ratio',
    'percent_change',
    'percent_change_per_sd',
    'counterfactual_percent_change',
    'lag_effect_table',
    'per_observation_effects',

    # Aggregation
    'aggregate_by_city',
    'global_attribution',
    'national_totals',

    # Scenarios
    'scenario_arithmetic',
    'historical_baseline',
    'city_percent_change',
    'project_scenarios',
    'scenario_summary',

    # Reporting
    'EffectResult',
    'EstimationReport',
    'run_estimate',
    'convert_to_json_serializable',
    'write_json',
    'read_table',
    'city_join_table',
]
