"""
Analysis Configuration
======================
Constants shared by every phase script, the ``ModelSpec`` built once during
panel preparation, and the ``AnalysisConfig`` that selects estimator variants.

ModelSpec records which optional terms are active so that downstream code
reads flags instead of probing the panel for columns.
"""

from dataclasses import dataclass, field, asdict, replace
from typing import Any, Dict, Optional, Tuple

from scipy import stats


class Config:
    """Configuration for the flood-malaria attribution analysis."""

    # Panel keys / standard column names
    CITY_COL = 'city_id'
    YEAR_COL = 'year'
    WEEK_COL = 'week'
    YEAR_WEEK_COL = 'year_week'
    RESPONSE_COL = 'case_count'
    EXPOSURE_RAW_COL = 'flood_intensity'
    EXPOSURE_CURRENT_COL = 'exposure_current'
    EXPOSURE_LAG_PREFIX = 'exposure_lag'
    FLOOD_WEEK_COL = 'flood_week'
    OFFSET_COL = 'log_population'
    CITY_SD_COL = 'city_exposure_sd'

    # Distributed lag structure (weeks)
    MAX_LAG = 4

    # Intervals
    CI_LEVEL = 0.95
    PAF_BOUNDS = (0.0, 1.0)
    BOUND_TOLERANCE = 1e-9

    # Quadratic-form stability: reject Sigma_K above this condition number
    MAX_COVARIANCE_CONDITION = 1e12

    # GLM fitting
    COV_TYPE = 'cluster'
    SCALE = 'X2'             # quasi-Poisson dispersion
    MAX_ITER = 200

    # Future scenarios (population growth pathways)
    SCENARIOS = ('SSP1', 'SSP2', 'SSP3')
    SCENARIO_YEARS = (2030, 2050)

    # Global attribution weightings
    WEIGHTINGS = ('flood_weeks', 'cases', 'unweighted')

    # Estimator choices
    ATTRIBUTABLE_ESTIMATORS = ('paf', 'difference')
    CITY_CI_METHODS = ('sum_of_bounds', 'delta')
    POPULATION_ADJUSTMENTS = ('auto', 'off')
    EXPOSURE_MODES = ('continuous', 'binary')


def lag_column(k: int) -> str:
    """Name of the k-week lag column (k=0 is the current-week exposure)."""
    if k == 0:
        return Config.EXPOSURE_CURRENT_COL
    return f'{Config.EXPOSURE_LAG_PREFIX}{k}'


def z_value(ci_level: float = Config.CI_LEVEL) -> float:
    """Two-sided normal quantile for a confidence level (0.95 -> 1.96)."""
    if not 0 < ci_level < 1:
        raise ValueError(f"ci_level must be in (0, 1), got {ci_level}")
    if abs(ci_level - 0.95) < 1e-12:
        return 1.96
    return float(stats.norm.ppf(1 - (1 - ci_level) / 2))


@dataclass(frozen=True)
class ModelSpec:
    """Which terms the Poisson fixed-effects model uses.

    Built once by ``build_panel``; every later stage consumes it as data.
    """

    response: str = Config.RESPONSE_COL
    exposure_terms: Tuple[str, ...] = ()
    control_terms: Tuple[str, ...] = ()
    fixed_effects: Tuple[str, ...] = (Config.CITY_COL, Config.YEAR_WEEK_COL)
    offset: Optional[str] = None
    exposure_mode: str = 'continuous'
    flood_threshold: float = 0.0
    max_lag: int = Config.MAX_LAG
    global_exposure_sd: float = float('nan')
    offset_available: bool = False
    population_density_available: bool = False
    light_density_available: bool = False
    urban_index_available: bool = False
    weather_available: bool = False

    @property
    def regressors(self) -> Tuple[str, ...]:
        return tuple(self.exposure_terms) + tuple(self.control_terms)

    @property
    def current_term(self) -> str:
        return self.exposure_terms[0]

    @property
    def lag_terms(self) -> Tuple[str, ...]:
        return tuple(self.exposure_terms[1:])

    def without_controls(self) -> 'ModelSpec':
        """Exposure-only variant (sensitivity specification)."""
        return replace(self, control_terms=())

    def without_offset(self) -> 'ModelSpec':
        return replace(self, offset=None)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d['exposure_terms'] = list(self.exposure_terms)
        d['control_terms'] = list(self.control_terms)
        d['fixed_effects'] = list(self.fixed_effects)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'ModelSpec':
        d = dict(d)
        for key in ('exposure_terms', 'control_terms', 'fixed_effects'):
            if key in d:
                d[key] = tuple(d[key])
        if d.get('global_exposure_sd') is None:
            d['global_exposure_sd'] = float('nan')
        return cls(**d)


@dataclass(frozen=True)
class AnalysisConfig:
    """Run-level options; built from CLI flags in the phase scripts."""

    ci_level: float = Config.CI_LEVEL
    attributable_estimator: str = 'paf'
    city_ci_method: str = 'sum_of_bounds'
    population_adjustment: str = 'auto'
    cov_type: str = Config.COV_TYPE
    scale: Optional[str] = Config.SCALE
    max_iter: int = Config.MAX_ITER
    effect_terms: Optional[Tuple[str, ...]] = None
    scenarios: Tuple[str, ...] = field(default=Config.SCENARIOS)
    scenario_years: Tuple[int, ...] = field(default=Config.SCENARIO_YEARS)

    def __post_init__(self):
        if self.attributable_estimator not in Config.ATTRIBUTABLE_ESTIMATORS:
            raise ValueError(
                f"attributable_estimator must be one of {Config.ATTRIBUTABLE_ESTIMATORS}, "
                f"got {self.attributable_estimator!r}"
            )
        if self.city_ci_method not in Config.CITY_CI_METHODS:
            raise ValueError(
                f"city_ci_method must be one of {Config.CITY_CI_METHODS}, "
                f"got {self.city_ci_method!r}"
            )
        if self.population_adjustment not in Config.POPULATION_ADJUSTMENTS:
            raise ValueError(
                f"population_adjustment must be one of {Config.POPULATION_ADJUSTMENTS}, "
                f"got {self.population_adjustment!r}"
            )

    @property
    def z(self) -> float:
        return z_value(self.ci_level)

    def terms_for(self, spec: ModelSpec) -> Tuple[str, ...]:
        """Coefficient subset K for total-effect / PAF computations."""
        if self.effect_terms is None:
            return tuple(spec.exposure_terms)
        return tuple(self.effect_terms)
