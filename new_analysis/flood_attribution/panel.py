"""
Panel Preparation
=================
Builds the city x epi-week analysis panel from a raw table:

1. Standard column names and (city, year, week) ordering
2. Non-negative integer response
3. Flood exposure (continuous intensity or binary indicator) and its
   lags 1..MAX_LAG, zero-filled before each city's series starts
4. Derived covariates (log population offset, log density / night light,
   temperature square and range) created only when the raw column exists
5. A ``ModelSpec`` recording which optional terms are active

The panel is the typed Observation table: downstream stages only ever read the
columns listed in ``OBSERVATION_COLUMNS`` and the flags on the ModelSpec.
"""

from typing import Dict, Iterable, List, Optional, Tuple
import logging

import numpy as np
import pandas as pd

from .config import Config, ModelSpec, lag_column
from .errors import DegenerateExposureError, MissingRequiredColumnError

logger = logging.getLogger("flood_attribution.panel")


# =============================================================================
# OBSERVATION SCHEMA
# =============================================================================

KEY_COLUMNS = [Config.CITY_COL, Config.YEAR_COL, Config.WEEK_COL, Config.YEAR_WEEK_COL]

# Optional raw columns and the availability flag each one drives
POPULATION_COL = 'population'
DENSITY_COL = 'population_density'
LIGHT_COL = 'light_density'
URBAN_COL = 'urban_index'
WEATHER_COLUMNS = ['temperature', 'pressure', 'wind', 'humidity', 'precipitation']

OBSERVATION_COLUMNS = {
    Config.CITY_COL: 'object',
    Config.YEAR_COL: 'int64',
    Config.WEEK_COL: 'int64',
    Config.YEAR_WEEK_COL: 'int64',
    Config.RESPONSE_COL: 'int64',
    Config.EXPOSURE_RAW_COL: 'float64',
    Config.EXPOSURE_CURRENT_COL: 'float64',
    Config.FLOOD_WEEK_COL: 'int64',
    Config.CITY_SD_COL: 'float64',
}


def exposure_terms(max_lag: int = Config.MAX_LAG) -> List[str]:
    """Current exposure followed by lag 1..max_lag column names."""
    return [lag_column(k) for k in range(max_lag + 1)]


def check_required_columns(df: pd.DataFrame, required: Iterable[str]) -> None:
    """Raise MissingRequiredColumnError listing every absent column."""
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise MissingRequiredColumnError(missing, df.columns)


def validate_panel(panel: pd.DataFrame, spec: ModelSpec) -> None:
    """Check that a prepared panel carries every column the ModelSpec refers to."""
    required = list(KEY_COLUMNS) + [spec.response] + list(spec.regressors)
    if spec.offset is not None:
        required.append(spec.offset)
    check_required_columns(panel, required)


# =============================================================================
# LAGS
# =============================================================================

def _epi_year_start(year: int) -> pd.Timestamp:
    """Sunday that opens epi week 1 (the week holding January 4)."""
    jan4 = pd.Timestamp(year=int(year), month=1, day=4)
    return jan4 - pd.Timedelta(days=(jan4.dayofweek + 1) % 7)


def epi_weeks_in_year(year: int) -> int:
    """52 or 53, following the Sunday-start epidemiological week calendar."""
    return (_epi_year_start(year + 1) - _epi_year_start(year)).days // 7


def period_index(df: pd.DataFrame) -> pd.Series:
    """Consecutive integer index over the epi-week calendar.

    Every week from the first observed year to the last counts, whether or
    not any city reports it, so lag_k always points at calendar week w-k. A
    week 53 present in the data is honoured even in a 52-week year.
    """
    years = df[Config.YEAR_COL].astype(int)
    weeks = df[Config.WEEK_COL].astype(int)
    max_week = weeks.groupby(years).max()
    first_year = int(years.min())
    offsets = {}
    total = 0
    for year in range(first_year, int(years.max()) + 1):
        offsets[year] = total
        total += max(epi_weeks_in_year(year), int(max_week.get(year, 0)))
    period = years.map(offsets) + weeks - 1
    return pd.Series(period.to_numpy(dtype=int), index=df.index, name='_period')


def add_exposure_lags(
    df: pd.DataFrame,
    source_col: str,
    max_lag: int = Config.MAX_LAG,
) -> pd.DataFrame:
    """
    Add ``exposure_current`` and ``exposure_lag1..max_lag`` columns.

    lag_k for week w of city c equals source_col at week w-k of the same city;
    weeks before the city's series starts (or absent from it) are 0, not NaN.

    Parameters:
    -----------
    df : DataFrame sorted by (city, year, week)
    source_col : Exposure column to lag
    max_lag : Maximum lag in weeks

    Returns:
    --------
    New DataFrame with the lag columns added
    """
    out = df.copy()
    period = period_index(out)
    series = pd.Series(
        out[source_col].to_numpy(dtype=float),
        index=pd.MultiIndex.from_arrays([out[Config.CITY_COL].to_numpy(), period.to_numpy()]),
    )
    if series.index.has_duplicates:
        dupes = series.index[series.index.duplicated()].unique()[:5]
        raise ValueError(f"Duplicate (city, year, week) rows in panel, e.g. {list(dupes)}")

    out[lag_column(0)] = out[source_col].to_numpy(dtype=float)
    for k in range(1, max_lag + 1):
        shifted_index = pd.MultiIndex.from_arrays(
            [out[Config.CITY_COL].to_numpy(), period.to_numpy() - k]
        )
        out[lag_column(k)] = series.reindex(shifted_index).fillna(0.0).to_numpy()
    return out


# =============================================================================
# COVARIATES
# =============================================================================

def _fill_covariate(df: pd.DataFrame, col: str) -> pd.Series:
    """Numeric covariate with gaps filled by the city median, then global median."""
    values = pd.to_numeric(df[col], errors='coerce')
    n_missing = int(values.isna().sum())
    if n_missing:
        values = values.fillna(values.groupby(df[Config.CITY_COL]).transform('median'))
        values = values.fillna(values.median())
        logger.info("Filled %d missing values in %s", n_missing, col)
    return values.fillna(0.0).astype(float)


def add_covariates(df: pd.DataFrame) -> Tuple[pd.DataFrame, Dict[str, bool], List[str]]:
    """
    Create the log-offset and control columns for whichever raw columns exist.

    Returns:
    --------
    (panel, availability flags, control column names)
    """
    out = df.copy()
    flags = {
        'offset_available': False,
        'population_density_available': False,
        'light_density_available': False,
        'urban_index_available': False,
        'weather_available': False,
    }
    controls = []

    if POPULATION_COL in out.columns:
        pop = pd.to_numeric(out[POPULATION_COL], errors='coerce')
        if (pop > 0).any():
            n_floored = int((pop.isna() | (pop <= 0)).sum())
            if n_floored:
                logger.warning("Population missing or non-positive in %d rows; "
                               "left as NaN and floored to 1 in the offset", n_floored)
            out[POPULATION_COL] = pop.where(pop > 0)
            out[Config.OFFSET_COL] = np.log(pop.fillna(1.0).clip(lower=1.0))
            flags['offset_available'] = True
        else:
            logger.warning("Population column has no positive values; fitting without offset")

    if DENSITY_COL in out.columns:
        out[DENSITY_COL] = _fill_covariate(out, DENSITY_COL)
        out['log_population_density'] = np.log1p(out[DENSITY_COL].clip(lower=0))
        controls.append('log_population_density')
        flags['population_density_available'] = True

    if LIGHT_COL in out.columns:
        out[LIGHT_COL] = _fill_covariate(out, LIGHT_COL)
        out['log_light_density'] = np.log1p(out[LIGHT_COL].clip(lower=0))
        controls.append('log_light_density')
        flags['light_density_available'] = True

    if URBAN_COL in out.columns:
        out[URBAN_COL] = _fill_covariate(out, URBAN_COL)
        controls.append(URBAN_COL)
        flags['urban_index_available'] = True

    # Weather
    if 'temperature' in out.columns:
        out['temperature'] = _fill_covariate(out, 'temperature')
        out['temperature_sq'] = out['temperature'] ** 2
        controls.extend(['temperature', 'temperature_sq'])
        flags['weather_available'] = True

    if 'temperature_max' in out.columns and 'temperature_min' in out.columns:
        t_max = _fill_covariate(out, 'temperature_max')
        t_min = _fill_covariate(out, 'temperature_min')
        out['temperature_range'] = t_max - t_min
        controls.append('temperature_range')
        flags['weather_available'] = True
    elif 'temperature_range' in out.columns:
        out['temperature_range'] = _fill_covariate(out, 'temperature_range')
        controls.append('temperature_range')
        flags['weather_available'] = True

    for col in WEATHER_COLUMNS[1:]:
        if col in out.columns:
            out[col] = _fill_covariate(out, col)
            controls.append(col)
            flags['weather_available'] = True

    return out, flags, controls


# =============================================================================
# PANEL BUILDER
# =============================================================================

def build_panel(
    raw: pd.DataFrame,
    response_col: str = Config.RESPONSE_COL,
    exposure_col: str = Config.EXPOSURE_RAW_COL,
    city_col: str = Config.CITY_COL,
    year_col: str = Config.YEAR_COL,
    week_col: str = Config.WEEK_COL,
    column_map: Optional[Dict[str, str]] = None,
    max_lag: int = Config.MAX_LAG,
    exposure_mode: str = 'continuous',
    flood_threshold: float = 0.0,
    include_controls: bool = True,
) -> Tuple[pd.DataFrame, ModelSpec]:
    """
    Build the Observation panel and its ModelSpec from a raw weekly table.

    Parameters:
    -----------
    raw : Raw table keyed by (city, year, week)
    response_col : Malaria case count column
    exposure_col : Flood intensity column
    city_col, year_col, week_col : Key columns
    column_map : Optional renames for optional raw columns
        (e.g. {'pop_total': 'population', 'ntl': 'light_density'})
    max_lag : Number of weekly lags of the exposure
    exposure_mode : 'continuous' (intensity) or 'binary' (intensity > threshold)
    flood_threshold : Threshold for the binary indicator
    include_controls : Whether detected covariates enter the model

    Returns:
    --------
    (panel, spec)

    Raises:
    -------
    MissingRequiredColumnError : response, exposure or key column absent
    DegenerateExposureError : exposure standard deviation is zero or undefined
    """
    if exposure_mode not in Config.EXPOSURE_MODES:
        raise ValueError(f"exposure_mode must be one of {Config.EXPOSURE_MODES}, got {exposure_mode!r}")
    if max_lag < 0:
        raise ValueError(f"max_lag must be >= 0, got {max_lag}")

    check_required_columns(raw, [response_col, exposure_col, city_col, year_col, week_col])

    df = raw.copy()
    if column_map:
        df = df.rename(columns=column_map)
    df = df.rename(columns={
        city_col: Config.CITY_COL,
        year_col: Config.YEAR_COL,
        week_col: Config.WEEK_COL,
        response_col: Config.RESPONSE_COL,
        exposure_col: Config.EXPOSURE_RAW_COL,
    })

    # Keys
    df[Config.CITY_COL] = df[Config.CITY_COL].astype(str)
    df[Config.YEAR_COL] = pd.to_numeric(df[Config.YEAR_COL], errors='raise').astype(int)
    df[Config.WEEK_COL] = pd.to_numeric(df[Config.WEEK_COL], errors='raise').astype(int)
    df = df.sort_values([Config.CITY_COL, Config.YEAR_COL, Config.WEEK_COL]).reset_index(drop=True)
    df[Config.YEAR_WEEK_COL] = df[Config.YEAR_COL] * 100 + df[Config.WEEK_COL]

    # Response: non-negative integer
    y = pd.to_numeric(df[Config.RESPONSE_COL], errors='coerce')
    n_missing_y = int(y.isna().sum())
    n_negative_y = int((y < 0).sum())
    if n_missing_y or n_negative_y:
        logger.warning(
            "Response %s: %d missing and %d negative values set to 0",
            response_col, n_missing_y, n_negative_y,
        )
    df[Config.RESPONSE_COL] = y.fillna(0).clip(lower=0).round().astype(int)

    # Exposure
    x = pd.to_numeric(df[Config.EXPOSURE_RAW_COL], errors='coerce')
    n_missing_x = int(x.isna().sum())
    if n_missing_x:
        logger.warning("Exposure %s: %d missing values set to 0", exposure_col, n_missing_x)
    x = x.fillna(0.0).clip(lower=0.0).astype(float)
    if exposure_mode == 'binary':
        x = (x > flood_threshold).astype(float)
    df[Config.EXPOSURE_RAW_COL] = x

    global_sd = float(x.std())
    if not np.isfinite(global_sd) or global_sd == 0:
        raise DegenerateExposureError(
            f"Exposure {exposure_col} has standard deviation {global_sd}; "
            "no one-SD scenario can be built"
        )

    df = add_exposure_lags(df, Config.EXPOSURE_RAW_COL, max_lag=max_lag)
    df[Config.FLOOD_WEEK_COL] = (df[Config.EXPOSURE_CURRENT_COL] > 0).astype(int)
    df[Config.CITY_SD_COL] = (
        df.groupby(Config.CITY_COL)[Config.EXPOSURE_RAW_COL].transform('std').fillna(0.0)
    )

    df, flags, controls = add_covariates(df)
    if not include_controls:
        controls = []

    spec = ModelSpec(
        response=Config.RESPONSE_COL,
        exposure_terms=tuple(exposure_terms(max_lag)),
        control_terms=tuple(controls),
        fixed_effects=(Config.CITY_COL, Config.YEAR_WEEK_COL),
        offset=Config.OFFSET_COL if flags['offset_available'] else None,
        exposure_mode=exposure_mode,
        flood_threshold=float(flood_threshold),
        max_lag=int(max_lag),
        global_exposure_sd=global_sd,
        **flags,
    )

    logger.info(
        "Panel: %d rows, %d cities, %d weeks; controls=%s; offset=%s",
        len(df), df[Config.CITY_COL].nunique(), df[Config.YEAR_WEEK_COL].nunique(),
        list(spec.control_terms), spec.offset,
    )
    return df, spec


def summarize_panel(panel: pd.DataFrame, spec: ModelSpec) -> Dict[str, object]:
    """Descriptive counts for the prep log / JSON summary."""
    return {
        'n_rows': int(len(panel)),
        'n_cities': int(panel[Config.CITY_COL].nunique()),
        'n_weeks': int(panel[Config.YEAR_WEEK_COL].nunique()),
        'years': sorted(int(y) for y in panel[Config.YEAR_COL].unique()),
        'total_cases': int(panel[spec.response].sum()),
        'flood_weeks': int(panel[Config.FLOOD_WEEK_COL].sum()),
        'exposure_mode': spec.exposure_mode,
        'global_exposure_sd': float(spec.global_exposure_sd),
        'controls': list(spec.control_terms),
        'offset': spec.offset,
    }
