import numpy as np
import pandas as pd
import pytest

from flood_attribution import (
    Config,
    DegenerateExposureError,
    MissingRequiredColumnError,
    add_exposure_lags,
    build_panel,
    epi_weeks_in_year,
    summarize_panel,
)

from _helpers import make_raw


def _build(raw, **kwargs):
    return build_panel(raw, response_col='malaria_cases', exposure_col='flood_intensity',
                       city_col='ubigeo', week_col='epi_week', **kwargs)


def test_lag_columns_reproduce_shifted_exposure(panel_and_spec):
    panel, spec = panel_and_spec
    assert spec.exposure_terms == ('exposure_current', 'exposure_lag1', 'exposure_lag2',
                                   'exposure_lag3', 'exposure_lag4')
    for _, city in panel.groupby('city_id'):
        x = city['flood_intensity'].to_numpy()
        for k in range(1, 5):
            lag = city[f'exposure_lag{k}'].to_numpy()
            assert np.all(lag[:k] == 0.0)
            np.testing.assert_array_equal(lag[k:], x[:-k])


def test_lags_follow_calendar_across_missing_week():
    df = pd.DataFrame({
        'city_id': ['A'] * 4 + ['B'] * 5,
        'year': [2020] * 9,
        'week': [1, 2, 4, 5, 1, 2, 3, 4, 5],
        'x': [1.0, 2.0, 4.0, 5.0, 10.0, 20.0, 30.0, 40.0, 50.0],
    })
    out = add_exposure_lags(df, 'x', max_lag=2)
    a = out[out['city_id'] == 'A'].set_index('week')
    # week 3 is absent for A: lag1 at week 4 is 0, lag2 at week 4 is week 2
    assert a.loc[4, 'exposure_lag1'] == 0.0
    assert a.loc[4, 'exposure_lag2'] == 2.0
    assert a.loc[5, 'exposure_lag1'] == 4.0
    b = out[out['city_id'] == 'B'].set_index('week')
    assert b.loc[3, 'exposure_lag2'] == 10.0


def test_lags_cross_year_boundary():
    df = pd.DataFrame({
        'city_id': ['A'] * 3,
        'year': [2019, 2019, 2020],
        'week': [51, 52, 1],
        'x': [1.0, 2.0, 3.0],
    })
    out = add_exposure_lags(df, 'x', max_lag=2)
    assert out['exposure_lag1'].tolist() == [0.0, 1.0, 2.0]
    assert out['exposure_lag2'].tolist() == [0.0, 0.0, 1.0]


def test_week_missing_for_every_city_is_still_a_gap():
    df = pd.DataFrame({
        'city_id': ['A'] * 4 + ['B'] * 4,
        'year': [2020] * 8,
        'week': [1, 2, 4, 5] * 2,
        'x': [1.0, 2.0, 4.0, 5.0, 10.0, 20.0, 40.0, 50.0],
    })
    out = add_exposure_lags(df, 'x', max_lag=2)
    a = out[out['city_id'] == 'A'].set_index('week')
    assert a.loc[4, 'exposure_lag1'] == 0.0
    assert a.loc[4, 'exposure_lag2'] == 2.0
    assert a.loc[5, 'exposure_lag2'] == 0.0


def test_epi_week_calendar():
    assert epi_weeks_in_year(2019) == 52
    assert epi_weeks_in_year(2020) == 53
    assert epi_weeks_in_year(2014) == 53


def test_lags_cross_53_week_year():
    df = pd.DataFrame({
        'city_id': ['A'] * 3,
        'year': [2020, 2020, 2021],
        'week': [52, 53, 1],
        'x': [1.0, 2.0, 3.0],
    })
    out = add_exposure_lags(df, 'x', max_lag=2)
    assert out['exposure_lag1'].tolist() == [0.0, 1.0, 2.0]
    assert out['exposure_lag2'].tolist() == [0.0, 0.0, 1.0]

    # 2020 data ending at week 52 still leaves week 53 in the calendar
    short = df.iloc[[0, 2]]
    out = add_exposure_lags(short, 'x', max_lag=2)
    assert out['exposure_lag1'].tolist() == [0.0, 0.0]
    assert out['exposure_lag2'].tolist() == [0.0, 1.0]


def test_duplicate_keys_rejected():
    df = pd.DataFrame({'city_id': ['A', 'A'], 'year': [2020, 2020], 'week': [1, 1], 'x': [1.0, 2.0]})
    with pytest.raises(ValueError, match="Duplicate"):
        add_exposure_lags(df, 'x', max_lag=1)


def test_standard_columns_and_keys(panel_and_spec, raw):
    panel, spec = panel_and_spec
    assert len(panel) == len(raw)
    for col in ['city_id', 'year', 'week', 'year_week', 'case_count', 'flood_intensity',
                'flood_week', 'city_exposure_sd']:
        assert col in panel.columns
    assert panel['city_id'].map(type).eq(str).all()
    row = panel.iloc[0]
    assert row['year_week'] == row['year'] * 100 + row['week']
    assert panel['case_count'].dtype.kind == 'i'


def test_offset_from_population(panel_and_spec):
    panel, spec = panel_and_spec
    assert spec.offset == Config.OFFSET_COL
    assert spec.offset_available
    np.testing.assert_allclose(panel['log_population'], np.log(panel['population']))


def test_non_positive_population_is_missing_not_averaged():
    raw = make_raw(n_cities=2, years=(2018,))
    raw.loc[raw.index[:10], 'population'] = 0.0
    raw.loc[raw.index[10], 'population'] = -5.0
    panel, spec = _build(raw)
    assert spec.offset_available
    first = panel[panel['city_id'] == '150101']
    assert first['population'].isna().sum() == 11
    assert first['population'].mean() == pytest.approx(20000.0)
    assert (first.loc[first['population'].isna(), 'log_population'] == 0.0).all()


def test_no_population_means_no_offset():
    raw = make_raw(n_cities=2, years=(2018,), with_population=False)
    panel, spec = _build(raw)
    assert spec.offset is None
    assert not spec.offset_available
    assert 'log_population' not in panel.columns


def test_response_cleaned_to_non_negative_integers():
    raw = make_raw(n_cities=2, years=(2018,))
    raw.loc[0, 'malaria_cases'] = -3
    raw.loc[1, 'malaria_cases'] = np.nan
    panel, _ = _build(raw)
    assert (panel['case_count'] >= 0).all()
    assert panel['case_count'].iloc[:2].tolist() == [0, 0]


def test_input_not_modified():
    raw = make_raw(n_cities=2, years=(2018,))
    before = raw.copy()
    _build(raw)
    pd.testing.assert_frame_equal(raw, before)


def test_missing_required_column_is_named():
    raw = make_raw(n_cities=2, years=(2018,)).drop(columns=['flood_intensity'])
    with pytest.raises(MissingRequiredColumnError) as exc:
        _build(raw)
    assert exc.value.missing == ['flood_intensity']
    assert 'flood_intensity' in str(exc.value)


def test_constant_exposure_is_degenerate():
    raw = make_raw(n_cities=2, years=(2018,))
    raw['flood_intensity'] = 0.0
    with pytest.raises(DegenerateExposureError):
        _build(raw)


def test_binary_exposure_mode():
    raw = make_raw(n_cities=3, years=(2018,))
    panel, spec = _build(raw, exposure_mode='binary', flood_threshold=0.5)
    assert spec.exposure_mode == 'binary'
    assert set(panel['exposure_current'].unique()) <= {0.0, 1.0}
    expected = (raw.sort_values(['ubigeo', 'year', 'epi_week'])['flood_intensity'] > 0.5).astype(float)
    np.testing.assert_array_equal(panel['exposure_current'].to_numpy(), expected.to_numpy())


def test_covariates_detected_and_flagged():
    raw = make_raw(n_cities=3, years=(2018,))
    rng = np.random.default_rng(0)
    raw['population_density'] = rng.uniform(10, 500, len(raw))
    raw['temperature'] = rng.normal(26, 2, len(raw))
    raw.loc[3, 'temperature'] = np.nan
    panel, spec = _build(raw)
    assert spec.population_density_available
    assert spec.weather_available
    assert not spec.light_density_available
    assert 'log_population_density' in spec.control_terms
    assert {'temperature', 'temperature_sq'} <= set(spec.control_terms)
    assert panel['temperature'].notna().all()

    _, spec_nc = _build(raw, include_controls=False)
    assert spec_nc.control_terms == ()


def test_city_exposure_sd_and_summary(panel_and_spec):
    panel, spec = panel_and_spec
    sd = panel.groupby('city_id')['flood_intensity'].std()
    per_city = panel.groupby('city_id')['city_exposure_sd'].first()
    np.testing.assert_allclose(per_city.to_numpy(), sd.to_numpy())

    summary = summarize_panel(panel, spec)
    assert summary['n_cities'] == 10
    assert summary['n_weeks'] == 104
    assert summary['flood_weeks'] == int((panel['flood_intensity'] > 0).sum())
