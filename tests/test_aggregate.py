import numpy as np
import pandas as pd
import pytest

from flood_attribution import (
    AnalysisConfig,
    EstimationReport,
    ModelSpec,
    aggregate_by_city,
    global_attribution,
    national_totals,
    per_observation_effects,
)

from _helpers import TERMS, make_model, make_rows

SPEC = ModelSpec(exposure_terms=tuple(TERMS), offset='log_population', max_lag=1,
                 global_exposure_sd=1.0, offset_available=True)


@pytest.fixture
def obs():
    return per_observation_effects(make_rows(), make_model(), SPEC)


def _city_table(paf, lower, upper, flood_weeks, cases):
    return pd.DataFrame({
        'city_id': [f'c{i}' for i in range(len(paf))],
        'paf_mean': paf,
        'paf_lower_mean': lower,
        'paf_upper_mean': upper,
        'flood_weeks': flood_weeks,
        'total_cases': cases,
    })


def test_city_totals_are_additive(obs):
    cities = aggregate_by_city(obs, SPEC)
    assert cities['city_id'].tolist() == ['A', 'B']
    assert cities['total_attributable_cases'].sum() == pytest.approx(obs['attributable_cases'].sum())
    assert cities['total_attributable_lower'].sum() == pytest.approx(obs['attributable_cases_lower'].sum())
    a = cities.set_index('city_id').loc['A']
    assert a['n_weeks'] == 3
    assert a['flood_weeks'] == 2
    assert a['total_cases'] == 35
    assert a['paf_mean'] == pytest.approx(obs.loc[obs['city_id'] == 'A', 'paf'].mean())
    assert a['avg_weekly_attributable'] == pytest.approx(a['total_attributable_cases'] / 3)
    assert a['attributable_share'] == pytest.approx(a['total_attributable_cases'] / 35)
    assert a['population_mean'] == 10000.0
    assert (cities['ci_status'] == 'ok').all()


def test_city_with_no_cases_has_zero_share():
    rows = make_rows()
    rows.loc[rows['city_id'] == 'B', 'case_count'] = 0
    obs = per_observation_effects(rows, make_model(), SPEC)
    cities = aggregate_by_city(obs, SPEC).set_index('city_id')
    assert cities.loc['B', 'attributable_share'] == 0.0
    assert np.isfinite(cities['attributable_share']).all()


@pytest.mark.parametrize('estimator', ['paf', 'difference'])
def test_delta_method_city_interval(estimator):
    model = make_model()
    config = AnalysisConfig(attributable_estimator=estimator, city_ci_method='delta')
    obs = per_observation_effects(make_rows(), model, SPEC, config)
    report = EstimationReport()
    cities = aggregate_by_city(obs, SPEC, config, model=model, report=report)
    assert (cities['ci_status'] == 'ok').all()
    assert (cities['total_attributable_lower'] <= cities['total_attributable_cases']).all()
    assert (cities['total_attributable_cases'] <= cities['total_attributable_upper']).all()
    assert report.summary()['by_stage']['city_delta_ci'] == {'succeeded': 2, 'failed': 0}
    if estimator == 'paf':
        assert (cities['total_attributable_lower'] >= 0).all()
        assert (cities['total_attributable_upper'] <= cities['total_cases']).all()


def test_delta_method_single_term_matches_hand_gradient():
    model = make_model()
    config = AnalysisConfig(attributable_estimator='difference', city_ci_method='delta',
                            effect_terms=('exposure_current',))
    obs = per_observation_effects(make_rows(), model, SPEC, config)
    cities = aggregate_by_city(obs, SPEC, config, model=model).set_index('city_id')
    a = obs[obs['city_id'] == 'A']
    gradient = (a['predicted_factual'] * a['exposure_current']).sum()
    se = gradient * 0.05
    assert cities.loc['A', 'total_attributable_upper'] - cities.loc['A', 'total_attributable_cases'] == \
        pytest.approx(1.96 * se)


def test_delta_method_failure_is_recorded(obs):
    bad = make_model(cov=((0.01, 0.01), (0.01, 0.01)))
    report = EstimationReport()
    cities = aggregate_by_city(obs, SPEC, AnalysisConfig(city_ci_method='delta'), model=bad, report=report)
    assert (cities['ci_status'] == 'SingularCovarianceError').all()
    assert cities['total_attributable_cases'].notna().all()
    assert len(report.failures) == 2
    assert national_totals(cities)['total_attributable_lower'] is None


def test_delta_method_needs_model(obs):
    with pytest.raises(ValueError):
        aggregate_by_city(obs, SPEC, AnalysisConfig(city_ci_method='delta'))


def test_global_weightings():
    table = _city_table(paf=[0.1, 0.3], lower=[0.05, 0.2], upper=[0.15, 0.4],
                        flood_weeks=[3, 1], cases=[100, 300])
    result = global_attribution(table).set_index('weighting')
    assert result.loc['flood_weeks', 'paf'] == pytest.approx((3 * 0.1 + 1 * 0.3) / 4)
    assert result.loc['cases', 'paf'] == pytest.approx((100 * 0.1 + 300 * 0.3) / 400)
    assert result.loc['unweighted', 'paf'] == pytest.approx(0.2)
    assert result.loc['unweighted', 'paf_lower'] == pytest.approx(0.125)
    assert result.loc['unweighted', 'paf_pct'] == pytest.approx(20.0)
    assert (result['paf_lower'] <= result['paf']).all()
    assert (result['paf'] <= result['paf_upper']).all()
    assert not result['zero_total_weight'].any()


def test_global_zero_total_weight_reports_zero():
    table = _city_table(paf=[0.1, 0.3], lower=[0.05, 0.2], upper=[0.15, 0.4],
                        flood_weeks=[0, 0], cases=[10, 20])
    result = global_attribution(table).set_index('weighting')
    row = result.loc['flood_weeks']
    assert row['paf'] == 0.0 and row['paf_lower'] == 0.0 and row['paf_upper'] == 0.0
    assert row['zero_total_weight']
    assert not result.loc['cases', 'zero_total_weight']


def test_unknown_weighting_rejected():
    table = _city_table([0.1], [0.05], [0.15], [1], [10])
    with pytest.raises(ValueError):
        global_attribution(table, weightings=('population',))


def test_fitted_pipeline_national_totals(fitted, panel_and_spec):
    panel, spec = panel_and_spec
    obs = per_observation_effects(panel, fitted, spec)
    cities = aggregate_by_city(obs, spec)
    totals = national_totals(cities)
    assert totals['n_cities'] == 10
    assert totals['total_cases'] == panel['case_count'].sum()
    assert totals['total_attributable_lower'] <= totals['total_attributable_cases'] <= \
        totals['total_attributable_upper']
    assert 0 < totals['attributable_share'] < 1
    result = global_attribution(cities)
    assert result['paf'].between(0, 1).all()
