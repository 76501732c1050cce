import json

import numpy as np
import pandas as pd
import pytest

from flood_attribution import (
    AnalysisConfig,
    EffectEstimate,
    EffectFailure,
    EstimationReport,
    InvalidBoundOrderingError,
    MissingProjectionError,
    MissingRequiredColumnError,
    SingularCovarianceError,
    city_join_table,
    convert_to_json_serializable,
    run_estimate,
    write_json,
)


def _fail(exc):
    raise exc


def test_run_estimate_success_and_failure():
    report = EstimationReport()
    ok = run_estimate('150101', 'scenario_effect', lambda x: x * 2, 21, report=report)
    assert ok.ok and ok.value == 42

    bad = run_estimate('150102', 'scenario_effect', _fail, SingularCovarianceError("singular"), report=report)
    assert not bad.ok
    assert bad.value is None
    assert bad.failure.error_type == 'SingularCovarianceError'
    assert not bad.failure.defect

    summary = report.summary()
    assert summary['n_succeeded'] == 1
    assert summary['n_failed'] == 1
    assert summary['by_stage'] == {'scenario_effect': {'succeeded': 1, 'failed': 1}}


def test_run_estimate_does_not_swallow_other_errors():
    with pytest.raises(ZeroDivisionError):
        run_estimate('x', 'stage', lambda: 1 / 0)


def test_bound_ordering_failure_is_a_defect():
    report = EstimationReport()
    run_estimate('c', 'paf', _fail, InvalidBoundOrderingError("lower > point"), report=report)
    assert report.defects[0].defect
    frame = report.to_frame()
    assert frame['status'].tolist() == ['defect']


def test_error_messages_are_readable():
    err = MissingRequiredColumnError(['flood_intensity'], ['a', 'b'])
    assert str(err).startswith("Required column(s) not found: ['flood_intensity']")
    assert isinstance(err, KeyError)
    assert str(MissingProjectionError("no SSP2 2050 row")) == "no SSP2 2050 row"
    failure = EffectFailure.from_exception('c', 'stage', err)
    assert failure.message == str(err)


def test_convert_to_json_serializable():
    est = EffectEstimate('paf', 0.18, 0.04, 0.1, 0.26, scale='paf')
    obj = {
        'int': np.int64(3),
        'float': np.float32(0.5),
        'nan': float('nan'),
        'bool': np.bool_(True),
        'array': np.array([1.0, np.inf]),
        'estimate': est,
        'frame': pd.DataFrame({'a': [1, 2]}),
        np.int64(7): 'key',
    }
    out = convert_to_json_serializable(obj)
    json.dumps(out)
    assert out['int'] == 3
    assert out['nan'] is None
    assert out['array'] == [1.0, None]
    assert out['estimate']['point_pct'] == pytest.approx(18.0)
    assert out['frame'] == [{'a': 1}, {'a': 2}]
    assert out[7] == 'key'


def test_write_json(tmp_path):
    path = write_json({'config': AnalysisConfig().ci_level, 'values': np.arange(3)}, tmp_path / 'sub' / 'out.json')
    with open(path) as f:
        assert json.load(f) == {'config': 0.95, 'values': [0, 1, 2]}


def test_city_join_table_keys():
    cities = pd.DataFrame({'city_id': ['10101', '250301', 'LIM-01'], 'paf_mean': [0.1, 0.2, 0.3]})
    joined = city_join_table(cities)
    assert joined.columns[0] == 'ADM3'
    assert joined['ADM3'].tolist() == ['010101', '250301', 'LIM-01']
    assert 'city_id' not in joined.columns


def test_invalid_config_choice():
    with pytest.raises(ValueError):
        AnalysisConfig(attributable_estimator='ratio')
    with pytest.raises(ValueError):
        AnalysisConfig(city_ci_method='bootstrap')
