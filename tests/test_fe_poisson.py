import json

import numpy as np
import pandas as pd
import pytest

from flood_attribution import (
    FittedModel,
    FittingError,
    MissingRequiredColumnError,
    fit_poisson_fe,
    predict,
)
from flood_attribution.fe_poisson import build_design, fixed_effect_dummies

from _helpers import TRUE_BETA, make_model


def test_recovers_flood_coefficients(fitted, panel_and_spec):
    _, spec = panel_and_spec
    for term, beta in zip(spec.exposure_terms, TRUE_BETA):
        assert fitted.coefficients[term] == pytest.approx(beta, abs=0.06)
    assert fitted.converged
    assert fitted.n_obs == 1040
    assert fitted.cov_type == 'cluster'


def test_covariance_aligned_and_symmetric(fitted):
    cov = fitted.covariance
    assert list(cov.index) == list(fitted.coefficients.index)
    assert list(cov.columns) == list(fitted.coefficients.index)
    np.testing.assert_allclose(cov.to_numpy(), cov.to_numpy().T)
    assert np.all(np.diag(cov.to_numpy()) > 0)


def test_fixed_effect_lookup_covers_every_group(fitted, panel_and_spec):
    panel, _ = panel_and_spec
    city_fe = fitted.fixed_effects['city_id']
    week_fe = fitted.fixed_effects['year_week']
    assert set(city_fe) == set(panel['city_id'])
    assert set(week_fe) == set(panel['year_week'])
    assert city_fe[sorted(city_fe)[0]] == 0.0
    assert min(week_fe) == 201801 and week_fe[201801] == 0.0


def test_fitted_values_match_glm_mean(fitted, panel_and_spec):
    panel, spec = panel_and_spec
    mu = predict(fitted, panel)
    # Poisson score equations with a constant: fitted total equals observed total
    assert mu.sum() == pytest.approx(panel['case_count'].sum(), rel=1e-4)


def test_nonrobust_and_hc1_covariance(panel_and_spec):
    panel, spec = panel_and_spec
    nonrobust = fit_poisson_fe(panel, spec, cov_type='nonrobust')
    hc1 = fit_poisson_fe(panel, spec, cov_type='HC1')
    assert nonrobust.cov_type == 'nonrobust'
    assert hc1.cov_type == 'HC1'
    np.testing.assert_allclose(nonrobust.coefficients, hc1.coefficients)


def test_json_round_trip_preserves_predictions(fitted, panel_and_spec):
    panel, _ = panel_and_spec
    restored = FittedModel.from_dict(json.loads(json.dumps(fitted.to_dict())))
    np.testing.assert_allclose(predict(restored, panel), predict(fitted, panel))
    pd.testing.assert_frame_equal(restored.covariance, fitted.covariance)


def test_missing_regressor_column(panel_and_spec):
    panel, spec = panel_and_spec
    with pytest.raises(MissingRequiredColumnError) as exc:
        fit_poisson_fe(panel.drop(columns=['exposure_lag3']), spec)
    assert 'exposure_lag3' in exc.value.missing


def test_non_finite_regressor_fails(panel_and_spec):
    panel, spec = panel_and_spec
    broken = panel.copy()
    broken['exposure_lag4'] = np.nan
    with pytest.raises(FittingError):
        fit_poisson_fe(broken, spec)


def test_coefficient_accessors():
    model = make_model()
    np.testing.assert_allclose(model.coef(['exposure_lag1', 'exposure_current']), [0.1, 0.2])
    np.testing.assert_allclose(model.se(['exposure_current']), [0.05])
    with pytest.raises(MissingRequiredColumnError):
        model.cov(['exposure_lag9'])


def test_model_holds_private_copies():
    coefs = pd.Series([0.2, 0.1], index=['exposure_current', 'exposure_lag1'])
    cov = pd.DataFrame(np.diag([0.0025, 0.0016]), index=coefs.index, columns=coefs.index)
    lookup = {'city_id': {'A': 0.0, 'B': 0.4}}
    model = FittedModel(coefficients=coefs, covariance=cov, fixed_effects=lookup)

    coefs['exposure_current'] = 9.0
    cov.iloc[0, 0] = 9.0
    lookup['city_id']['B'] = 9.0
    assert model.coefficients['exposure_current'] == 0.2
    assert model.covariance.iloc[0, 0] == 0.0025
    assert model.fixed_effects['city_id']['B'] == 0.4

    beta = model.coef(['exposure_current'])
    sigma = model.cov(['exposure_current'])
    beta[0] = 5.0
    sigma[0, 0] = 5.0
    assert model.coef(['exposure_current'])[0] == 0.2
    assert model.cov(['exposure_current'])[0, 0] == 0.0025


def test_covariance_must_match_coefficients():
    with pytest.raises(ValueError):
        FittedModel(
            coefficients=pd.Series({'a': 1.0, 'b': 2.0}),
            covariance=pd.DataFrame(np.eye(2), index=['a', 'c'], columns=['a', 'c']),
            fixed_effects={},
        )


def test_dummies_drop_reference_level():
    values = pd.Series(['b', 'a', 'c', 'a'])
    dummies, name_keys, ref = fixed_effect_dummies(values, 'city_id')
    assert ref == 'a'
    assert [k for _, k in name_keys] == ['b', 'c']
    assert dummies.shape == (4, 2)
    assert dummies.sum(axis=1).tolist() == [1.0, 0.0, 1.0, 0.0]


def test_design_has_constant_and_regressors(panel_and_spec):
    panel, spec = panel_and_spec
    X, fe_columns = build_design(panel, spec)
    assert 'const' in X.columns
    assert all(r in X.columns for r in spec.regressors)
    assert set(fe_columns) == {'city_id', 'year_week'}
    assert X.shape[1] == 1 + len(spec.regressors) + 9 + 103
