import numpy as np
import pytest

from flood_attribution import (
    MissingRequiredColumnError,
    UnmatchedGroupKeyWarning,
    counterfactual_pair,
    linear_predictor,
    predict,
    sd_scenario_overrides,
    zero_exposure_overrides,
)
from flood_attribution.counterfactual import fixed_effect_contribution

from _helpers import TERMS, make_model, make_rows


def test_linear_predictor_by_hand():
    model = make_model()
    rows = make_rows()
    eta = linear_predictor(model, rows)
    expected = (
        -7.0
        + 0.2 * rows['exposure_current'] + 0.1 * rows['exposure_lag1']
        + rows['city_id'].map({'A': 0.0, 'B': 0.4})
        + rows['year_week'].map({201801: 0.0, 201802: -0.2, 201803: 0.1})
        + rows['log_population']
    )
    np.testing.assert_allclose(eta, expected.to_numpy())


def test_ratio_depends_only_on_overridden_terms():
    model = make_model()
    rows = make_rows()
    pair = counterfactual_pair(model, rows, zero_exposure_overrides(TERMS))
    ratio = pair['predicted_factual'] / pair['predicted_counterfactual']
    expected = np.exp(0.2 * rows['exposure_current'] + 0.1 * rows['exposure_lag1'])
    np.testing.assert_allclose(ratio.to_numpy(), expected.to_numpy())

    # shifting fixed effects and offset leaves the ratio unchanged
    shifted = make_model(fixed_effects={'city_id': {'A': 3.0, 'B': -2.0},
                                        'year_week': {201801: 1.0, 201802: 0.5, 201803: 0.0}},
                         intercept=-1.0)
    rows2 = rows.assign(log_population=rows['log_population'] + 4.0)
    pair2 = counterfactual_pair(shifted, rows2, zero_exposure_overrides(TERMS))
    np.testing.assert_allclose(
        (pair2['predicted_factual'] / pair2['predicted_counterfactual']).to_numpy(),
        ratio.to_numpy(),
    )


def test_predictions_are_deterministic():
    model = make_model()
    rows = make_rows()
    first = predict(model, rows, {'exposure_current': 1.5})
    second = predict(model, rows, {'exposure_current': 1.5})
    np.testing.assert_array_equal(first, second)


def test_overrides_do_not_modify_rows():
    model = make_model()
    rows = make_rows()
    before = rows.copy()
    predict(model, rows, zero_exposure_overrides(TERMS))
    assert rows.equals(before)


def test_sd_scenario_overrides(panel_and_spec):
    _, spec = panel_and_spec
    overrides = sd_scenario_overrides(spec, 0.7)
    assert overrides['exposure_current'] == 0.7
    assert all(overrides[t] == 0.0 for t in spec.lag_terms)
    assert set(overrides) == set(spec.exposure_terms)


def test_unseen_group_key_contributes_zero_with_warning():
    model = make_model()
    rows = make_rows()
    rows.loc[0, 'city_id'] = 'Z'
    with pytest.warns(UnmatchedGroupKeyWarning):
        contrib = fixed_effect_contribution(model, rows)
    # row 0 is city Z (0) in week 201801 (0)
    assert contrib[0] == 0.0
    assert contrib[3] == pytest.approx(0.4)


def test_array_override_length_checked():
    model = make_model()
    rows = make_rows()
    with pytest.raises(ValueError):
        predict(model, rows, {'exposure_current': np.ones(len(rows) + 1)})


def test_unknown_override_rejected():
    with pytest.raises(MissingRequiredColumnError):
        predict(make_model(), make_rows(), {'exposure_lag9': 0.0})


def test_missing_offset_column_rejected():
    rows = make_rows().drop(columns=['log_population'])
    with pytest.raises(MissingRequiredColumnError):
        predict(make_model(), rows)


def test_model_without_offset_ignores_population():
    model = make_model(offset=None)
    rows = make_rows()
    eta = linear_predictor(model, rows)
    eta_bigger_pop = linear_predictor(model, rows.assign(log_population=rows['log_population'] + 3))
    np.testing.assert_array_equal(eta, eta_bigger_pop)
