import logging

import pytest

from flood_attribution import build_panel, fit_poisson_fe

from _helpers import make_raw


@pytest.fixture(autouse=True)
def _quiet_logs(caplog):
    caplog.set_level(logging.WARNING, logger="flood_attribution")


@pytest.fixture(scope="session")
def raw():
    return make_raw(n_cities=10)


@pytest.fixture(scope="session")
def panel_and_spec(raw):
    return build_panel(
        raw,
        response_col='malaria_cases',
        exposure_col='flood_intensity',
        city_col='ubigeo',
        week_col='epi_week',
    )


@pytest.fixture(scope="session")
def fitted(panel_and_spec):
    panel, spec = panel_and_spec
    return fit_poisson_fe(panel, spec)
