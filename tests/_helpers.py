import numpy as np
import pandas as pd

from flood_attribution import FittedModel

TRUE_BETA = (0.20, 0.10, 0.0, 0.0, 0.0)
TERMS = ['exposure_current', 'exposure_lag1']


def make_raw(n_cities=6, years=(2018, 2019), n_weeks=52, beta=TRUE_BETA, seed=42,
             flood_prob=0.15, with_population=True, base_rate=6.5e-4):
    """Synthetic weekly malaria counts driven by a sparse flood series.

    Columns follow the raw upstream naming (ubigeo, epi_week, malaria_cases,
    flood_intensity) so tests exercise the renaming in build_panel.
    """
    rng = np.random.default_rng(seed)
    rows = []
    for ci in range(n_cities):
        city = str(150101 + ci)
        pop = 20000.0 * (ci + 1)
        city_effect = rng.normal(0, 0.3)
        floods = np.where(rng.random(len(years) * n_weeks) < flood_prob,
                          rng.exponential(1.0, len(years) * n_weeks), 0.0)
        eta_flood = np.zeros_like(floods)
        for k, b in enumerate(beta):
            lagged = np.concatenate([np.zeros(k), floods[:len(floods) - k]]) if k else floods
            eta_flood += b * lagged
        t = 0
        for y in years:
            for w in range(1, n_weeks + 1):
                season = 0.3 * np.sin(2 * np.pi * w / n_weeks)
                mu = np.exp(np.log(base_rate) + city_effect + season + eta_flood[t] + np.log(pop))
                rows.append({
                    'ubigeo': city,
                    'year': y,
                    'epi_week': w,
                    'malaria_cases': int(rng.poisson(mu)),
                    'flood_intensity': float(floods[t]),
                    'population': pop,
                })
                t += 1
    raw = pd.DataFrame(rows)
    if not with_population:
        raw = raw.drop(columns=['population'])
    return raw


def make_model(beta=(0.2, 0.1), cov=((0.0025, 0.0), (0.0, 0.0016)), terms=None,
               fixed_effects=None, intercept=-7.0, offset='log_population'):
    """Hand-built FittedModel with known coefficients."""
    terms = list(terms or TERMS[:len(beta)])
    cov = np.asarray(cov, dtype=float)
    if fixed_effects is None:
        fixed_effects = {
            'city_id': {'A': 0.0, 'B': 0.4},
            'year_week': {201801: 0.0, 201802: -0.2, 201803: 0.1},
        }
    return FittedModel(
        coefficients=pd.Series(beta, index=terms, dtype=float),
        covariance=pd.DataFrame(cov, index=terms, columns=terms),
        fixed_effects=fixed_effects,
        intercept=intercept,
        offset=offset,
    )


def make_rows():
    """Six observation rows over cities A/B and weeks 201801-201803."""
    return pd.DataFrame({
        'city_id': ['A', 'A', 'A', 'B', 'B', 'B'],
        'year': [2018] * 6,
        'week': [1, 2, 3, 1, 2, 3],
        'year_week': [201801, 201802, 201803] * 2,
        'case_count': [10, 0, 25, 40, 12, 7],
        'exposure_current': [0.0, 1.0, 2.0, 0.0, 0.5, 0.0],
        'exposure_lag1': [0.0, 0.0, 1.0, 0.0, 0.0, 0.5],
        'flood_week': [0, 1, 1, 0, 1, 0],
        'log_population': np.log([10000.0] * 3 + [50000.0] * 3),
        'population': [10000.0] * 3 + [50000.0] * 3,
    })
