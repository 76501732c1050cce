"""
01a: FIXED-EFFECTS POISSON WITH DISTRIBUTED FLOOD LAGS (PRIMARY MODEL)
======================================================================
log E[cases_it] = beta_0 * flood_it + sum_{k=1..4} beta_k * flood_i,t-k
                  + controls + city FE + year-week FE + log(population_it)

Quasi-Poisson dispersion (scale='X2') with city-clustered covariance.

Input (phase0_data_prep/results/):
- flood_malaria_panel.parquet
- model_spec.json

Output (results/):
- fitted_model.json          coefficients, covariance, fixed effects
- lag_effects.csv            per-lag and total RR / percent change
- main_effects.json          total effect, RR, PAF, percent change per SD
- fitted_model_no_controls.json  (with --sensitivity)

Author: Flood-Malaria Attribution Pipeline
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

import pandas as pd

sys.path.insert(0, str(Path(__file__).parent.parent))
from flood_attribution import (
    AnalysisConfig,
    Config,
    FittedModel,
    ModelSpec,
    fit_poisson_fe,
    lag_effect_table,
    paf_from_effect,
    percent_change,
    percent_change_per_sd,
    rate_ratio,
    total_effect,
    write_json,
)

# =============================================================================
# PATHS
# =============================================================================

SCRIPT_DIR = Path(__file__).parent
PHASE0_RESULTS = SCRIPT_DIR.parent / 'phase0_data_prep' / 'results'
OUTPUT_DIR = SCRIPT_DIR / 'results'
OUTPUT_DIR.mkdir(exist_ok=True)


def load_panel_and_spec():
    panel = pd.read_parquet(PHASE0_RESULTS / 'flood_malaria_panel.parquet')
    panel[Config.CITY_COL] = panel[Config.CITY_COL].astype(str)
    with open(PHASE0_RESULTS / 'model_spec.json') as f:
        spec = ModelSpec.from_dict(json.load(f))
    return panel, spec


def summarize_fit(model: FittedModel, spec: ModelSpec, config: AnalysisConfig) -> dict:
    """Total effect on the log, RR, PAF and per-SD percent change scales."""
    theta = total_effect(model, config.terms_for(spec), config.ci_level)
    per_sd = percent_change_per_sd(model, config.terms_for(spec), spec.global_exposure_sd, config.ci_level)
    return {
        'n_obs': model.n_obs,
        'dispersion': model.dispersion,
        'aic': model.aic,
        'converged': model.converged,
        'cov_type': model.cov_type,
        'effect_terms': list(config.terms_for(spec)),
        'total_effect': theta,
        'rate_ratio': rate_ratio(theta),
        'percent_change': percent_change(theta),
        'paf': paf_from_effect(theta),
        'percent_change_per_sd': per_sd,
        'global_exposure_sd': spec.global_exposure_sd,
    }


def print_lag_table(table: pd.DataFrame):
    print(f"\n  {'Term':<18} {'Coef':>9} {'SE':>9} {'RR (95% CI)':>26} {'p':>8}")
    for _, row in table.iterrows():
        rr = f"{row['rr']:.3f} ({row['rr_lower']:.3f}-{row['rr_upper']:.3f})"
        print(f"  {row['term']:<18} {row['coefficient']:>9.4f} {row['std_error']:>9.4f} "
              f"{rr:>26} {row['p_value']:>8.4f}")


def main():
    parser = argparse.ArgumentParser(
        description='Fixed-effects Poisson with flood lags 0..4',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python 01a_fe_poisson_flood_lags.py
  python 01a_fe_poisson_flood_lags.py --cov-type HC1
  python 01a_fe_poisson_flood_lags.py --sensitivity --ci-level 0.90
        """
    )
    parser.add_argument('--cov-type', choices=['cluster', 'HC1', 'nonrobust'], default=Config.COV_TYPE)
    parser.add_argument('--pure-poisson', action='store_true',
                        help='Do not estimate the dispersion (scale fixed at 1)')
    parser.add_argument('--max-iter', type=int, default=Config.MAX_ITER)
    parser.add_argument('--ci-level', type=float, default=Config.CI_LEVEL)
    parser.add_argument('--sensitivity', action='store_true',
                        help='Also fit the exposure-only specification (no controls)')
    parser.add_argument('--log-file', type=str, default=None)
    args = parser.parse_args()

    log_file = args.log_file or str(OUTPUT_DIR / 'fe_poisson_flood_lags.log')
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s %(name)s %(levelname)s: %(message)s',
        handlers=[
            logging.FileHandler(log_file, mode='w'),
            logging.StreamHandler(sys.stdout),
        ],
        force=True,
    )
    config = AnalysisConfig(
        ci_level=args.ci_level,
        cov_type=args.cov_type,
        scale=None if args.pure_poisson else Config.SCALE,
        max_iter=args.max_iter,
    )

    print("=" * 70)
    print("01a: FIXED-EFFECTS POISSON WITH FLOOD LAGS 0-4")
    print("=" * 70)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    panel, spec = load_panel_and_spec()
    print(f"\nPanel: {len(panel):,} rows, {panel[Config.CITY_COL].nunique()} cities")
    print(f"  Exposure terms: {', '.join(spec.exposure_terms)}")
    print(f"  Controls: {', '.join(spec.control_terms) or 'none'}")
    print(f"  Offset: {spec.offset or 'none'}")
    print(f"  Covariance: {config.cov_type}, scale: {config.scale or 'fixed'}")

    print("\n" + "-" * 70)
    print("Fitting Primary Model")
    print("-" * 70)

    model = fit_poisson_fe(panel, spec, cov_type=config.cov_type, scale=config.scale,
                           max_iter=config.max_iter)
    write_json(model.to_dict(), OUTPUT_DIR / 'fitted_model.json')

    table = lag_effect_table(model, spec, config.ci_level)
    table.to_csv(OUTPUT_DIR / 'lag_effects.csv', index=False)
    print_lag_table(table)

    summary = summarize_fit(model, spec, config)
    paf = summary['paf']
    per_sd = summary['percent_change_per_sd']
    print(f"\n  PAF (all lags at unit exposure): {paf.point * 100:.2f}% "
          f"({paf.ci_lower * 100:.2f}%-{paf.ci_upper * 100:.2f}%)")
    print(f"  Percent change per SD: {per_sd.point:.2f}% ({per_sd.ci_lower:.2f}%-{per_sd.ci_upper:.2f}%)")

    results = {'primary': summary, 'spec': spec.to_dict()}

    if args.sensitivity:
        print("\n" + "-" * 70)
        print("Sensitivity: Exposure-Only Specification")
        print("-" * 70)
        spec_nc = spec.without_controls()
        model_nc = fit_poisson_fe(panel, spec_nc, cov_type=config.cov_type, scale=config.scale,
                                  max_iter=config.max_iter)
        write_json(model_nc.to_dict(), OUTPUT_DIR / 'fitted_model_no_controls.json')
        lag_effect_table(model_nc, spec_nc, config.ci_level).to_csv(
            OUTPUT_DIR / 'lag_effects_no_controls.csv', index=False)
        results['no_controls'] = summarize_fit(model_nc, spec_nc, config)
        theta_nc = results['no_controls']['total_effect']
        print(f"  Total effect without controls: {theta_nc.point:.4f} (SE {theta_nc.se:.4f})")

    results['timestamp'] = datetime.now().isoformat()
    write_json(results, OUTPUT_DIR / 'main_effects.json')

    print("\n" + "=" * 70)
    print(f"Output directory: {OUTPUT_DIR}")
    print(f"Completed: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70)


if __name__ == "__main__":
    main()
