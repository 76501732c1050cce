"""
01b: FLOOD-ATTRIBUTABLE MALARIA BURDEN
======================================
Observation-level PAF and attributable cases, city totals and global
attribution under three weightings (flood weeks, cases, unweighted).

Per observation i (city-week), with K = flood terms and x_i their values:
- theta_i = x_i' beta_K,  Var(theta_i) = x_i' Sigma_K x_i
- PAF_i = 1 - exp(-theta_i), interval clipped to [0, 1]
- attributable cases = PAF_i * observed cases   (--estimator paf)
                     = fitted - no-flood fitted (--estimator difference)

Input:
- phase0_data_prep/results/flood_malaria_panel.parquet, model_spec.json
- phase1_core_model/results/fitted_model.json

Output (results/):
- attributable_by_observation.parquet
- attributable_by_city.csv     (ADM3-keyed)
- attributable_global.csv
- attributable_summary.json    (national totals + estimation report)

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
    EstimationReport,
    FittedModel,
    ModelSpec,
    aggregate_by_city,
    city_join_table,
    global_attribution,
    national_totals,
    per_observation_effects,
    write_json,
)

# =============================================================================
# PATHS
# =============================================================================

SCRIPT_DIR = Path(__file__).parent
PHASE0_RESULTS = SCRIPT_DIR.parent / 'phase0_data_prep' / 'results'
OUTPUT_DIR = SCRIPT_DIR / 'results'
OUTPUT_DIR.mkdir(exist_ok=True)


def load_inputs(model_file: Path):
    panel = pd.read_parquet(PHASE0_RESULTS / 'flood_malaria_panel.parquet')
    panel[Config.CITY_COL] = panel[Config.CITY_COL].astype(str)
    with open(PHASE0_RESULTS / 'model_spec.json') as f:
        spec = ModelSpec.from_dict(json.load(f))
    with open(model_file) as f:
        model = FittedModel.from_dict(json.load(f))
    return panel, spec, model


def main():
    parser = argparse.ArgumentParser(
        description='Flood-attributable malaria burden',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python 01b_attributable_burden.py
  python 01b_attributable_burden.py --estimator difference --city-ci delta
  python 01b_attributable_burden.py --terms exposure_current exposure_lag1
        """
    )
    parser.add_argument('--estimator', choices=Config.ATTRIBUTABLE_ESTIMATORS, default='paf')
    parser.add_argument('--city-ci', choices=Config.CITY_CI_METHODS, default='sum_of_bounds',
                        help='City interval: sum of observation bounds or delta method on the total')
    parser.add_argument('--terms', nargs='+', default=None,
                        help='Flood terms entering the total effect (default: all lags)')
    parser.add_argument('--ci-level', type=float, default=Config.CI_LEVEL)
    parser.add_argument('--model-file', type=str, default=str(OUTPUT_DIR / 'fitted_model.json'))
    parser.add_argument('--log-file', type=str, default=None)
    args = parser.parse_args()

    log_file = args.log_file or str(OUTPUT_DIR / 'attributable_burden.log')
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
        attributable_estimator=args.estimator,
        city_ci_method=args.city_ci,
        effect_terms=tuple(args.terms) if args.terms else None,
    )

    print("=" * 70)
    print("01b: FLOOD-ATTRIBUTABLE MALARIA BURDEN")
    print("=" * 70)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    panel, spec, model = load_inputs(Path(args.model_file))
    print(f"\nPanel: {len(panel):,} rows, {panel[Config.CITY_COL].nunique()} cities")
    print(f"  Effect terms: {', '.join(config.terms_for(spec))}")
    print(f"  Estimator: {config.attributable_estimator}, city CI: {config.city_ci_method}")

    report = EstimationReport()

    print("\n" + "-" * 70)
    print("Observation-Level Effects")
    print("-" * 70)
    obs = per_observation_effects(panel, model, spec, config)
    obs.to_parquet(OUTPUT_DIR / 'attributable_by_observation.parquet', index=False)
    print(f"  Mean PAF: {obs['paf'].mean() * 100:.2f}%")
    print(f"  Zero-baseline rows: {int(obs['zero_baseline'].sum())}")

    print("\n" + "-" * 70)
    print("City Aggregation")
    print("-" * 70)
    cities = aggregate_by_city(obs, spec, config, model=model, report=report)
    city_join_table(cities).to_csv(OUTPUT_DIR / 'attributable_by_city.csv', index=False)

    top = cities.sort_values('total_attributable_cases', ascending=False).head(10)
    for _, row in top.iterrows():
        print(f"  {row[Config.CITY_COL]:>8}: {row['total_attributable_cases']:>10.1f} "
              f"({row['total_attributable_lower']:.1f}-{row['total_attributable_upper']:.1f}) "
              f"PAF {row['paf_mean_pct']:.2f}%")

    print("\n" + "-" * 70)
    print("Global Attribution")
    print("-" * 70)
    global_table = global_attribution(cities)
    global_table.to_csv(OUTPUT_DIR / 'attributable_global.csv', index=False)
    for _, row in global_table.iterrows():
        print(f"  {row['weighting']:<12} PAF {row['paf_pct']:.2f}% "
              f"({row['paf_lower_pct']:.2f}%-{row['paf_upper_pct']:.2f}%)")

    totals = national_totals(cities)
    print(f"\n  National attributable cases: {totals['total_attributable_cases']:,.0f} "
          f"of {totals['total_cases']:,.0f} ({totals['attributable_share'] * 100:.2f}%)")

    report.log_summary()
    write_json({
        'config': {
            'estimator': config.attributable_estimator,
            'city_ci_method': config.city_ci_method,
            'ci_level': config.ci_level,
            'effect_terms': list(config.terms_for(spec)),
        },
        'national': totals,
        'global': global_table,
        'report': report.summary(),
        'timestamp': datetime.now().isoformat(),
    }, OUTPUT_DIR / 'attributable_summary.json')

    print("\n" + "=" * 70)
    print(f"Output directory: {OUTPUT_DIR}")
    print(f"Completed: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70)


if __name__ == "__main__":
    main()
