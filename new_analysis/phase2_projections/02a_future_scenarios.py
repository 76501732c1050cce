"""
02a: FUTURE FLOOD SCENARIOS UNDER SSP POPULATION PATHWAYS
=========================================================
Projected malaria cases per city when a one-standard-deviation flood hits the
current week, for each (SSP scenario, year).

- Percent change from the fitted model: current exposure = city SD, lags = 0,
  versus no flood, on the city's last observed week
- Baseline = historical annual cases, scaled by projected / historical
  population when the model carries the population offset and a projection
  table is supplied (otherwise used unscaled, flagged population_adjusted=False)

Input:
- phase0_data_prep/results/flood_malaria_panel.parquet, model_spec.json
- phase1_core_model/results/fitted_model.json
- Optional population projections: city_id, scenario, year, population

Output (results/):
- scenario_projections.csv     (ADM3-keyed, one row per city x scenario x year)
- scenario_summary.csv         (national totals per scenario x year)
- scenario_report.json

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
    city_join_table,
    project_scenarios,
    read_table,
    scenario_summary,
    write_json,
)

# =============================================================================
# PATHS
# =============================================================================

SCRIPT_DIR = Path(__file__).parent
PHASE0_RESULTS = SCRIPT_DIR.parent / 'phase0_data_prep' / 'results'
PHASE1_RESULTS = SCRIPT_DIR.parent / 'phase1_core_model' / 'results'
OUTPUT_DIR = SCRIPT_DIR / 'results'
OUTPUT_DIR.mkdir(exist_ok=True)


def main():
    parser = argparse.ArgumentParser(
        description='Future flood-malaria scenarios under SSP pathways',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python 02a_future_scenarios.py
  python 02a_future_scenarios.py --projections ssp_population_adm3.csv
  python 02a_future_scenarios.py --projections ssp_population_adm3.csv --population-adjustment off
        """
    )
    parser.add_argument('--projections', type=str, default=None,
                        help='Population projections (city_id, scenario, year, population)')
    parser.add_argument('--projection-city-col', type=str, default='ubigeo')
    parser.add_argument('--population-adjustment', choices=Config.POPULATION_ADJUSTMENTS, default='auto')
    parser.add_argument('--scenarios', nargs='+', default=list(Config.SCENARIOS))
    parser.add_argument('--years', nargs='+', type=int, default=list(Config.SCENARIO_YEARS))
    parser.add_argument('--ci-level', type=float, default=Config.CI_LEVEL)
    parser.add_argument('--log-file', type=str, default=None)
    args = parser.parse_args()

    log_file = args.log_file or str(OUTPUT_DIR / 'future_scenarios.log')
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
        population_adjustment=args.population_adjustment,
        scenarios=tuple(args.scenarios),
        scenario_years=tuple(args.years),
    )

    print("=" * 70)
    print("02a: FUTURE FLOOD SCENARIOS (SSP POPULATION PATHWAYS)")
    print("=" * 70)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    panel = pd.read_parquet(PHASE0_RESULTS / 'flood_malaria_panel.parquet')
    panel[Config.CITY_COL] = panel[Config.CITY_COL].astype(str)
    with open(PHASE0_RESULTS / 'model_spec.json') as f:
        spec = ModelSpec.from_dict(json.load(f))
    with open(PHASE1_RESULTS / 'fitted_model.json') as f:
        model = FittedModel.from_dict(json.load(f))

    projections = None
    if args.projections:
        projections = read_table(args.projections)
        if args.projection_city_col in projections.columns and Config.CITY_COL not in projections.columns:
            projections = projections.rename(columns={args.projection_city_col: Config.CITY_COL})
        print(f"Projections: {len(projections):,} rows from {Path(args.projections).name}")

    report = EstimationReport()
    results = project_scenarios(panel, model, spec, projections, config, report)
    city_join_table(results).to_csv(OUTPUT_DIR / 'scenario_projections.csv', index=False)

    summary = scenario_summary(results)
    summary.to_csv(OUTPUT_DIR / 'scenario_summary.csv', index=False)

    print("\n" + "-" * 70)
    print("National Totals")
    print("-" * 70)
    for _, row in summary.iterrows():
        print(f"  {row['scenario']} {row['year']}: {row['scenario_cases']:,.0f} cases, "
              f"+{row['additional_cases']:,.0f} "
              f"({row['additional_cases_lower']:,.0f} to {row['additional_cases_upper']:,.0f}) "
              f"across {row['n_cities']} cities")

    report.log_summary()
    write_json({
        'population_adjusted': bool(results['population_adjusted'].any()) if len(results) else False,
        'population_adjustment': config.population_adjustment,
        'offset_available': spec.offset_available,
        'report': report.summary(),
        'timestamp': datetime.now().isoformat(),
    }, OUTPUT_DIR / 'scenario_report.json')

    print("\n" + "=" * 70)
    print(f"Output directory: {OUTPUT_DIR}")
    print(f"Completed: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70)


if __name__ == "__main__":
    main()
