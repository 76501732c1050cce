"""
00a: BUILD CITY x EPI-WEEK FLOOD-MALARIA PANEL
==============================================
Prepares the analysis panel for the flood-attributable malaria models.

Steps:
1. Load weekly malaria case counts per ADM3 city (UBIGEO)
2. Optionally merge a weekly covariate table (population, density, night
   lights, urban index, weather) on (city, year, week)
3. Standardise columns, build flood exposure lags 0..4
4. Derive log-population offset and log covariates where available

Input:
- Any parquet / CSV table with city, year, epi-week, case count and flood
  intensity columns

Output (results/):
- flood_malaria_panel.parquet
- model_spec.json
- panel_summary.json

Author: Flood-Malaria Attribution Pipeline
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
from flood_attribution import (
    Config,
    build_panel,
    read_table,
    summarize_panel,
    write_json,
)

# =============================================================================
# PATHS
# =============================================================================

SCRIPT_DIR = Path(__file__).parent
OUTPUT_DIR = SCRIPT_DIR / 'results'
OUTPUT_DIR.mkdir(exist_ok=True)

PANEL_FILE = OUTPUT_DIR / 'flood_malaria_panel.parquet'
SPEC_FILE = OUTPUT_DIR / 'model_spec.json'
SUMMARY_FILE = OUTPUT_DIR / 'panel_summary.json'


def parse_args():
    parser = argparse.ArgumentParser(
        description='Build the city x epi-week flood-malaria panel',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python 00a_build_flood_panel.py --input malaria_floods_weekly.parquet
  python 00a_build_flood_panel.py --input cases.csv --covariates covariates.parquet \\
      --city-col ubigeo --case-col malaria_cases --flood-col flooded_fraction
  python 00a_build_flood_panel.py --input cases.csv --exposure-mode binary --flood-threshold 0.05
        """
    )
    parser.add_argument('--input', type=str, required=True,
                        help='Weekly case / flood table (parquet, csv or xlsx)')
    parser.add_argument('--covariates', type=str, default=None,
                        help='Optional weekly covariate table merged on city, year, week')
    parser.add_argument('--city-col', type=str, default='ubigeo')
    parser.add_argument('--year-col', type=str, default='year')
    parser.add_argument('--week-col', type=str, default='epi_week')
    parser.add_argument('--case-col', type=str, default='malaria_cases')
    parser.add_argument('--flood-col', type=str, default='flood_intensity')
    parser.add_argument('--population-col', type=str, default='population')
    parser.add_argument('--max-lag', type=int, default=Config.MAX_LAG,
                        help=f'Exposure lags in weeks (default: {Config.MAX_LAG})')
    parser.add_argument('--exposure-mode', choices=Config.EXPOSURE_MODES, default='continuous')
    parser.add_argument('--flood-threshold', type=float, default=0.0,
                        help='Intensity above which a week counts as flooded (binary mode)')
    parser.add_argument('--no-controls', action='store_true',
                        help='Keep detected covariates out of the model specification')
    parser.add_argument('--log-file', type=str, default=None)
    return parser.parse_args()


def main():
    args = parse_args()

    log_file = args.log_file or str(OUTPUT_DIR / 'build_flood_panel.log')
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s %(name)s %(levelname)s: %(message)s',
        handlers=[
            logging.FileHandler(log_file, mode='w'),
            logging.StreamHandler(sys.stdout),
        ],
        force=True,
    )

    print("=" * 70)
    print("00a: BUILD CITY x EPI-WEEK FLOOD-MALARIA PANEL")
    print("=" * 70)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    print("\n" + "-" * 70)
    print("Loading Data")
    print("-" * 70)

    raw = read_table(args.input)
    print(f"Cases: {len(raw):,} rows from {Path(args.input).name}")

    if args.covariates:
        cov = read_table(args.covariates)
        keys = [args.city_col, args.year_col, args.week_col]
        raw[args.city_col] = raw[args.city_col].astype(str)
        cov[args.city_col] = cov[args.city_col].astype(str)
        overlap = [c for c in cov.columns if c in raw.columns and c not in keys]
        raw = raw.merge(cov.drop(columns=overlap), on=keys, how='left')
        print(f"Covariates: {len(cov):,} rows merged ({len(cov.columns) - len(keys) - len(overlap)} columns)")

    column_map = {}
    if args.population_col != 'population' and args.population_col in raw.columns:
        column_map[args.population_col] = 'population'

    print("\n" + "-" * 70)
    print("Building Panel")
    print("-" * 70)

    panel, spec = build_panel(
        raw,
        response_col=args.case_col,
        exposure_col=args.flood_col,
        city_col=args.city_col,
        year_col=args.year_col,
        week_col=args.week_col,
        column_map=column_map,
        max_lag=args.max_lag,
        exposure_mode=args.exposure_mode,
        flood_threshold=args.flood_threshold,
        include_controls=not args.no_controls,
    )

    summary = summarize_panel(panel, spec)
    print(f"  Cities: {summary['n_cities']}")
    print(f"  Epi-weeks: {summary['n_weeks']} ({summary['years'][0]}-{summary['years'][-1]})")
    print(f"  Total cases: {summary['total_cases']:,}")
    print(f"  Flood weeks: {summary['flood_weeks']:,}")
    print(f"  Exposure SD: {summary['global_exposure_sd']:.4f} ({spec.exposure_mode})")
    print(f"  Offset: {spec.offset or 'none'}")
    print(f"  Controls: {', '.join(spec.control_terms) or 'none'}")

    panel.to_parquet(PANEL_FILE, index=False)
    write_json(spec.to_dict(), SPEC_FILE)
    write_json(dict(summary, source=str(args.input), timestamp=datetime.now().isoformat()), SUMMARY_FILE)

    print("\n" + "=" * 70)
    print(f"Saved: {PANEL_FILE.name}, {SPEC_FILE.name}, {SUMMARY_FILE.name}")
    print(f"Completed: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70)


if __name__ == "__main__":
    main()
