"""
05b: GENERATE TABLES
====================
Publication-ready tables from the model, attribution and scenario results.

Outputs (tables/):
------------------
- Table 1: Lag-specific and total flood effects
- Table 2: Global attribution by weighting scheme
- Table 3: Attributable burden by city (ADM3)
- Table 4: Scenario projections, national totals
- flood_malaria_tables.xlsx  (all tables, one sheet each)

Author: Flood-Malaria Attribution Pipeline
"""

from datetime import datetime
from pathlib import Path

import numpy as np
import pandas as pd

# =============================================================================
# CONFIGURATION
# =============================================================================
BASE_DIR = Path(__file__).parent.parent
PHASE1_RESULTS = BASE_DIR / 'phase1_core_model' / 'results'
PHASE2_RESULTS = BASE_DIR / 'phase2_projections' / 'results'
OUTPUT_DIR = Path(__file__).parent / 'tables'


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def load_csv(filepath):
    if not filepath.exists():
        print(f"  Warning: {filepath.name} not found")
        return None
    return pd.read_csv(filepath, dtype={'ADM3': str})


def format_ci(point, lo, hi, decimals=3):
    """Format estimate with its CI."""
    if point is None or lo is None or hi is None or np.isnan(point):
        return "-"
    return f"{point:.{decimals}f} ({lo:.{decimals}f} to {hi:.{decimals}f})"


def format_number(n, decimals=0):
    """Format number with thousands separator."""
    if n is None or (isinstance(n, float) and np.isnan(n)):
        return "-"
    if decimals == 0:
        return f"{int(round(n)):,}"
    return f"{n:,.{decimals}f}"


def save_table(df, name, formats=('csv',)):
    """Save table in each format."""
    for fmt in formats:
        filepath = OUTPUT_DIR / f"{name}.{fmt}"
        if fmt == 'csv':
            df.to_csv(filepath, index=False)
        elif fmt == 'xlsx':
            df.to_excel(filepath, index=False)
    print(f"  Saved: {name}")


# =============================================================================
# TABLES
# =============================================================================

def create_table1_lag_effects():
    """Per-lag and total rate ratios and percent changes."""
    lags = load_csv(PHASE1_RESULTS / 'lag_effects.csv')
    if lags is None:
        return None
    table = pd.DataFrame({
        'Term': lags['term'],
        'Lag (weeks)': lags['lag'].apply(lambda x: '0-4' if pd.isna(x) else str(int(x))),
        'Coefficient': lags['coefficient'].round(4),
        'SE': lags['std_error'].round(4),
        'RR (95% CI)': [format_ci(r, lo, hi) for r, lo, hi in
                        zip(lags['rr'], lags['rr_lower'], lags['rr_upper'])],
        '% change (95% CI)': [format_ci(p, lo, hi, 2) for p, lo, hi in
                              zip(lags['percent_change'], lags['percent_change_lower'],
                                  lags['percent_change_upper'])],
        'p-value': lags['p_value'].apply(lambda p: '<0.001' if p < 0.001 else f"{p:.3f}"),
    })
    save_table(table, 'table1_lag_effects')
    return table


def create_table2_global_attribution():
    """Global PAF under each weighting scheme."""
    global_table = load_csv(PHASE1_RESULTS / 'attributable_global.csv')
    if global_table is None:
        return None
    table = pd.DataFrame({
        'Weighting': global_table['weighting'].str.replace('_', ' ').str.title(),
        'Cities': global_table['n_cities'],
        'PAF % (95% CI)': [format_ci(p, lo, hi, 2) for p, lo, hi in
                           zip(global_table['paf_pct'], global_table['paf_lower_pct'],
                               global_table['paf_upper_pct'])],
        'Zero total weight': global_table['zero_total_weight'],
    })
    save_table(table, 'table2_global_attribution')
    return table


def create_table3_city_burden():
    """Attributable cases by ADM3 city, largest burden first."""
    cities = load_csv(PHASE1_RESULTS / 'attributable_by_city.csv')
    if cities is None:
        return None
    cities = cities.sort_values('total_attributable_cases', ascending=False)
    table = pd.DataFrame({
        'ADM3': cities['ADM3'],
        'Weeks': cities['n_weeks'],
        'Flood weeks': cities['flood_weeks'],
        'Cases': cities['total_cases'].apply(format_number),
        'Attributable (95% CI)': [
            f"{format_number(a)} ({format_number(lo)} to {format_number(hi)})"
            for a, lo, hi in zip(cities['total_attributable_cases'],
                                 cities['total_attributable_lower'],
                                 cities['total_attributable_upper'])
        ],
        'Mean PAF %': cities['paf_mean_pct'].round(2),
        'Attributable share %': (cities['attributable_share'] * 100).round(2),
        'CI status': cities['ci_status'],
    })
    save_table(table, 'table3_city_burden')
    return table


def create_table4_scenarios():
    """National scenario totals."""
    summary = load_csv(PHASE2_RESULTS / 'scenario_summary.csv')
    if summary is None:
        return None
    table = pd.DataFrame({
        'Scenario': summary['scenario'],
        'Year': summary['year'],
        'Cities': summary['n_cities'],
        'Baseline cases': summary['baseline_cases'].apply(format_number),
        'Scenario cases': summary['scenario_cases'].apply(format_number),
        'Additional cases (95% CI)': [
            f"{format_number(a)} ({format_number(lo)} to {format_number(hi)})"
            for a, lo, hi in zip(summary['additional_cases'], summary['additional_cases_lower'],
                                 summary['additional_cases_upper'])
        ],
    })
    save_table(table, 'table4_scenarios')
    return table


# =============================================================================
# MAIN EXECUTION
# =============================================================================

if __name__ == "__main__":
    OUTPUT_DIR.mkdir(exist_ok=True)

    print("=" * 70)
    print("05b: GENERATE TABLES")
    print("=" * 70)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    tables = {
        'Table1_LagEffects': create_table1_lag_effects(),
        'Table2_GlobalPAF': create_table2_global_attribution(),
        'Table3_CityBurden': create_table3_city_burden(),
        'Table4_Scenarios': create_table4_scenarios(),
    }

    workbook = OUTPUT_DIR / 'flood_malaria_tables.xlsx'
    available = {name: t for name, t in tables.items() if t is not None}
    if available:
        with pd.ExcelWriter(workbook, engine='openpyxl') as writer:
            for name, table in available.items():
                table.to_excel(writer, sheet_name=name, index=False)
        print(f"  Saved: {workbook.name} ({len(available)} sheets)")

    print("\n" + "=" * 70)
    print("TABLE GENERATION COMPLETE")
    print(f"Output directory: {OUTPUT_DIR}")
    print("=" * 70)
