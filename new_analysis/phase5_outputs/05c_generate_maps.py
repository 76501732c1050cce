"""
05c: GENERATE MAPS
==================
Choropleths of flood-attributable malaria over Peruvian ADM3 boundaries.

Outputs (maps/):
----------------
- Map 1: Mean PAF by city
- Map 2: Total attributable cases by city
- Map 3: Additional cases under each (SSP scenario, year)

Requirements:
-------------
- geopandas
- matplotlib
- ADM3 boundary file (GeoPackage / shapefile / GeoJSON)

Author: Flood-Malaria Attribution Pipeline
"""

import argparse
from datetime import datetime
from pathlib import Path

import geopandas as gpd
import matplotlib
matplotlib.use('Agg')
import matplotlib.colors as mcolors
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

# =============================================================================
# CONFIGURATION
# =============================================================================
BASE_DIR = Path(__file__).parent.parent
PHASE1_RESULTS = BASE_DIR / 'phase1_core_model' / 'results'
PHASE2_RESULTS = BASE_DIR / 'phase2_projections' / 'results'
OUTPUT_DIR = Path(__file__).parent / 'maps'

KEY_COL = 'ADM3'

# Map styling
plt.rcParams['font.family'] = 'sans-serif'
plt.rcParams['font.size'] = 10
plt.rcParams['figure.dpi'] = 150
plt.rcParams['savefig.dpi'] = 300

BURDEN_CMAP = 'YlOrRd'
DIVERGING_CMAP = 'RdYlBu_r'


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def save_map(fig, name, formats=('png', 'pdf')):
    """Save map in multiple formats."""
    for fmt in formats:
        filepath = OUTPUT_DIR / f"{name}.{fmt}"
        fig.savefig(filepath, format=fmt, bbox_inches='tight', dpi=300)
    print(f"  Saved: {name}")
    plt.close(fig)


def normalize_adm3(codes: pd.Series) -> pd.Series:
    """'PE010101', 10101 and '010101' all become '010101'."""
    codes = codes.astype(str).str.strip().str.replace(r'^PE', '', regex=True)
    numeric = codes.str.fullmatch(r'\d+')
    return codes.where(~numeric, codes.str.zfill(6))


def load_boundaries(path: Path, key_col: str):
    """ADM3 polygons with a normalised join key."""
    gdf = gpd.read_file(path)
    if key_col not in gdf.columns:
        raise KeyError(f"Boundary key {key_col} not found. Available: {list(gdf.columns)}")
    gdf[KEY_COL] = normalize_adm3(gdf[key_col])
    print(f"  Loaded boundaries: {path.name} ({len(gdf)} polygons)")
    return gdf


def create_choropleth(gdf, values: pd.DataFrame, value_col, title, cmap=BURDEN_CMAP,
                      center=None, label=None, output_name=None):
    """Choropleth of ``value_col`` joined on the ADM3 key; unmatched polygons in gray."""
    merged = gdf.merge(values[[KEY_COL, value_col]], on=KEY_COL, how='left')
    n_matched = int(merged[value_col].notna().sum())
    if n_matched < len(values):
        print(f"  Warning: {len(values) - n_matched} cities have no matching polygon")

    fig, ax = plt.subplots(1, 1, figsize=(10, 12))
    merged[merged[value_col].isna()].plot(ax=ax, color='lightgray', edgecolor='white', linewidth=0.2)

    valid = merged[merged[value_col].notna()]
    if len(valid):
        kwargs = {'legend': True, 'legend_kwds': {'label': label or value_col, 'shrink': 0.5}}
        if center is not None:
            vmin, vmax = valid[value_col].min(), valid[value_col].max()
            if vmin < center < vmax:
                kwargs['norm'] = mcolors.TwoSlopeNorm(vmin=vmin, vcenter=center, vmax=vmax)
        valid.plot(column=value_col, ax=ax, cmap=cmap, edgecolor='white', linewidth=0.2, **kwargs)

        v = valid[value_col].to_numpy(dtype=float)
        stats_text = f"n = {len(v)} cities\nMean = {np.mean(v):.3g}\nRange = [{v.min():.3g}, {v.max():.3g}]"
        ax.text(0.02, 0.02, stats_text, transform=ax.transAxes, fontsize=9,
                verticalalignment='bottom', bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

    ax.set_title(title, fontsize=14, fontweight='bold')
    ax.axis('off')

    if output_name:
        save_map(fig, output_name)
    return fig


# =============================================================================
# MAPS
# =============================================================================

def map_city_burden(gdf):
    path = PHASE1_RESULTS / 'attributable_by_city.csv'
    if not path.exists():
        print(f"  Skipping burden maps: {path.name} not found")
        return
    cities = pd.read_csv(path, dtype={KEY_COL: str})
    cities[KEY_COL] = normalize_adm3(cities[KEY_COL])

    create_choropleth(gdf, cities, 'paf_mean_pct', 'Flood-attributable fraction of malaria cases',
                      label='Mean PAF (%)', output_name='map1_paf_by_city')
    create_choropleth(gdf, cities, 'total_attributable_cases', 'Flood-attributable malaria cases',
                      label='Attributable cases', output_name='map2_attributable_cases')


def map_scenarios(gdf):
    path = PHASE2_RESULTS / 'scenario_projections.csv'
    if not path.exists():
        print(f"  Skipping scenario maps: {path.name} not found")
        return
    projections = pd.read_csv(path, dtype={KEY_COL: str})
    projections[KEY_COL] = normalize_adm3(projections[KEY_COL])

    for (scenario, year), group in projections.groupby(['scenario', 'year'], sort=True):
        create_choropleth(
            gdf, group, 'additional_cases',
            f'Additional malaria cases, one-SD flood ({scenario}, {year})',
            cmap=DIVERGING_CMAP, center=0.0, label='Additional cases per year',
            output_name=f'map3_additional_cases_{scenario}_{year}',
        )


# =============================================================================
# MAIN EXECUTION
# =============================================================================

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description='Flood-malaria choropleth maps')
    parser.add_argument('--boundaries', type=str, required=True,
                        help='ADM3 boundary file (gpkg, shp or geojson)')
    parser.add_argument('--boundary-key', type=str, default='ADM3_PCODE',
                        help='Column holding the ADM3 code in the boundary file')
    args = parser.parse_args()

    OUTPUT_DIR.mkdir(exist_ok=True)

    print("=" * 70)
    print("05c: GENERATE MAPS")
    print("=" * 70)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    gdf = load_boundaries(Path(args.boundaries), args.boundary_key)
    map_city_burden(gdf)
    map_scenarios(gdf)

    print("\n" + "=" * 70)
    print("MAP GENERATION COMPLETE")
    print(f"Output directory: {OUTPUT_DIR}")
    print("=" * 70)
