# ----------------------------------------------------------
# fire_utils.py
# ----------------------------------------------------------
"""
Fire perimeter utilities.

Loads fire event polygons (MTBS burned-area boundaries or any perimeter file
with an id and an ignition date), repairs geometries, derives the ignition
year and keeps the events that fall inside the study area and year range.

Notes
-----
• Ignition dates come as YYYYMMDD, YYYY-MM-DD or bare YYYY values; anything
  else parses to NaT and the event gets no year.
• Events without a year cannot be matched to yearly layers and are dropped
  with a warning by filter_fire_years().
"""
import logging
import os

import geopandas as gpd
import pandas as pd
from shapely import make_valid
from shapely.ops import unary_union

logger = logging.getLogger(__name__)

DATE_COLUMN = "Ig_Date"
YEAR_COLUMN = "Fire_Year"


def parse_ignition_date(val):
    """Normalize ignition date values of various shapes into a Timestamp (or NaT)."""
    if pd.isna(val):
        return pd.NaT
    if isinstance(val, pd.Timestamp):
        return val
    s = str(val).strip()
    if s.endswith(".0"):
        s = s[:-2]
    if len(s) == 8 and s.isdigit():
        return pd.to_datetime(s, format="%Y%m%d", errors="coerce")
    if len(s) == 4 and s.isdigit():
        return pd.to_datetime(s, format="%Y", errors="coerce")
    return pd.to_datetime(s[:10], format="%Y-%m-%d", errors="coerce")


def add_fire_year(gdf, date_col=DATE_COLUMN, year_col=YEAR_COLUMN):
    """Derive `year_col` from `date_col` unless it is already present."""
    gdf = gdf.copy()
    if year_col in gdf.columns:
        gdf[year_col] = pd.to_numeric(gdf[year_col], errors="coerce").astype("Int64")
        return gdf
    if date_col not in gdf.columns:
        raise KeyError(f"Neither '{year_col}' nor '{date_col}' found in fire perimeters")
    dates = pd.to_datetime(gdf[date_col].apply(parse_ignition_date))
    gdf[year_col] = dates.dt.year.astype("Int64")
    valid_pct = round(dates.notna().mean() * 100, 1)
    logger.info("Parsed %s coverage: %s%% valid", date_col, valid_pct)
    return gdf


def load_fire_perimeters(fire_fp, crs=None, date_col=DATE_COLUMN, year_col=YEAR_COLUMN):
    """
    Load, repair and (optionally) reproject fire perimeters.

    Parameters
    ----------
    fire_fp : str
        Shapefile / GPKG / GeoJSON of fire perimeters.
    crs : str, optional
        Target CRS (the analysis grid CRS).

    Returns
    -------
    gpd.GeoDataFrame with a `year_col` column.
    """
    if not os.path.exists(fire_fp):
        raise FileNotFoundError(f"Fire perimeters not found: {fire_fp}")
    fire = gpd.read_file(fire_fp)
    return prepare_fire_perimeters(fire, crs=crs, date_col=date_col, year_col=year_col)


def prepare_fire_perimeters(fire, crs=None, date_col=DATE_COLUMN, year_col=YEAR_COLUMN):
    """Repair geometries, drop empties, reproject and add the fire year."""
    if crs is not None and fire.crs is not None and fire.crs != crs:
        fire = fire.to_crs(crs)

    fire = fire.copy()
    fire["geometry"] = fire["geometry"].apply(lambda g: make_valid(g) if g is not None else g)
    before = len(fire)
    fire = fire[fire.geometry.notna() & ~fire.geometry.is_empty]
    if len(fire) < before:
        logger.warning("Dropped %d empty fire geometries", before - len(fire))
    return add_fire_year(fire, date_col=date_col, year_col=year_col)


def filter_to_study_area(gdf, study_area):
    """Keep events intersecting the study area (a geometry or GeoDataFrame)."""
    if isinstance(study_area, gpd.GeoDataFrame):
        study_area = unary_union(list(study_area.geometry))
    kept = gdf[gdf.intersects(study_area)].copy()
    logger.info("Fire events within study area: %d of %d", len(kept), len(gdf))
    return kept


def filter_fire_years(gdf, start_year, end_year, year_col=YEAR_COLUMN):
    """Keep records with start_year <= year_col <= end_year."""
    if year_col not in gdf.columns:
        raise KeyError(f"Column {year_col} not found.")
    years = pd.to_numeric(gdf[year_col], errors="coerce").astype("float64")
    missing = int(years.isna().sum())
    if missing:
        logger.warning("%d fire events have no %s and are dropped", missing, year_col)
    before = len(gdf)
    gdf = gdf[(years >= start_year) & (years <= end_year)].copy()
    logger.info("Filtered by %d <= %s <= %d: %d of %d records kept",
                start_year, year_col, end_year, len(gdf), before)
    return gdf
