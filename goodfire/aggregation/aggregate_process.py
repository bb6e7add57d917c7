"""
==============================================================================
AGGREGATION — YEARLY LAYERS SUMMED OVER REGIONS AND FIRE EVENTS
==============================================================================

1. Regions: every (year, region) pair gets one row with the sum of every
   classification layer over the region polygon, plus {name, year, units}.
2. Fire events: each event is matched to the layers of its own ignition year
   and summed over its own perimeter; the row carries the sums plus every
   original event attribute (geometry dropped).

Failure isolation:
    - an event whose year has no layers is reported (MissingYearError) and the
      batch continues
    - a reduction over the pixel limit is retried once with a doubled
      tile_scale; a second failure is reported, not raised
    - a geometry the reducer cannot read (ValueError) is reported for that
      region or event only

Rows are sorted by (year, identifier) so identical inputs give identical CSVs.

PRIMARY OUTPUTS:
    <output_dir>/<summarize_name>_goodfire_summary.csv
    <output_dir>/fire_events_goodfire_summary.csv
    <output_dir>/*_failures.csv
==============================================================================
"""
import logging
import os

import numpy as np
import pandas as pd
from tqdm import tqdm

from goodfire.config import AREA_UNITS
from goodfire.errors import GoodFireError, MissingYearError

logger = logging.getLogger(__name__)

UNITS = AREA_UNITS
HECTARE_UNITS = "ha"
FAILURE_COLUMNS = ["year", "error"]


def layers_for_year(layers_by_year, year):
    """Classification layers of `year`; raises MissingYearError if there are none."""
    if year is None or pd.isna(year) or int(year) not in layers_by_year:
        raise MissingYearError(year)
    return layers_by_year[int(year)]


def to_hectares(values):
    """m² → hectares, rounded half away from zero to 0.1 ha: round(m² * 0.001) / 10."""
    scaled = np.asarray(values, dtype="float64") * 0.001
    return np.sign(scaled) * np.floor(np.abs(scaled) + 0.5) / 10


def _sorted(df, id_column):
    if df.empty:
        return df.reset_index(drop=True)
    return df.sort_values(["year", id_column], kind="mergesort").reset_index(drop=True)


def summarize_regions(layers_by_year, regions, reducer, name_column="NAME",
                      stats=("sum",), years=None):
    """
    Sum every layer over every region for every year.

    Parameters
    ----------
    layers_by_year : dict {year: RasterImage}
    regions : gpd.GeoDataFrame
        Summary polygons in grid CRS with a `name_column`.
    reducer : ZonalReducer
    name_column : str
    stats : tuple of str
        Reducer statistics; the default gives one column per layer.
    years : iterable of int, optional
        Years expected in the output. Years without layers are reported as
        failures. Defaults to the years of `layers_by_year`.

    Returns
    -------
    (pd.DataFrame, pd.DataFrame)
        Summary rows and failures [name_column, 'year', 'error'].
    """
    years = sorted(layers_by_year) if years is None else sorted(years)
    rows, failures = [], []
    columns = None

    for year in years:
        try:
            layers = layers_for_year(layers_by_year, year)
        except MissingYearError as exc:
            logger.warning("Skipping regions for %d: %s", year, exc)
            failures.extend({name_column: name, "year": year, "error": str(exc)}
                            for name in regions[name_column])
            continue

        for _, region in regions.iterrows():
            name = region[name_column]
            try:
                sums = reducer.reduce_with_retry(layers, region.geometry, stats)
            except (GoodFireError, ValueError) as exc:
                logger.warning("Reduction failed for %s %d: %s", name, year, exc)
                failures.append({name_column: name, "year": year, "error": str(exc)})
                continue
            row = {name_column: name, "year": year, "units": UNITS}
            row.update(sums)
            rows.append(row)
            if columns is None:
                columns = list(row)
        logger.info("Summarized %d regions for %d", len(regions), year)

    df = pd.DataFrame(rows, columns=columns)
    fail_df = pd.DataFrame(failures, columns=[name_column] + FAILURE_COLUMNS)
    return _sorted(df, name_column), _sorted(fail_df, name_column)


def summarize_fire_events(layers_by_year, events, reducer, id_column="Event_ID",
                          year_column="Fire_Year", stats=("sum",), hectares=False):
    """
    Sum the layers of each event's ignition year over the event perimeter.

    Parameters
    ----------
    layers_by_year : dict {year: RasterImage}
    events : gpd.GeoDataFrame
        Fire perimeters in grid CRS with `id_column` and `year_column`.
    reducer : ZonalReducer
    stats : tuple of str
        e.g. ("sum", "mean", "max", "count") for the per-event summary variant.
    hectares : bool
        Convert sum columns from m² to hectares (0.1 ha precision).

    Returns
    -------
    (pd.DataFrame, pd.DataFrame)
        One row per event with all non-geometry attributes, 'year', 'units'
        and the reduced layers; failures [id_column, 'year', 'error'].
    """
    rows, failures = [], []
    attribute_columns = [c for c in events.columns if c != events.geometry.name]

    for _, event in tqdm(events.iterrows(), total=len(events), desc="Fire events", ncols=80):
        event_id = event[id_column]
        year = event[year_column]
        try:
            layers = layers_for_year(layers_by_year, year)
            sums = reducer.reduce_with_retry(layers, event.geometry, stats)
        except (GoodFireError, ValueError) as exc:
            logger.warning("Fire event %s failed: %s", event_id, exc)
            failures.append({id_column: event_id, "year": year, "error": str(exc)})
            continue

        row = {c: event[c] for c in attribute_columns}
        row["year"] = int(year)
        row["units"] = HECTARE_UNITS if hectares else UNITS
        if hectares:
            if tuple(stats) == ("sum",):
                sum_keys = list(sums)
            else:
                sum_keys = [k for k in sums if k.endswith("_sum")]
            for key in sum_keys:
                sums[key] = float(to_hectares(sums[key]))
        row.update(sums)
        rows.append(row)

    logger.info("Summarized %d fire events (%d failed)", len(rows), len(failures))
    df = pd.DataFrame(rows)
    fail_df = pd.DataFrame(failures, columns=[id_column] + FAILURE_COLUMNS)
    return _sorted(df, id_column), _sorted(fail_df, id_column)


def write_summary_csv(df, out_path):
    """Write a summary table; identical frames give byte-identical files."""
    os.makedirs(os.path.dirname(os.path.abspath(out_path)), exist_ok=True)
    df.to_csv(out_path, index=False, lineterminator="\n")
    logger.info("Saved summary → %s (%d rows)", out_path, len(df))
    return out_path
