"""
==============================================================================
GOOD FIRE PIPELINE — EXECUTION SCRIPT
==============================================================================

Runs the full workflow for the years of a run configuration:

1. Load the analysis grid, the dataset store (manifest) and fire perimeters.
2. Severity: composites → burn metrics → CBI → bias correction per year,
   mosaicked over the growing-season regions (or read from a saved stack).
3. Build the forest and fire-regime masks once.
4. Classify every year into good fire / bad fire layers.
5. Sum the layers over summary regions and over each fire event.
6. Export CSV summaries, the flattened good-fire raster and quick-look plots.

Usage:
    python main.py --config run.yaml [--skip-severity]

NOTES:
- This file is the orchestrator only; the logic lives in the goodfire package.
- Paths in the YAML file are relative to the YAML file itself.
==============================================================================
"""
import argparse
import logging
import os
import sys

import pandas as pd
from shapely.ops import unary_union

from goodfire.aggregation.aggregate_process import (
    summarize_fire_events, summarize_regions, write_summary_csv,
)
from goodfire.aggregation.zonal_utils import ZonalReducer
from goodfire.classification.goodfire_utils import (
    classify_years, export_flattened_raster, flatten_good_fire, plot_layer, severity_reclass,
)
from goodfire.config import STATES_DATASET, load_run_config
from goodfire.errors import ConfigError, GoodFireError
from goodfire.landcover.landcover_utils import build_mask_context, forest_pixel_counts
from goodfire.raster.raster_utils import GridSpec, RasterImage, write_geotiff
from goodfire.raster.store import DatasetStore
from goodfire.severity.cbi_model import load_cbi_model
from goodfire.severity.severity_process import (
    build_season_regions, build_severity_context, read_severity_stack,
    severity_for_years, write_severity_stack,
)
from goodfire.wildfires.fire_utils import filter_fire_years, prepare_fire_perimeters

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Good fire / bad fire severity classification")
    parser.add_argument("--config", required=True, help="Run configuration (YAML)")
    parser.add_argument("--skip-severity", action="store_true",
                        help="Read severity from the configured severity_stack instead of computing it")
    return parser.parse_args(argv)


def load_severity(cfg, store, grid, states, fires, skip):
    if skip or (cfg.severity_stack and os.path.exists(cfg.severity_stack)):
        if not cfg.severity_stack or not os.path.exists(cfg.severity_stack):
            raise ConfigError("--skip-severity needs an existing severity_stack in the config")
        return read_severity_stack(cfg.severity_stack, grid)

    model = load_cbi_model(cfg.model_path)
    ctx = build_severity_context(store, grid, model, cfg.rdnbr_strategy, cfg.chunk_size)
    seasons = build_season_regions(states, cfg.summary_name_column)
    mask_fires = None
    if cfg.mask_to_fires:
        mask_fires = filter_fire_years(fires, cfg.start_year, cfg.end_year, cfg.fire_year_column)
    severities = severity_for_years(ctx, seasons, cfg.years, mask_fires, cfg.fire_year_column)
    write_severity_stack(severities, os.path.join(cfg.output_dir, "severity_stack.tif"))
    return severities


def main(argv=None):
    args = parse_args(argv)
    cfg = load_run_config(args.config)
    os.makedirs(cfg.output_dir, exist_ok=True)
    logger.info("Run %d-%d → %s", cfg.start_year, cfg.end_year, cfg.output_dir)

    # ---- inputs ----
    grid = GridSpec.from_raster(cfg.grid_template)
    store = DatasetStore.from_manifest(cfg.manifest_path, grid)
    fires = prepare_fire_perimeters(store.features(cfg.fires_dataset), crs=grid.crs,
                                    year_col=cfg.fire_year_column)
    states = store.features(STATES_DATASET)
    summary = store.features(cfg.summary_dataset)
    regions = summary[summary[cfg.summary_name_column].isin(cfg.summary_names)]

    # ---- severity, masks, classification ----
    severities = load_severity(cfg, store, grid, states, fires, args.skip_severity)
    masks = build_mask_context(store, cfg.start_year, cfg.end_year)
    layers, class_failures = classify_years(severities, masks)

    # ---- aggregation ----
    reducer = ZonalReducer(grid, tile_scale=cfg.tile_scale, max_pixels=cfg.max_pixels)
    region_df, region_failures = summarize_regions(
        layers, regions, reducer, name_column=cfg.summary_name_column, years=cfg.years)
    event_df, event_failures = summarize_fire_events(
        layers, fires, reducer, id_column=cfg.fire_id_column, year_column=cfg.fire_year_column)

    out = cfg.output_dir
    write_summary_csv(region_df, os.path.join(out, f"{cfg.summarize_name}_goodfire_summary.csv"))
    write_summary_csv(event_df, os.path.join(out, "fire_events_goodfire_summary.csv"))
    write_summary_csv(region_failures, os.path.join(out, f"{cfg.summarize_name}_failures.csv"))
    write_summary_csv(event_failures, os.path.join(out, "fire_events_failures.csv"))
    if class_failures:
        logger.warning("%d years failed classification: %s",
                       len(class_failures), [f["year"] for f in class_failures])
    write_summary_csv(pd.DataFrame(class_failures, columns=["year", "error"]),
                      os.path.join(out, "classification_failures.csv"))

    forest_counts = forest_pixel_counts(masks, regions, grid, name_column=cfg.summary_name_column)
    write_summary_csv(forest_counts, os.path.join(out, "conservative_forest_stats.csv"))

    # ---- rasters ----
    if not layers:
        logger.warning("No classified years; skipping raster exports")
        return 0

    flat = flatten_good_fire(layers)
    aoi_rows = states[states[cfg.summary_name_column].isin(cfg.viz_aoi_names)]
    aoi = unary_union(list(aoi_rows.geometry)) if len(aoi_rows) else None
    export_flattened_raster(flat, grid, os.path.join(out, "goodfire_flattened.tif"), aoi=aoi)
    plot_layer(flat, title="Good fire (1 low, 2 high) / bad fire (3)", cmap="RdYlGn_r",
               out_path=os.path.join(out, "goodfire_flattened.png"))

    sev = severity_reclass(severities)
    write_geotiff(RasterImage({"severity_class": sev}, grid),
                  os.path.join(out, "severity_reclass.tif"), dtype="uint8", nodata=0)
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except GoodFireError as exc:
        logger.error("%s", exc)
        sys.exit(1)
