"""
==============================================================================
SEVERITY SURFACE — PER YEAR AND PER FIRE EVENT
==============================================================================

Runs composites → burn metrics → CBI inference → bias correction for:

1. Each growing-season region (western states on the normal season, Arizona
   and New Mexico on the early season), then mosaics the regions into one
   severity image per year.
2. A single fire perimeter, using its own extent and the season of the region
   it falls in.

The yearly surface is masked to pixels with valid pre- and post-fire NBR and
to land pixels, and optionally to that year's fire perimeters.

All inputs arrive through an explicit, immutable SeverityContext.

PRIMARY OUTPUTS:
    dict {year: RasterImage}     bands cbi_bc, cbi, burn metrics, covariates
    <output_dir>/severity_stack.tif   one band per year named year_<YYYY>
==============================================================================
"""
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np
from shapely.ops import unary_union
from tqdm import tqdm

from goodfire.composite.composite_utils import fire_composites
from goodfire.config import (
    DEFICIT_DATASET, LAND_MASK_DATASET, LANDSAT_DATASETS, NORMAL_SEASON,
    NORMAL_SEASON_STATES, PREDICT_CHUNK_SIZE, SPECIAL_SEASON, SPECIAL_SEASON_STATES,
)
from goodfire.indices.index_utils import prepare_landsat_collection
from goodfire.raster.raster_utils import (
    ImageCollection, RasterImage, rasterize_geometries, read_geotiff, write_geotiff,
)
from goodfire.severity.burn_metrics import RdnbrStrategy, compute_burn_metrics
from goodfire.severity.cbi_model import estimate_severity

logger = logging.getLogger(__name__)

SEVERITY_BAND = "cbi_bc"
STACK_BAND_PATTERN = re.compile(r"^year_(\d{4})$")


# ==========================================================
# 1. Run context
# ==========================================================
@dataclass(frozen=True)
class SeasonRegion:
    """A region sharing one growing-season window (day of year, inclusive)."""
    name: str
    geometry: Any
    start_day: int
    end_day: int


@dataclass(frozen=True)
class SeverityContext:
    """Everything the severity stage reads, built once per run."""
    grid: Any
    landsat: ImageCollection
    deficit: RasterImage
    model: Any
    land_mask: Optional[np.ndarray] = None
    rdnbr_strategy: RdnbrStrategy = RdnbrStrategy.FLOORED_SQRT
    chunk_size: int = PREDICT_CHUNK_SIZE


def build_season_regions(states, name_column="NAME"):
    """
    Dissolve state polygons into the two growing-season regions.

    Parameters
    ----------
    states : gpd.GeoDataFrame
        State boundaries in grid CRS.
    name_column : str

    Returns
    -------
    list of SeasonRegion
        Normal-season region first, so the early-season region wins where they touch.
    """
    regions = []
    for name, members, (start_day, end_day) in (
        ("normal_season", NORMAL_SEASON_STATES, NORMAL_SEASON),
        ("special_season", SPECIAL_SEASON_STATES, SPECIAL_SEASON),
    ):
        subset = states[states[name_column].isin(members)]
        if subset.empty:
            logger.warning("No states found for %s region", name)
            continue
        regions.append(SeasonRegion(name, unary_union(list(subset.geometry)), start_day, end_day))
    return regions


def land_mask_from_store(store, dataset_id=LAND_MASK_DATASET):
    """Boolean land mask (datamask == 1)."""
    image = store.image(dataset_id)
    name = "datamask" if "datamask" in image else image.band_names[0]
    return np.ma.filled(image.band(name) == 1, False)


def build_severity_context(store, grid, model, rdnbr_strategy=RdnbrStrategy.FLOORED_SQRT,
                           chunk_size=PREDICT_CHUNK_SIZE):
    """Assemble a SeverityContext from the dataset store."""
    collections = OrderedDict(
        (sensor, store.image_collection(dataset_id))
        for sensor, dataset_id in LANDSAT_DATASETS.items()
        if store.has(dataset_id)
    )
    if not collections:
        logger.warning("No Landsat collections in the store; every composite will be masked")

    land_mask = None
    if store.has(LAND_MASK_DATASET):
        land_mask = land_mask_from_store(store)
        land_mask.setflags(write=False)

    return SeverityContext(
        grid=grid,
        landsat=prepare_landsat_collection(collections),
        deficit=store.image(DEFICIT_DATASET),
        model=model,
        land_mask=land_mask,
        rdnbr_strategy=RdnbrStrategy(rdnbr_strategy),
        chunk_size=chunk_size,
    )


# ==========================================================
# 2. Severity per region / year / event
# ==========================================================
def _severity_over(ctx, geometry, year, start_day, end_day):
    composite = fire_composites(ctx.landsat, geometry, year, ctx.grid, start_day, end_day)
    metrics = compute_burn_metrics(composite, ctx.rdnbr_strategy).clip(geometry)
    return estimate_severity(metrics, ctx.model, ctx.deficit, chunk_size=ctx.chunk_size)


def severity_for_region(ctx, region, year):
    """Severity image for one season region and year, masked outside the region."""
    logger.info("Severity %d: %s (doy %d-%d)", year, region.name, region.start_day, region.end_day)
    return _severity_over(ctx, region.geometry, year, region.start_day, region.end_day)


def _valid_surface(ctx, image):
    valid = ~(np.ma.getmaskarray(image.band("pre_nbr")) | np.ma.getmaskarray(image.band("post_nbr")))
    image = image.update_mask(valid)
    if ctx.land_mask is not None:
        image = image.update_mask(ctx.land_mask)
    return image


def severity_for_year(ctx, regions, year, fire_geometries=None):
    """
    Mosaic of the region severities for one fire year.

    Parameters
    ----------
    ctx : SeverityContext
    regions : list of SeasonRegion
        Later regions are drawn on top of earlier ones.
    year : int
    fire_geometries : iterable of geometries, optional
        When given, pixels outside these perimeters are masked.

    Returns
    -------
    RasterImage with properties {'year': year}
    """
    if not regions:
        raise ValueError("severity_for_year() needs at least one season region")
    mosaic = ImageCollection(severity_for_region(ctx, r, year) for r in regions).mosaic()
    mosaic = _valid_surface(ctx, mosaic)
    if fire_geometries is not None:
        mosaic = mosaic.update_mask(rasterize_geometries(list(fire_geometries), ctx.grid))
    return mosaic.set(year=year)


def _season_for(geometry, regions):
    best, best_area = None, 0.0
    for region in regions:
        overlap = region.geometry.intersection(geometry).area
        if overlap > best_area:
            best, best_area = region, overlap
    if best is None:
        return NORMAL_SEASON
    return best.start_day, best.end_day


def severity_for_event(ctx, geometry, fire_year, regions=()):
    """
    Severity for a single fire perimeter.

    Scenes are selected by the perimeter's own bounding box; the season window
    is that of the region with the largest overlap (normal season otherwise).
    """
    start_day, end_day = _season_for(geometry, regions)
    image = _severity_over(ctx, geometry, fire_year, start_day, end_day)
    return _valid_surface(ctx, image).set(year=fire_year)


def severity_for_years(ctx, regions, years, fires=None, year_column="Fire_Year"):
    """
    Severity surfaces for a range of years.

    When `fires` is given each year is masked to that year's perimeters.
    """
    out = OrderedDict()
    for year in tqdm(years, desc="Severity by year", ncols=80):
        geoms = None
        if fires is not None:
            geoms = fires.loc[fires[year_column] == year, "geometry"]
        out[year] = severity_for_year(ctx, regions, year, geoms)
    return out


# ==========================================================
# 3. Severity stack I/O
# ==========================================================
def write_severity_stack(severities, path, band=SEVERITY_BAND):
    """Write one band per year, named year_<YYYY>, from {year: RasterImage}."""
    if not severities:
        raise ValueError("No severity images to write")
    years = sorted(severities)
    grid = severities[years[0]].grid
    stack = RasterImage(
        OrderedDict((f"year_{y}", severities[y].band(band)) for y in years), grid)
    return write_geotiff(stack, path)


def read_severity_stack(path, grid=None, band=SEVERITY_BAND):
    """Read a severity stack back into {year: RasterImage(band)}."""
    stack = read_geotiff(path, grid=grid)
    out = OrderedDict()
    for name in stack.band_names:
        match = STACK_BAND_PATTERN.match(name)
        if not match:
            logger.warning("Skipping band '%s' in %s: not a year_<YYYY> band", name, path)
            continue
        year = int(match.group(1))
        out[year] = RasterImage({band: stack.band(name)}, stack.grid, {"year": year})
    logger.info("Read severity stack %s: years %s", path, list(out))
    return out
