"""
# composite_utils.py
# ---------------------------------------------------------
# Pre- / post-fire mean composites with window widening.
#
# For fire year Y and a growing-season day-of-year window:
#   pre  narrow [Y-1, Y)    wide [Y-2, Y)
#   post narrow [Y+1, Y+2)  wide [Y+1, Y+3)
# A window with no scenes reduces to a fully masked image. The narrow mean
# always wins; the wide mean only fills pixels the narrow mean left masked.
"""

import datetime as dt
import logging
from collections import OrderedDict

from goodfire.config import NORMAL_SEASON
from goodfire.indices.index_utils import INDEX_BANDS
from goodfire.raster.raster_utils import RasterImage

logger = logging.getLogger(__name__)

# (start offset, end offset) in years relative to the fire year, narrow first
PRE_FIRE_WINDOWS = ((-1, 0), (-2, 0))
POST_FIRE_WINDOWS = ((1, 2), (1, 3))


def window_mean(collection, region, start, end, start_day, end_day, grid, band_names=INDEX_BANDS):
    """
    Mean of all scenes over `region` in [start, end) within the day-of-year window.

    Returns
    -------
    (RasterImage, int)
        The composite (fully masked when no scene matches) and the scene count.
    """
    scenes = (collection
              .filter_bounds(region)
              .filter_date(start, end)
              .filter_day_of_year(start_day, end_day))
    n = scenes.size()
    if n:
        return scenes.select(band_names).mean(), n
    return RasterImage.empty(grid, band_names), 0


def _filled_composite(collection, region, fire_year, windows, start_day, end_day, grid, prefix):
    composites = []
    for start_offset, end_offset in windows:
        start = dt.date(fire_year + start_offset, 1, 1)
        end = dt.date(fire_year + end_offset, 1, 1)
        image, n = window_mean(collection, region.envelope, start, end, start_day, end_day, grid)
        logger.info("%s-fire window %s → %s (doy %d-%d): %d scenes",
                    prefix, start, end, start_day, end_day, n)
        composites.append(image)

    filled = composites[0]
    for wider in composites[1:]:
        filled = filled.unmask(wider)
    return filled.rename([f"{prefix}_{b}" for b in INDEX_BANDS])


def pre_fire_composite(collection, region, fire_year, grid,
                       start_day=NORMAL_SEASON[0], end_day=NORMAL_SEASON[1]):
    """Pre-fire composite with bands pre_nbr, pre_ndvi, pre_ndmi, pre_evi, pre_mirbi."""
    return _filled_composite(collection, region, fire_year, PRE_FIRE_WINDOWS,
                             start_day, end_day, grid, "pre")


def post_fire_composite(collection, region, fire_year, grid,
                        start_day=NORMAL_SEASON[0], end_day=NORMAL_SEASON[1]):
    """Post-fire composite with bands post_nbr, ..., post_mirbi."""
    return _filled_composite(collection, region, fire_year, POST_FIRE_WINDOWS,
                             start_day, end_day, grid, "post")


def fire_composites(collection, region, fire_year, grid,
                    start_day=NORMAL_SEASON[0], end_day=NORMAL_SEASON[1]):
    """
    Paired composites for one fire year and region.

    Parameters
    ----------
    collection : ImageCollection
        Index images from prepare_landsat_collection().
    region : shapely geometry
        Region in grid CRS; its bounding box selects scenes.
    fire_year : int
    grid : GridSpec
    start_day, end_day : int
        Day-of-year window, inclusive.

    Returns
    -------
    RasterImage with the 5 pre_* bands followed by the 5 post_* bands.
    """
    pre = pre_fire_composite(collection, region, fire_year, grid, start_day, end_day)
    post = post_fire_composite(collection, region, fire_year, grid, start_day, end_day)
    bands = OrderedDict(pre.bands)
    bands.update(post.bands)
    return RasterImage(bands, grid, {"year": fire_year})
