"""
==============================================================================
FOREST AND FIRE-REGIME MASKS
==============================================================================

Conservative forest mask
    A pixel is forest in year Y only when BOTH land-cover products call it
    forest in year Y:
        LCMAP primary land cover (LCPRI) class 4  (tree cover)
        LCMS land cover (Land_Cover)      class 1  (trees), CONUS study area
    Years are paired by their 'year' property, never by list position.

Fire Regime Group (LANDFIRE FRG)
    Codes are collapsed into three classes:
        1 = low / mixed severity regime    (FRG I, III)
        2 = stand-replacing regime         (FRG II, IV, V)
        3 = other                          (water, snow/ice, barren, sparse, indeterminate)
        0 = no data
    The mapping follows the LANDFIRE remap used by the published analysis:
        [1, 2, 3, 4, 5, 111, 112, 131, 132, 133] -> [1, 2, 1, 2, 2, 3, 3, 3, 3, 3]

Both masks are built once per run and handed around in a read-only MaskContext.
==============================================================================
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

import numpy as np
import pandas as pd

from goodfire.config import FRG_DATASET, LCMAP_DATASET, LCMS_DATASET, LCMS_STUDY_AREA
from goodfire.errors import MissingYearError
from goodfire.raster.raster_utils import rasterize_geometries, remap

logger = logging.getLogger(__name__)

LCMAP_BAND = "LCPRI"
LCMAP_FOREST_CLASS = 4
LCMS_BAND = "Land_Cover"
LCMS_FOREST_CLASS = 1
FRG_BAND = "FRG"

# Fire-regime classes after reclassification
REGIME_NODATA = 0
REGIME_LOWER = 1
REGIME_REPLACE = 2
REGIME_OTHER = 3

FRG_FROM = [1, 2, 3, 4, 5, 111, 112, 131, 132, 133]
FRG_TO = [1, 2, 1, 2, 2, 3, 3, 3, 3, 3]


# ==========================================================
# 1. Forest
# ==========================================================
def reclassify_binary(arr, class_value):
    """uint8 array: 1 where arr == class_value, masked elsewhere (and where arr is masked)."""
    arr = np.ma.asarray(arr)
    hit = np.ma.filled(arr == class_value, False)
    return np.ma.array(np.ones(arr.shape, dtype="uint8"), mask=~hit)


def _band_or_first(image, name):
    return image.band(name) if name in image else image.band(image.band_names[0])


def forest_by_year(collection, class_value, band, years):
    """
    {year: boolean forest array} for every year with an image in `collection`.

    Images are matched on their 'year' property. Missing years are logged and
    left out.
    """
    out = OrderedDict()
    for year in years:
        image = collection.filter_eq("year", year).first()
        if image is None:
            logger.warning("No %s image for %d", band, year)
            continue
        out[year] = ~np.ma.getmaskarray(reclassify_binary(_band_or_first(image, band), class_value))
    return out


def conservative_forest(lcmap_forest, lcms_forest):
    """
    Agreement of two boolean forest arrays for the same year.

    Returns
    -------
    np.ma.MaskedArray (uint8)
        1 where both are forest, masked elsewhere.
    """
    both = np.asarray(lcmap_forest, dtype=bool) & np.asarray(lcms_forest, dtype=bool)
    return np.ma.array(np.ones(both.shape, dtype="uint8"), mask=~both)


# ==========================================================
# 2. Fire regime
# ==========================================================
def reclassify_fire_regime(frg):
    """Collapse FRG codes to 0-3 (uint8). Masked or unlisted codes become 0."""
    classes = remap(frg, FRG_FROM, FRG_TO, default=REGIME_NODATA)
    return np.ma.filled(classes, REGIME_NODATA).astype("uint8")


def fire_regime_masks(regime):
    """Boolean {'lower': ..., 'replace': ...} masks from a reclassified regime array."""
    regime = np.asarray(regime)
    return {"lower": regime == REGIME_LOWER, "replace": regime == REGIME_REPLACE}


# ==========================================================
# 3. Shared, read-only mask context
# ==========================================================
@dataclass(frozen=True)
class MaskContext:
    """
    Forest masks by year and the fire-regime array.

    Attributes
    ----------
    forest : Mapping[int, np.ndarray]
        Boolean conservative forest per year. Exposed as a read-only mapping.
    fire_regime : np.ndarray
        uint8 regime classes (0-3).
    """
    forest: Mapping
    fire_regime: np.ndarray

    def __post_init__(self):
        frozen = {}
        for year, arr in self.forest.items():
            arr = np.array(arr, dtype=bool)
            arr.setflags(write=False)
            frozen[int(year)] = arr
        regime = np.array(self.fire_regime, dtype="uint8")
        regime.setflags(write=False)
        object.__setattr__(self, "forest", MappingProxyType(frozen))
        object.__setattr__(self, "fire_regime", regime)

    @property
    def years(self):
        return sorted(self.forest)

    def forest_for(self, year):
        if year not in self.forest:
            raise MissingYearError(year, "forest mask")
        return self.forest[year]


def build_mask_context(store, start_year, end_year, lcms_study_area=LCMS_STUDY_AREA):
    """
    Build forest masks for the years before each fire year plus the regime array.

    Fire years start_year..end_year need forest for start_year-1..end_year-1.

    Parameters
    ----------
    store : DatasetStore
    start_year, end_year : int
        Fire years of the run.
    lcms_study_area : str
        LCMS images are filtered on their 'study_area' property.

    Returns
    -------
    MaskContext
    """
    years = list(range(start_year - 1, end_year))

    lcmap = forest_by_year(store.image_collection(LCMAP_DATASET), LCMAP_FOREST_CLASS, LCMAP_BAND, years)
    lcms_images = store.image_collection(LCMS_DATASET).filter_eq("study_area", lcms_study_area)
    lcms = forest_by_year(lcms_images, LCMS_FOREST_CLASS, LCMS_BAND, years)

    forest = OrderedDict()
    for year in years:
        if year in lcmap and year in lcms:
            forest[year] = ~np.ma.getmaskarray(conservative_forest(lcmap[year], lcms[year]))
        else:
            logger.warning("Forest mask for %d unavailable (LCMAP: %s, LCMS: %s)",
                           year, year in lcmap, year in lcms)

    frg = store.image(FRG_DATASET)
    regime = reclassify_fire_regime(_band_or_first(frg, FRG_BAND))
    logger.info("Mask context: forest years %s, regime classes %s",
                list(forest), np.unique(regime).tolist())
    return MaskContext(forest=forest, fire_regime=regime)


def forest_pixel_counts(masks, regions, grid, name_column="NAME"):
    """
    Count conservative forest pixels per region and year.

    Returns
    -------
    pd.DataFrame with columns [name_column, 'year', 'forest_pixels'], sorted.
    """
    rows = []
    for _, region in regions.iterrows():
        inside = rasterize_geometries([region.geometry], grid).astype(bool)
        for year in masks.years:
            rows.append({
                name_column: region[name_column],
                "year": year,
                "forest_pixels": int(np.count_nonzero(masks.forest[year] & inside)),
            })
    df = pd.DataFrame(rows, columns=[name_column, "year", "forest_pixels"])
    return df.sort_values(["year", name_column]).reset_index(drop=True)
