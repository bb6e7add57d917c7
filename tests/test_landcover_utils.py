import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import box

from goodfire.config import FRG_DATASET, LCMAP_DATASET, LCMS_DATASET
from goodfire.errors import MissingYearError
from goodfire.landcover.landcover_utils import (
    REGIME_LOWER, REGIME_NODATA, REGIME_OTHER, REGIME_REPLACE, MaskContext, build_mask_context,
    conservative_forest, fire_regime_masks, forest_pixel_counts, reclassify_binary,
    reclassify_fire_regime,
)
from goodfire.raster.raster_utils import RasterImage
from goodfire.raster.store import DatasetStore


# ============================================================================
# Forest agreement
# ============================================================================

def test_conservative_forest_four_cases():
    # both, LCMAP only, LCMS only, neither
    lcmap = np.array([True, True, False, False])
    lcms = np.array([True, False, True, False])
    forest = conservative_forest(lcmap, lcms)
    assert forest.dtype == np.uint8
    assert np.ma.getmaskarray(forest).tolist() == [False, True, True, True]
    assert forest[0] == 1


def test_reclassify_binary_masks_other_classes():
    out = reclassify_binary(np.ma.array([4, 3, 4], mask=[False, False, True]), 4)
    assert np.ma.getmaskarray(out).tolist() == [False, True, True]


# ============================================================================
# Fire regime
# ============================================================================

def test_fire_regime_concrete_codes():
    assert reclassify_fire_regime(np.array([133, 2, 999])).tolist() == [3, 2, 0]


def test_fire_regime_full_remap():
    codes = np.array([1, 2, 3, 4, 5, 111, 112, 131, 132, 133, 0])
    assert reclassify_fire_regime(codes).tolist() == [1, 2, 1, 2, 2, 3, 3, 3, 3, 3, 0]


def test_fire_regime_masked_is_nodata():
    regime = reclassify_fire_regime(np.ma.array([1, 2], mask=[True, False]))
    assert regime.dtype == np.uint8
    assert regime.tolist() == [REGIME_NODATA, REGIME_REPLACE]


def test_fire_regime_masks():
    masks = fire_regime_masks(np.array([REGIME_LOWER, REGIME_REPLACE, REGIME_OTHER, REGIME_NODATA]))
    assert masks["lower"].tolist() == [True, False, False, False]
    assert masks["replace"].tolist() == [False, True, False, False]


# ============================================================================
# Mask context
# ============================================================================

def _store(grid):
    store = DatasetStore()
    lcmap = np.full(grid.shape, 4)
    lcmap[0, 1] = 1
    lcmap[0, 3] = 1
    lcms = np.full(grid.shape, 1)
    lcms[0, 2] = 3
    lcms[0, 3] = 3
    # registered newest first: years are matched by property, not position
    for year in (2015, 2014):
        store.add_to_collection(LCMAP_DATASET, RasterImage({"LCPRI": lcmap}, grid, {"year": year}))
    for year in (2014, 2015):
        store.add_to_collection(LCMS_DATASET, RasterImage(
            {"Land_Cover": lcms}, grid, {"year": year, "study_area": "CONUS"}))
    store.add_to_collection(LCMS_DATASET, RasterImage(
        {"Land_Cover": np.full(grid.shape, 3)}, grid, {"year": 2014, "study_area": "SEAK"}))
    store.register_image(FRG_DATASET, RasterImage({"FRG": np.full(grid.shape, 1)}, grid))
    return store


def test_build_mask_context_uses_prior_years(grid):
    masks = build_mask_context(_store(grid), start_year=2015, end_year=2016)
    assert masks.years == [2014, 2015]
    forest = masks.forest_for(2014)
    assert forest[0].tolist() == [True, False, False, False]
    assert forest.sum() == 16 - 3
    assert np.all(masks.fire_regime == REGIME_LOWER)


def test_missing_forest_year_raises(grid):
    masks = build_mask_context(_store(grid), start_year=2015, end_year=2015)
    with pytest.raises(MissingYearError):
        masks.forest_for(2019)


def test_mask_context_is_read_only(grid):
    masks = MaskContext(forest={2014: np.ones(grid.shape, bool)}, fire_regime=np.ones(grid.shape))
    with pytest.raises(ValueError):
        masks.forest[2014][0, 0] = False
    with pytest.raises(ValueError):
        masks.fire_regime[0, 0] = 2
    with pytest.raises(TypeError):
        masks.forest[2020] = np.ones(grid.shape, bool)


def test_forest_pixel_counts(grid):
    masks = MaskContext(forest={2014: np.ones(grid.shape, bool)},
                        fire_regime=np.zeros(grid.shape, "uint8"))
    regions = gpd.GeoDataFrame({"NAME": ["West", "East"]},
                               geometry=[box(0, 0, 60, 120), box(60, 0, 90, 120)], crs=grid.crs)
    counts = forest_pixel_counts(masks, regions, grid)
    assert counts["NAME"].tolist() == ["East", "West"]
    assert counts["forest_pixels"].tolist() == [4, 8]
