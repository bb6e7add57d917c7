"""
Shared fixtures: a 4 x 4 grid of 30 m pixels in CONUS Albers (900 m² each)
and small factories for synthetic images.
"""
import datetime as dt
from collections import OrderedDict

import numpy as np
import pytest

from goodfire.indices.index_utils import INDEX_BANDS
from goodfire.raster.raster_utils import GridSpec, RasterImage

SHAPE = (4, 4)
PIXEL_AREA = 900.0


class StubModel:
    """Deterministic stand-in for the CBI forest: CBI = rbr / 200, clipped to [0, 3]."""

    def __init__(self):
        self.calls = []

    def predict(self, X):
        self.calls.append(list(X.columns))
        return np.clip(X["rbr"].to_numpy(dtype="float64") / 200.0, 0, 3)


@pytest.fixture
def grid():
    return GridSpec.from_bounds(0, 0, 120, 120, 30, "EPSG:5070")


@pytest.fixture
def stub_model():
    return StubModel()


@pytest.fixture
def index_image(grid):
    """Factory: single-date index image with constant values per band."""
    def _make(date, values=None, mask=None, **properties):
        values = values or {}
        bands = OrderedDict()
        for name in INDEX_BANDS:
            arr = np.full(SHAPE, values.get(name, 0.5), dtype="float64")
            bands[name] = np.ma.array(arr, mask=mask if mask is not None else np.zeros(SHAPE, bool))
        props = {"time_start": date if isinstance(date, dt.date) else dt.date.fromisoformat(date)}
        props.update(properties)
        return RasterImage(bands, grid, props)
    return _make


@pytest.fixture
def composite_image(grid):
    """Factory: pre_/post_ composite with the given constant values (default 0.3 / 0.1)."""
    def _make(pre=None, post=None):
        pre = pre or {}
        post = post or {}
        bands = OrderedDict()
        for name in INDEX_BANDS:
            bands[f"pre_{name}"] = np.ma.array(np.full(SHAPE, pre.get(name, 0.3), dtype="float64"))
        for name in INDEX_BANDS:
            bands[f"post_{name}"] = np.ma.array(np.full(SHAPE, post.get(name, 0.1), dtype="float64"))
        return RasterImage(bands, grid, {"year": 2015})
    return _make
