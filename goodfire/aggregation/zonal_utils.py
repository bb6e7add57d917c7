"""
# zonal_utils.py
# ---------------------------------------------------------
# Zonal reduction of multi-band RasterImages over one polygon.
#
# Wraps rasterstats.zonal_stats on in-memory arrays:
# - masked pixels are written as NODATA and ignored
# - supported statistics: sum, mean, max, count
# - tile_scale splits the polygon into row strips aligned to pixel edges,
#   reduced one at a time and combined
# - max_pixels caps the pixels a single strip may touch; above it a
#   ResourceLimitError is raised before any work is done
# - reduce_with_retry() retries once with a doubled tile_scale, then
#   raises ReductionError
#
# Pixels are assigned by the pixel-centre rule, so a pixel never falls in
# two strips.
"""

import logging
import math

import numpy as np
import shapely
from rasterstats import zonal_stats
from shapely.geometry import MultiPolygon, Polygon, box

from goodfire.config import MAX_PIXELS, TILE_SCALE
from goodfire.errors import ReductionError, ResourceLimitError

logger = logging.getLogger(__name__)

NODATA = -9999.0
SUPPORTED_STATS = ("sum", "mean", "max", "count")


def polygonal_part(geometry):
    """
    Polygonal part of a clip result, or None.

    Clipping along a shared edge or vertex leaves lines and points next to the
    polygons in a GeometryCollection, which rasterstats cannot read.
    """
    if geometry.is_empty:
        return None
    if isinstance(geometry, (Polygon, MultiPolygon)):
        return geometry
    polygons = []
    for part in shapely.get_parts(geometry):
        if isinstance(part, Polygon):
            polygons.append(part)
        elif isinstance(part, MultiPolygon):
            polygons.extend(part.geoms)
        elif part.geom_type == "GeometryCollection":
            nested = polygonal_part(part)
            if nested is not None:
                polygons.extend(shapely.get_parts(nested))
    polygons = [p for p in polygons if not p.is_empty]
    if not polygons:
        return None
    return polygons[0] if len(polygons) == 1 else MultiPolygon(polygons)


class ZonalReducer:
    """
    Reduce RasterImage bands over a geometry on one analysis grid.

    Parameters
    ----------
    grid : GridSpec
        Grid of every image passed to reduce(); geometries are in its CRS.
    tile_scale : int
        Default number of row strips a geometry is split into.
    max_pixels : float
        Largest pixel window one strip may read.
    """

    def __init__(self, grid, tile_scale=TILE_SCALE, max_pixels=MAX_PIXELS):
        if tile_scale < 1:
            raise ValueError(f"tile_scale must be >= 1, got {tile_scale}")
        self.grid = grid
        self.tile_scale = int(tile_scale)
        self.max_pixels = max_pixels

    def __repr__(self):
        return f"ZonalReducer(tile_scale={self.tile_scale}, max_pixels={self.max_pixels:g})"

    # ---- strips ----
    def _row_range(self, geometry):
        rows = self.grid.shape[0]
        t = self.grid.transform
        _, miny, _, maxy = geometry.bounds
        r0 = max(0, int(math.floor((t.f - maxy) / abs(t.e))))
        r1 = min(rows, int(math.ceil((t.f - miny) / abs(t.e))))
        return r0, r1

    def strips(self, geometry, tile_scale):
        """Split `geometry` into at most `tile_scale` pieces along pixel rows."""
        r0, r1 = self._row_range(geometry)
        if r1 <= r0:
            return []
        n = min(int(tile_scale), r1 - r0)
        edges = np.unique(np.round(np.linspace(r0, r1, n + 1)).astype(int))
        t = self.grid.transform
        west, _, east, _ = self.grid.bounds
        pieces = []
        for a, b in zip(edges[:-1], edges[1:]):
            strip = box(west, t.f - b * abs(t.e), east, t.f - a * abs(t.e))
            piece = polygonal_part(geometry.intersection(strip))
            if piece is not None:
                pieces.append((piece, int(b - a)))
        return pieces

    def _window_pixels(self, piece, n_rows):
        minx, _, maxx, _ = piece.bounds
        n_cols = math.ceil((maxx - minx) / abs(self.grid.transform.a)) + 1
        return n_rows * n_cols

    # ---- reduction ----
    def reduce(self, image, geometry, stats=("sum",), tile_scale=None):
        """
        Reduce every band of `image` over `geometry`.

        Returns
        -------
        dict
            {band: value} for a single statistic, {band_stat: value} otherwise.
            Sums and counts over no pixels are 0; mean and max are NaN.
        """
        stats = tuple(stats)
        unknown = [s for s in stats if s not in SUPPORTED_STATS]
        if unknown:
            raise ValueError(f"Unsupported statistics: {unknown}")
        tile_scale = self.tile_scale if tile_scale is None else int(tile_scale)

        pieces = self.strips(geometry, tile_scale) if not geometry.is_empty else []
        for piece, n_rows in pieces:
            n_pixels = self._window_pixels(piece, n_rows)
            if n_pixels > self.max_pixels:
                raise ResourceLimitError(
                    f"Reduction over {n_pixels} pixels exceeds max_pixels={self.max_pixels:g} "
                    f"(tile_scale={tile_scale})")

        result = {}
        for name, arr in image.bands.items():
            filled = np.ma.filled(np.ma.asarray(arr, dtype="float64"), NODATA)
            total, count, peak = 0.0, 0, None
            for piece, _ in pieces:
                zs = zonal_stats(
                    [piece], filled,
                    affine=self.grid.transform,
                    nodata=NODATA,
                    stats=["sum", "count", "max"],
                    all_touched=False,
                )[0]
                total += zs["sum"] or 0.0
                count += zs["count"] or 0
                if zs["max"] is not None:
                    peak = zs["max"] if peak is None else max(peak, zs["max"])

            values = {
                "sum": float(total),
                "count": int(count),
                "max": float(peak) if peak is not None else float("nan"),
                "mean": float(total / count) if count else float("nan"),
            }
            for stat in stats:
                key = name if len(stats) == 1 else f"{name}_{stat}"
                result[key] = values[stat]
        return result

    def reduce_with_retry(self, image, geometry, stats=("sum",), tile_scale=None):
        """reduce(), retried once with a doubled tile_scale on ResourceLimitError."""
        tile_scale = self.tile_scale if tile_scale is None else int(tile_scale)
        try:
            return self.reduce(image, geometry, stats, tile_scale)
        except ResourceLimitError as first:
            logger.warning("%s; retrying with tile_scale=%d", first, tile_scale * 2)
            try:
                return self.reduce(image, geometry, stats, tile_scale * 2)
            except ResourceLimitError as second:
                raise ReductionError(str(second)) from second
