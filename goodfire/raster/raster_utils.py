"""
# raster_utils.py
# ---------------------------------------------------------
# Masked multi-band raster model shared by every pipeline stage:
# - GridSpec: the analysis grid (transform, CRS, shape)
# - RasterImage: named masked bands + metadata properties
# - ImageCollection: bounds / date / day-of-year / attribute filters,
#   mean and mosaic reductions
# - Pixel area, pixel latitude, rasterize and remap helpers
# - GeoTIFF read / write with reprojection onto the analysis grid
#
# Masking follows numpy.ma: arithmetic on a masked pixel stays masked.
"""

import datetime as dt
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import rasterio
from rasterio import features
from rasterio.crs import CRS
from rasterio.transform import array_bounds, xy
from rasterio.warp import Resampling, calculate_default_transform, reproject
from rasterio.warp import transform as warp_transform
from shapely.geometry import box, mapping

from goodfire.config import GEOGRAPHIC_CRS

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371008.8


# ==========================================================
# 1. Analysis grid
# ==========================================================
@dataclass(frozen=True)
class GridSpec:
    """Pixel grid every raster of a run is aligned to."""
    transform: rasterio.Affine
    crs: str
    shape: Tuple[int, int]

    @property
    def bounds(self):
        """(west, south, east, north) in grid CRS units."""
        west, south, east, north = array_bounds(self.shape[0], self.shape[1], self.transform)
        return west, south, east, north

    @property
    def footprint(self):
        return box(*self.bounds)

    @property
    def is_geographic(self):
        return CRS.from_user_input(self.crs).is_geographic

    @classmethod
    def from_raster(cls, path):
        """Read the grid of an existing raster (e.g. a template GeoTIFF)."""
        with rasterio.open(path) as src:
            return cls(transform=src.transform, crs=src.crs.to_string(),
                       shape=(src.height, src.width))

    @classmethod
    def from_bounds(cls, west, south, east, north, resolution, crs):
        width = int(round((east - west) / resolution))
        height = int(round((north - south) / resolution))
        transform = rasterio.transform.from_origin(west, north, resolution, resolution)
        return cls(transform=transform, crs=crs, shape=(height, width))


# ==========================================================
# 2. Masked multi-band image
# ==========================================================
class RasterImage:
    """
    A set of named 2-D masked bands on one GridSpec.

    Parameters
    ----------
    bands : mapping of str -> array-like
        Band arrays. Plain arrays are treated as fully unmasked.
    grid : GridSpec
    properties : dict, optional
        Metadata such as ``time_start`` (datetime.date), ``sensor``, ``year``.
    """

    def __init__(self, bands, grid, properties=None):
        self.grid = grid
        self.properties = dict(properties or {})
        self.bands = OrderedDict()
        for name, arr in bands.items():
            arr = np.ma.asarray(arr)
            if arr.shape != tuple(grid.shape):
                raise ValueError(
                    f"Band '{name}' has shape {arr.shape}, grid expects {tuple(grid.shape)}")
            # Materialise a full boolean mask so per-pixel edits never hit nomask.
            self.bands[name] = np.ma.array(arr.data, mask=np.ma.getmaskarray(arr))

    def __repr__(self):
        return f"RasterImage(bands={self.band_names}, shape={tuple(self.grid.shape)})"

    def __getitem__(self, name):
        return self.band(name)

    def __contains__(self, name):
        return name in self.bands

    @property
    def band_names(self):
        return list(self.bands.keys())

    @property
    def date(self):
        return self.properties.get("time_start")

    @property
    def footprint(self):
        """Scene footprint used by bounds filters (defaults to the grid extent)."""
        return self.properties.get("footprint", self.grid.footprint)

    @classmethod
    def empty(cls, grid, band_names, properties=None):
        """Fully masked float image, the result of reducing an empty collection."""
        bands = {
            name: np.ma.masked_all(tuple(grid.shape), dtype="float64")
            for name in band_names
        }
        return cls(bands, grid, properties)

    @classmethod
    def constant(cls, value, grid, name="constant"):
        return cls({name: np.full(tuple(grid.shape), value)}, grid)

    def band(self, name):
        if name not in self.bands:
            raise KeyError(f"Band '{name}' not found. Available: {self.band_names}")
        return self.bands[name]

    def set(self, **properties):
        """Return a copy with extra / replaced properties."""
        props = dict(self.properties)
        props.update(properties)
        return RasterImage(self.bands, self.grid, props)

    def select(self, names, new_names=None):
        if isinstance(names, str):
            names = [names]
        if new_names is None:
            new_names = names
        if len(new_names) != len(names):
            raise ValueError("select(): names and new_names must have the same length")
        bands = OrderedDict((new, self.band(old)) for old, new in zip(names, new_names))
        return RasterImage(bands, self.grid, self.properties)

    def rename(self, new_names):
        return self.select(self.band_names, list(new_names))

    def add_bands(self, other, overwrite=False):
        """Append bands from another image or mapping; existing names need overwrite=True."""
        extra = other.bands if isinstance(other, RasterImage) else other
        bands = OrderedDict(self.bands)
        for name, arr in extra.items():
            if name in bands and not overwrite:
                raise ValueError(f"Band '{name}' already exists")
            bands[name] = arr
        return RasterImage(bands, self.grid, self.properties)

    def update_mask(self, mask):
        """
        Mask every band wherever `mask` is masked or zero / False.

        `mask` may be a 2-D (masked) array or a single-band RasterImage.
        """
        if isinstance(mask, RasterImage):
            mask = mask.band(mask.band_names[0])
        mask = np.ma.asarray(mask)
        keep = np.ma.filled(mask.astype(bool), False)
        bands = OrderedDict(
            (name, np.ma.array(arr.data, mask=np.ma.getmaskarray(arr) | ~keep))
            for name, arr in self.bands.items()
        )
        return RasterImage(bands, self.grid, self.properties)

    def unmask(self, fill):
        """
        Fill masked pixels from `fill` and leave unmasked pixels untouched.

        `fill` is a scalar or an image with the same number of bands (matched by
        position). Pixels masked in both stay masked.
        """
        bands = OrderedDict()
        if isinstance(fill, RasterImage):
            if len(fill.bands) != len(self.bands):
                raise ValueError(
                    f"unmask(): {len(self.bands)} bands cannot be filled from {len(fill.bands)}")
            fill_arrays = list(fill.bands.values())
        else:
            fill_arrays = [None] * len(self.bands)

        for (name, arr), other in zip(self.bands.items(), fill_arrays):
            own_mask = np.ma.getmaskarray(arr)
            if other is None:
                data = np.where(own_mask, fill, arr.data)
                bands[name] = np.ma.array(data, mask=np.zeros_like(own_mask))
            else:
                data = np.where(own_mask, other.data, arr.data)
                bands[name] = np.ma.array(data, mask=own_mask & np.ma.getmaskarray(other))
        return RasterImage(bands, self.grid, self.properties)

    def self_mask(self):
        """Mask pixels equal to zero in each band."""
        bands = OrderedDict(
            (name, np.ma.masked_where(np.ma.filled(arr == 0, True), arr))
            for name, arr in self.bands.items()
        )
        return RasterImage(bands, self.grid, self.properties)

    def clip(self, geometry, all_touched=False):
        """Mask everything outside `geometry` (given in grid CRS)."""
        inside = rasterize_geometries([geometry], self.grid, all_touched=all_touched)
        return self.update_mask(inside)


# ==========================================================
# 3. Image collections
# ==========================================================
class ImageCollection:
    """An ordered set of RasterImages with the filters the pipeline needs."""

    def __init__(self, images=None):
        self.images = list(images or [])

    def __len__(self):
        return len(self.images)

    def __iter__(self):
        return iter(self.images)

    def __repr__(self):
        return f"ImageCollection(size={len(self.images)})"

    def size(self):
        return len(self.images)

    def filter_bounds(self, geometry):
        return ImageCollection(im for im in self.images if im.footprint.intersects(geometry))

    def filter_date(self, start, end):
        """Keep images with start <= time_start < end."""
        start, end = _as_date(start), _as_date(end)
        return ImageCollection(
            im for im in self.images
            if im.date is not None and start <= _as_date(im.date) < end
        )

    def filter_day_of_year(self, start_day, end_day):
        """Keep images whose acquisition day of year is within [start_day, end_day]."""
        def doy(im):
            return _as_date(im.date).timetuple().tm_yday
        return ImageCollection(
            im for im in self.images
            if im.date is not None and start_day <= doy(im) <= end_day
        )

    def filter_eq(self, name, value):
        return ImageCollection(im for im in self.images if im.properties.get(name) == value)

    def select(self, names, new_names=None):
        return ImageCollection(im.select(names, new_names) for im in self.images)

    def map(self, fn):
        return ImageCollection(fn(im) for im in self.images)

    def merge(self, other):
        return ImageCollection(self.images + list(other))

    def first(self):
        """First image, or None for an empty collection."""
        return self.images[0] if self.images else None

    def mean(self):
        """
        Per-pixel, per-band mean over unmasked values.

        A pixel is masked only where every image is masked. Properties are dropped.
        """
        if not self.images:
            raise ValueError("Cannot reduce an empty ImageCollection")
        first = self.images[0]
        bands = OrderedDict()
        for name in first.band_names:
            stack = np.ma.stack([im.band(name).astype("float64") for im in self.images], axis=0)
            bands[name] = stack.mean(axis=0)
        return RasterImage(bands, first.grid)

    def mosaic(self):
        """Composite with the last image on top; masked pixels fall through."""
        if not self.images:
            raise ValueError("Cannot mosaic an empty ImageCollection")
        first = self.images[0]
        bands = OrderedDict()
        for name in first.band_names:
            data = np.array(first.band(name).data, dtype="float64")
            mask = np.ma.getmaskarray(first.band(name)).copy()
            for im in self.images[1:]:
                arr = im.band(name)
                valid = ~np.ma.getmaskarray(arr)
                data[valid] = arr.data[valid]
                mask[valid] = False
            bands[name] = np.ma.array(data, mask=mask)
        return RasterImage(bands, first.grid)


def _as_date(value):
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    return dt.date.fromisoformat(str(value)[:10])


# ==========================================================
# 4. Per-pixel helper images
# ==========================================================
def pixel_area(grid):
    """
    Ground area of every pixel in m².

    Projected grids use |a * e| from the affine transform; geographic grids use
    the spherical cell-area formula per row.
    """
    rows, cols = grid.shape
    t = grid.transform
    if not grid.is_geographic:
        return np.full((rows, cols), abs(t.a * t.e), dtype="float64")

    top = t.f + np.arange(rows) * t.e
    bottom = top + t.e
    dlon = np.radians(abs(t.a))
    band = np.abs(np.sin(np.radians(top)) - np.sin(np.radians(bottom)))
    row_area = EARTH_RADIUS_M ** 2 * dlon * band
    return np.repeat(row_area[:, None], cols, axis=1)


def pixel_latitude(grid):
    """Latitude (degrees) of every pixel centre."""
    rows, cols = grid.shape
    rr, cc = np.meshgrid(np.arange(rows), np.arange(cols), indexing="ij")
    xs, ys = xy(grid.transform, rr.ravel(), cc.ravel(), offset="center")
    xs, ys = np.asarray(xs), np.asarray(ys)
    if not grid.is_geographic:
        _, ys = warp_transform(grid.crs, GEOGRAPHIC_CRS, xs.tolist(), ys.tolist())
        ys = np.asarray(ys)
    return ys.reshape(rows, cols)


def rasterize_geometries(geometries, grid, all_touched=False):
    """
    Burn geometries (in grid CRS) into a uint8 presence array (1 inside, 0 outside).

    Pixel-centre rule unless all_touched=True.
    """
    shapes = [(mapping(g), 1) for g in geometries if g is not None and not g.is_empty]
    if not shapes:
        return np.zeros(tuple(grid.shape), dtype="uint8")
    return features.rasterize(
        shapes,
        out_shape=tuple(grid.shape),
        transform=grid.transform,
        fill=0,
        all_touched=all_touched,
        dtype="uint8",
    )


def remap(arr, from_values, to_values, default=0):
    """Map discrete codes to new values; codes not listed get `default`. Mask is kept."""
    arr = np.ma.asarray(arr)
    out = np.full(arr.shape, default, dtype="int32")
    for src, dst in zip(from_values, to_values):
        out[arr.data == src] = dst
    return np.ma.array(out, mask=np.ma.getmaskarray(arr))


# ==========================================================
# 5. GeoTIFF I/O
# ==========================================================
def read_geotiff(path, grid=None, band_names=None, properties=None, resampling=Resampling.nearest):
    """
    Read a GeoTIFF into a RasterImage, reprojecting onto `grid` when it differs.

    Parameters
    ----------
    path : str
        Raster path.
    grid : GridSpec, optional
        Target grid. Defaults to the file's own grid.
    band_names : list of str, optional
        Names for the bands. Defaults to band descriptions, then b1..bn.
    properties : dict, optional
        Properties attached to the image.
    resampling : rasterio.warp.Resampling
        Used only when reprojecting. Nearest keeps categorical codes intact.
    """
    with rasterio.open(path) as src:
        src_grid = GridSpec(src.transform, src.crs.to_string(), (src.height, src.width))
        names = list(band_names) if band_names else [
            desc if desc else f"b{i + 1}" for i, desc in enumerate(src.descriptions)
        ]
        if len(names) != src.count:
            raise ValueError(f"{path}: {src.count} bands but {len(names)} names given")

        data = src.read(masked=True)

    if grid is None or _same_grid(src_grid, grid):
        bands = OrderedDict((n, data[i]) for i, n in enumerate(names))
        return RasterImage(bands, grid or src_grid, properties)

    logger.info("Reprojecting %s onto analysis grid", path)
    src_image = RasterImage(OrderedDict((n, data[i]) for i, n in enumerate(names)), src_grid)
    return reproject_image(src_image, grid, resampling=resampling).set(**(properties or {}))


def reproject_image(image, grid, resampling=Resampling.nearest):
    """Warp every band of `image` onto `grid`; masked pixels stay masked."""
    bands = OrderedDict()
    for name, arr in image.bands.items():
        src = np.ma.filled(arr.astype("float64"), np.nan)
        dst = np.full(tuple(grid.shape), np.nan, dtype="float64")
        reproject(
            source=src,
            destination=dst,
            src_transform=image.grid.transform,
            src_crs=image.grid.crs,
            src_nodata=np.nan,
            dst_transform=grid.transform,
            dst_crs=grid.crs,
            dst_nodata=np.nan,
            resampling=resampling,
        )
        bands[name] = np.ma.masked_invalid(dst)
    return RasterImage(bands, grid, image.properties)


def write_geotiff(image, path, dtype="float32", nodata=-9999.0):
    """Write all bands of `image` to one GeoTIFF, band names stored as descriptions."""
    profile = {
        "driver": "GTiff",
        "height": image.grid.shape[0],
        "width": image.grid.shape[1],
        "count": len(image.bands),
        "dtype": dtype,
        "crs": image.grid.crs,
        "transform": image.grid.transform,
        "nodata": nodata,
        "compress": "lzw",
    }
    with rasterio.open(path, "w", **profile) as dst:
        for i, (name, arr) in enumerate(image.bands.items(), start=1):
            dst.write(np.ma.filled(arr.astype("float64"), nodata).astype(dtype), i)
            dst.set_band_description(i, name)
    logger.info("Saved raster → %s", path)
    return path


def warp_grid(grid, crs, resolution, bounds=None):
    """
    Grid in `crs` at `resolution` covering `bounds` (source CRS units).

    Defaults to the full extent of `grid`.
    """
    west, south, east, north = bounds if bounds is not None else grid.bounds
    transform, width, height = calculate_default_transform(
        grid.crs, crs, grid.shape[1], grid.shape[0],
        left=west, bottom=south, right=east, top=north, resolution=resolution,
    )
    return GridSpec(transform=transform, crs=crs, shape=(height, width))


def _same_grid(a, b):
    return (
        tuple(a.shape) == tuple(b.shape)
        and a.transform.almost_equals(b.transform)
        and CRS.from_user_input(a.crs) == CRS.from_user_input(b.crs)
    )
