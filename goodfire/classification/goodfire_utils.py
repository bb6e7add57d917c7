"""
==============================================================================
GOOD FIRE / BAD FIRE CLASSIFICATION
==============================================================================

Crosses bias-corrected CBI for fire year Y with:
    - the conservative forest mask of year Y-1 (never Y: fire changes cover)
    - the fire-regime classes (1 low/mixed, 2 stand-replacing)

Severity tiers on CBI_bc:
    unburned       0    <= v < 0.1
    low / moderate 0.1  <= v < 2.25
    high           2.25 <= v
    any burned     0.1  <= v

Good fire is low/moderate severity in the low/mixed regime; an alternate
convention also counts high severity in the stand-replacing regime. Bad fire
is the off-target pair: high severity in the low/mixed regime, low/moderate
severity in the stand-replacing regime.

Layers are pixel area in m² (area_weighted=True) or 1, masked where the
condition is false, so a zonal sum gives area directly.
==============================================================================
"""
import logging
import os
from collections import OrderedDict

import matplotlib.pyplot as plt
import numpy as np

from goodfire.config import EXPORT_CRS, HIGH_SEVERITY_MIN, SCALE, UNBURNED_MAX
from goodfire.errors import GoodFireError
from goodfire.landcover.landcover_utils import fire_regime_masks
from goodfire.raster.raster_utils import (
    RasterImage, pixel_area, reproject_image, warp_grid, write_geotiff,
)

logger = logging.getLogger(__name__)

LAYER_NAMES = [
    "lower_good_fire",
    "high_good_fire",
    "lower_regime_cbi_high",
    "replace_regime_cbi_low",
    "lower_regime_cbi_unburned",
    "replace_regime_cbi_unburned",
    "cbi_lower",
    "cbi_high",
    "cbi_unburned",
    "cbi_any_burned",
    "year_prior_forest",
    "total_area",
]

GOOD_FIRE_LOW_CONVENTION = ("lower_good_fire",)
GOOD_FIRE_BOTH_CONVENTION = ("lower_good_fire", "high_good_fire")
BAD_FIRE_LAYERS = ("lower_regime_cbi_high", "replace_regime_cbi_low")

# Flattened categorical codes
FLAT_NODATA = 0
FLAT_LOW_GOOD = 1
FLAT_HIGH_GOOD = 2
FLAT_BAD = 3

# 3-class severity reclass
SEV_UNBURNED = 1
SEV_LOW_MOD = 2
SEV_HIGH = 3


def severity_tiers(cbi):
    """
    Boolean tier arrays for a (masked) CBI_bc array.

    Returns
    -------
    dict with keys 'unburned', 'lower', 'high', 'any_burned'; masked pixels are False.
    """
    cbi = np.ma.asarray(cbi, dtype="float64")
    valid = ~np.ma.getmaskarray(cbi)
    v = np.ma.filled(cbi, np.nan)
    with np.errstate(invalid="ignore"):
        return {
            "unburned": valid & (v >= 0) & (v < UNBURNED_MAX),
            "lower": valid & (v >= UNBURNED_MAX) & (v < HIGH_SEVERITY_MIN),
            "high": valid & (v >= HIGH_SEVERITY_MIN),
            "any_burned": valid & (v >= UNBURNED_MAX),
        }


def classify_year(year, severity, masks, area_weighted=True, band="cbi_bc"):
    """
    Classification layers for one fire year.

    Parameters
    ----------
    year : int
        Fire year Y.
    severity : RasterImage
        Severity surface for Y with band `band`.
    masks : MaskContext
        Forest for Y-1 is required; a missing year raises MissingYearError.
    area_weighted : bool
        Pixel area (m²) when True, 1 otherwise.

    Returns
    -------
    RasterImage with LAYER_NAMES bands and properties {'year': year}.
    """
    forest = masks.forest_for(year - 1)
    cbi = severity.band(band)
    cbi_forest = np.ma.array(cbi.data, mask=np.ma.getmaskarray(cbi) | ~forest)

    tiers = severity_tiers(cbi_forest)
    regime = fire_regime_masks(masks.fire_regime)
    lower, replace = regime["lower"], regime["replace"]

    conditions = OrderedDict([
        ("lower_good_fire", tiers["lower"] & lower),
        ("high_good_fire", tiers["high"] & replace),
        ("lower_regime_cbi_high", tiers["high"] & lower),
        ("replace_regime_cbi_low", tiers["lower"] & replace),
        ("lower_regime_cbi_unburned", tiers["unburned"] & lower),
        ("replace_regime_cbi_unburned", tiers["unburned"] & replace),
        ("cbi_lower", tiers["lower"]),
        ("cbi_high", tiers["high"]),
        ("cbi_unburned", tiers["unburned"]),
        ("cbi_any_burned", tiers["any_burned"]),
        ("year_prior_forest", np.asarray(forest, dtype=bool)),
        ("total_area", np.ones(tuple(severity.grid.shape), dtype=bool)),
    ])

    weight = pixel_area(severity.grid) if area_weighted else np.ones(tuple(severity.grid.shape))
    layers = OrderedDict(
        (name, np.ma.array(weight, mask=~cond)) for name, cond in conditions.items()
    )
    return RasterImage(layers, severity.grid, {"year": year})


def classify_years(severities, masks, area_weighted=True, band="cbi_bc"):
    """
    Classify every year; a failing year is reported and the rest continue.

    Returns
    -------
    (OrderedDict {year: RasterImage}, list of {'year', 'error'})
    """
    layers, failures = OrderedDict(), []
    for year in sorted(severities):
        try:
            layers[year] = classify_year(year, severities[year], masks, area_weighted, band)
        except GoodFireError as exc:
            logger.warning("Classification failed for %d: %s", year, exc)
            failures.append({"year": year, "error": str(exc)})
    return layers, failures


# ==========================================================
# Flattened categorical raster
# ==========================================================
def flatten_year(layers):
    """0 / 1 low good fire / 2 high good fire / 3 bad fire for one year of layers."""
    shape = tuple(layers.grid.shape)
    flat = np.zeros(shape, dtype="uint8")

    def present(name):
        return ~np.ma.getmaskarray(layers.band(name))

    flat[present("lower_good_fire")] = FLAT_LOW_GOOD
    flat[present("high_good_fire")] = FLAT_HIGH_GOOD
    bad = np.zeros(shape, dtype=bool)
    for name in BAD_FIRE_LAYERS:
        bad |= present(name)
    flat[bad] = FLAT_BAD
    return flat


def flatten_good_fire(layers_by_year):
    """Per-pixel maximum of the yearly flattened codes (uint8, 0 = background)."""
    if not layers_by_year:
        raise ValueError("No classification layers to flatten")
    flats = [flatten_year(layers) for layers in layers_by_year.values()]
    return np.maximum.reduce(flats).astype("uint8")


def severity_reclass(severities, band="cbi_bc"):
    """
    1 unburned / 2 low-moderate / 3 high of the per-pixel maximum severity across
    years; 0 where no year has a value or the maximum is exactly 0.
    """
    if not severities:
        raise ValueError("No severity images to reclassify")
    stack = np.ma.stack([np.ma.asarray(s.band(band), dtype="float64") for s in severities.values()])
    peak = stack.max(axis=0)
    # self-mask: a zero maximum is background
    tiers = severity_tiers(np.ma.masked_equal(peak, 0.0))
    out = np.zeros(stack.shape[1:], dtype="uint8")
    out[tiers["unburned"]] = SEV_UNBURNED
    out[tiers["lower"]] = SEV_LOW_MOD
    out[tiers["high"]] = SEV_HIGH
    return out


def export_flattened_raster(flat, grid, out_path, aoi=None, crs=EXPORT_CRS, resolution=SCALE):
    """
    Write the flattened raster as single-band uint8, nodata 0, in `crs` at `resolution`.

    Parameters
    ----------
    flat : np.ndarray
        Output of flatten_good_fire().
    grid : GridSpec
        Grid of `flat`.
    out_path : str
    aoi : shapely geometry, optional
        Visualization area in grid CRS; pixels outside are set to 0 and the
        output is cropped to its bounds.
    """
    image = RasterImage({"good_fire": np.ma.masked_equal(flat, FLAT_NODATA)}, grid)
    bounds = None
    if aoi is not None:
        image = image.clip(aoi)
        bounds = aoi.bounds

    target = warp_grid(grid, crs, resolution, bounds=bounds)
    warped = reproject_image(image, target)
    os.makedirs(os.path.dirname(os.path.abspath(out_path)), exist_ok=True)
    return write_geotiff(warped, out_path, dtype="uint8", nodata=FLAT_NODATA)


def plot_layer(arr, title=None, cmap="viridis", out_path=None):
    """Quick-look plot of a classification or flattened array."""
    fig, ax = plt.subplots(figsize=(8, 8))
    im = ax.imshow(np.ma.masked_equal(np.ma.filled(np.ma.asarray(arr), 0), 0), cmap=cmap)
    fig.colorbar(im, ax=ax, shrink=0.7)
    ax.set_title(title or "")
    ax.set_axis_off()
    if out_path:
        fig.savefig(out_path, dpi=300, bbox_inches="tight")
        logger.info("Saved plot → %s", out_path)
    plt.close(fig)
    return fig
