"""
==============================================================================
SPECTRAL INDEX BUILDER — Landsat Collection 2 Level-2
==============================================================================

Turns one Landsat surface-reflectance scene into the five indices used by the
severity model, with cloud / shadow / snow / water pixels masked:

    nbr   = (NIR - SWIR2) / (NIR + SWIR2)
    ndvi  = (NIR - Red)   / (NIR + Red)
    ndmi  = (NIR - SWIR1) / (NIR + SWIR1)
    evi   = 2.5 * (NIR - Red) / (NIR + 6 Red - 7.5 Blue + 1)
    mirbi = 10 SWIR1 - 9.8 SWIR2 + 2

OLI (Landsat 8/9) and TM/ETM+ (Landsat 4/5/7) number their bands differently;
SENSOR_BANDS maps each family to its band roles.

Reference: Parks et al. (2019), Remote Sensing 11, GEE CBI script.
==============================================================================
"""
import logging
from collections import OrderedDict

import numpy as np

from goodfire.raster.raster_utils import ImageCollection, RasterImage

logger = logging.getLogger(__name__)

# Collection 2 surface reflectance rescale
OPTICAL_SCALE = 0.0000275
OPTICAL_OFFSET = -0.2

QA_BAND = "QA_PIXEL"
INDEX_BANDS = ["nbr", "ndvi", "ndmi", "evi", "mirbi"]

# QA_PIXEL bits 3, 4, 5, 7: cloud, cloud shadow, snow, water
CLOUD_BIT = 3
CLOUD_SHADOW_BIT = 4
SNOW_BIT = 5
WATER_BIT = 7
QA_REJECT_BITS = (1 << CLOUD_BIT) | (1 << CLOUD_SHADOW_BIT) | (1 << SNOW_BIT) | (1 << WATER_BIT)

OLI_BANDS = {"blue": "SR_B2", "red": "SR_B4", "nir": "SR_B5", "swir1": "SR_B6", "swir2": "SR_B7"}
TM_ETM_BANDS = {"blue": "SR_B1", "red": "SR_B3", "nir": "SR_B4", "swir1": "SR_B5", "swir2": "SR_B7"}

SENSOR_BANDS = {
    "LC09": OLI_BANDS,
    "LC08": OLI_BANDS,
    "LE07": TM_ETM_BANDS,
    "LT05": TM_ETM_BANDS,
    "LT04": TM_ETM_BANDS,
}
# SPACECRAFT_ID values found in scene metadata
SPACECRAFT_ALIASES = {
    "LANDSAT_9": "LC09",
    "LANDSAT_8": "LC08",
    "LANDSAT_7": "LE07",
    "LANDSAT_5": "LT05",
    "LANDSAT_4": "LT04",
}


def sensor_band_roles(sensor):
    """Return the {role: band name} mapping for a sensor id or spacecraft id."""
    key = str(sensor).upper()
    key = SPACECRAFT_ALIASES.get(key, key)
    if key not in SENSOR_BANDS:
        raise ValueError(f"Unknown Landsat sensor '{sensor}'. Expected one of {sorted(SENSOR_BANDS)}")
    return SENSOR_BANDS[key]


def apply_scale_factors(image):
    """Rescale SR_B* digital numbers to reflectance; other bands pass through."""
    bands = OrderedDict()
    for name, arr in image.bands.items():
        if name.startswith("SR_B"):
            bands[name] = arr.astype("float64") * OPTICAL_SCALE + OPTICAL_OFFSET
        else:
            bands[name] = arr
    return RasterImage(bands, image.grid, image.properties)


def normalized_difference(a, b):
    """(a - b) / (a + b); a zero denominator masks the pixel."""
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.ma.masked_invalid((a - b) / (a + b))


def compute_indices(image):
    """
    Compute the 6-band index image {nbr, ndvi, ndmi, evi, mirbi, QA_PIXEL}.

    Expects reflectance (see apply_scale_factors). The sensor family is read from
    ``image.properties['sensor']``. Properties, including time_start, are kept.
    """
    roles = sensor_band_roles(image.properties.get("sensor"))
    blue = image.band(roles["blue"])
    red = image.band(roles["red"])
    nir = image.band(roles["nir"])
    swir1 = image.band(roles["swir1"])
    swir2 = image.band(roles["swir2"])

    with np.errstate(divide="ignore", invalid="ignore"):
        evi = np.ma.masked_invalid(2.5 * ((nir - red) / (nir + 6 * red - 7.5 * blue + 1)))

    bands = OrderedDict([
        ("nbr", normalized_difference(nir, swir2)),
        ("ndvi", normalized_difference(nir, red)),
        ("ndmi", normalized_difference(nir, swir1)),
        ("evi", evi),
        ("mirbi", (10 * swir1) - (9.8 * swir2) + 2),
        (QA_BAND, image.band(QA_BAND)),
    ])
    return RasterImage(bands, image.grid, image.properties)


def clear_pixels(qa):
    """True where none of the cloud / shadow / snow / water bits is set and QA is valid."""
    qa = np.ma.asarray(qa)
    bits = np.ma.filled(qa, 0).astype(np.int64)
    return ((bits & QA_REJECT_BITS) == 0) & ~np.ma.getmaskarray(qa)


def mask_clouds(image):
    """Mask flagged pixels in every index band and drop the QA band."""
    clear = clear_pixels(image.band(QA_BAND))
    return image.select(INDEX_BANDS).update_mask(clear)


def build_indices(image):
    """Scale → indices → QA mask for one scene. Pure; keeps properties."""
    return mask_clouds(compute_indices(apply_scale_factors(image)))


def prepare_landsat_collection(collections):
    """
    Build the merged index collection from per-sensor scene collections.

    Parameters
    ----------
    collections : mapping of sensor id -> ImageCollection
        e.g. {"LC08": ..., "LT05": ...}. Scenes without a 'sensor' property get
        the mapping key.

    Returns
    -------
    ImageCollection of 5-band masked index images.
    """
    merged = ImageCollection()
    for sensor, collection in collections.items():
        scenes = collection.map(
            lambda im, s=sensor: im if im.properties.get("sensor") else im.set(sensor=s))
        indexed = scenes.map(build_indices)
        logger.info("Indexed %d %s scenes", indexed.size(), sensor)
        merged = merged.merge(indexed)
    return merged
