"""
Burn-severity metrics from paired pre/post-fire composites.

All differenced metrics are scaled by 1000 and truncated toward zero, in the
order the later metrics depend on:

    dnbr   = (pre_nbr - post_nbr) * 1000
    rbr    = dnbr / (pre_nbr + 1.001)
    rdnbr  = dnbr / denominator(pre_nbr)          see RdnbrStrategy
    dndvi, devi, dndmi, dmirbi = (pre - post) * 1000
    post_mirbi is rescaled x1000 to match the CBI plot extraction units
"""

from collections import OrderedDict
from enum import Enum

import numpy as np

from goodfire.raster.raster_utils import RasterImage

METRIC_SCALE = 1000
RBR_OFFSET = 1.001
RDNBR_FLOOR = 0.001

BURN_BANDS = ["dnbr", "rbr", "rdnbr", "dndvi", "devi", "dndmi", "dmirbi", "post_nbr", "post_mirbi"]


class RdnbrStrategy(str, Enum):
    """
    RdNBR denominator.

    FLOORED_SQRT : sqrt(max(|pre_nbr|, 0.001)); Parks et al. 2019 GEE script as
                   corrected in 2021 (NBR^0.5, not NBR^0.25).
    FLAT_OFFSET  : pre_nbr + 1.001, the RBR-style denominator used by an older
                   script in the corpus.
    """
    FLOORED_SQRT = "floored_sqrt"
    FLAT_OFFSET = "flat_offset"


def truncate_to_int(values):
    """
    Truncate toward zero to int32, keeping the mask.

    Values are rounded to 6 decimals first so representation error such as
    349.99999999999994 does not lose a unit.
    """
    values = np.ma.masked_invalid(np.ma.asarray(values, dtype="float64"))
    mask = np.ma.getmaskarray(values)
    data = np.trunc(np.round(np.ma.filled(values, 0.0), 6)).astype(np.int32)
    return np.ma.array(data, mask=mask)


def rdnbr_denominator(pre_nbr, strategy=RdnbrStrategy.FLOORED_SQRT):
    strategy = RdnbrStrategy(strategy)
    if strategy is RdnbrStrategy.FLOORED_SQRT:
        magnitude = np.ma.abs(pre_nbr)
        return np.ma.sqrt(np.ma.where(magnitude < RDNBR_FLOOR, RDNBR_FLOOR, magnitude))
    return pre_nbr + RBR_OFFSET


def scaled_difference(pre, post):
    return truncate_to_int((pre - post) * METRIC_SCALE)


def compute_burn_metrics(composite, rdnbr_strategy=RdnbrStrategy.FLOORED_SQRT):
    """
    Derive burn metrics from a fire_composites() image.

    Parameters
    ----------
    composite : RasterImage
        Bands pre_/post_ nbr, ndvi, ndmi, evi, mirbi.
    rdnbr_strategy : RdnbrStrategy or str

    Returns
    -------
    RasterImage
        BURN_BANDS followed by the pre_* inputs and the remaining post_* inputs.
        A pixel masked in an input is masked in every metric using that input.
    """
    pre_nbr = composite.band("pre_nbr")
    post_nbr = composite.band("post_nbr")

    dnbr = scaled_difference(pre_nbr, post_nbr)
    with np.errstate(divide="ignore", invalid="ignore"):
        rbr = truncate_to_int(dnbr / (pre_nbr + RBR_OFFSET))
        rdnbr = truncate_to_int(dnbr / rdnbr_denominator(pre_nbr, rdnbr_strategy))

    metrics = OrderedDict([
        ("dnbr", dnbr),
        ("rbr", rbr),
        ("rdnbr", rdnbr),
        ("dndvi", scaled_difference(composite.band("pre_ndvi"), composite.band("post_ndvi"))),
        ("devi", scaled_difference(composite.band("pre_evi"), composite.band("post_evi"))),
        ("dndmi", scaled_difference(composite.band("pre_ndmi"), composite.band("post_ndmi"))),
        ("dmirbi", scaled_difference(composite.band("pre_mirbi"), composite.band("post_mirbi"))),
        ("post_nbr", post_nbr),
        ("post_mirbi", truncate_to_int(composite.band("post_mirbi") * METRIC_SCALE)),
    ])
    for name, arr in composite.bands.items():
        if name not in metrics:
            metrics[name] = arr
    return RasterImage(metrics, composite.grid, composite.properties)
