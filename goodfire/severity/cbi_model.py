"""
==============================================================================
CBI RANDOM FOREST — INFERENCE AND BIAS CORRECTION
==============================================================================

Estimates the Composite Burn Index (CBI, ~0–3) per pixel from six features,
in this exact order:

    def, lat, rbr, dmirbi, dndvi, post_mirbi

The model is trained outside the pipeline (Parks et al. 2019 plot data). The
helpers here reproduce the published set-up for convenience:
    500 trees, min leaf population = round(n_rows / 75 / 6), seed 123.

Bias correction (Parks et al. 2019): the model overestimates at low CBI and
underestimates at high CBI, so predictions are stretched around 1.5 with two
slopes, clamped to [0, 3] and truncated to two decimals.
==============================================================================
"""
import logging
import os
from collections import OrderedDict

import joblib
import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestRegressor

from goodfire.config import PREDICT_CHUNK_SIZE, RF_N_ESTIMATORS, RF_SEED
from goodfire.raster.raster_utils import RasterImage, pixel_latitude

logger = logging.getLogger(__name__)

RF_BANDS = ["def", "lat", "rbr", "dmirbi", "dndvi", "post_mirbi"]
TARGET = "CBI"

LEAF_ROWS_DIVISOR = 75
LEAF_FOLDS = 6

BIAS_PIVOT = 1.5
BIAS_SLOPE_LOW = 1.3
BIAS_SLOPE_HIGH = 1.175
CBI_MIN = 0.0
CBI_MAX = 3.0


# ==========================================================
# 1. Numeric helpers
# ==========================================================
def round_half_away(values):
    """Round to the nearest integer, halves away from zero."""
    values = np.asarray(values, dtype="float64")
    return np.sign(values) * np.floor(np.abs(values) + 0.5)


def truncate_2dp(values):
    """
    floor(v * 100) / 100, keeping masks.

    v * 100 is rounded to 9 decimals before the floor so 0.29 * 100 =
    28.999999999999996 still truncates to 0.29.
    """
    values = np.ma.asarray(values, dtype="float64")
    return np.ma.floor(np.ma.round(values * 100, 9)) / 100


def bias_correct(values):
    """
    Two-piece linear bias correction of CBI, clamped to [0, 3] and truncated
    to two decimals. Works on scalars, arrays and masked arrays.
    """
    values = np.ma.asarray(values, dtype="float64")
    low = (values - BIAS_PIVOT) * BIAS_SLOPE_LOW + BIAS_PIVOT
    high = (values - BIAS_PIVOT) * BIAS_SLOPE_HIGH + BIAS_PIVOT
    corrected = np.ma.where(values <= BIAS_PIVOT, low, high)
    return truncate_2dp(np.ma.clip(corrected, CBI_MIN, CBI_MAX))


def min_leaf_population(n_rows):
    """round(n_rows / 75 / 6), at least 1."""
    return max(1, int(round_half_away(n_rows / LEAF_ROWS_DIVISOR / LEAF_FOLDS)))


# ==========================================================
# 2. Model set-up (external to the core pipeline)
# ==========================================================
def fit_cbi_model(training, target=TARGET, seed=RF_SEED, n_jobs=None):
    """
    Fit the CBI regression forest on plot data.

    Parameters
    ----------
    training : pd.DataFrame
        Must contain RF_BANDS and the target column.
    target : str
    seed : int
    n_jobs : int, optional
        Passed to RandomForestRegressor.

    Returns
    -------
    RandomForestRegressor
    """
    missing = [c for c in RF_BANDS + [target] if c not in training.columns]
    if missing:
        raise ValueError(f"Training data is missing columns: {missing}")

    df = training[RF_BANDS + [target]].dropna()
    model = RandomForestRegressor(
        n_estimators=RF_N_ESTIMATORS,
        min_samples_leaf=min_leaf_population(len(df)),
        random_state=seed,
        n_jobs=n_jobs,
    )
    model.fit(df[RF_BANDS], df[target])
    logger.info("Fitted CBI forest on %d plots (min leaf %d)", len(df), model.min_samples_leaf)
    return model


def save_cbi_model(model, path):
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    joblib.dump(model, path)
    logger.info("Saved CBI model → %s", path)
    return path


def load_cbi_model(path):
    if not os.path.exists(path):
        raise FileNotFoundError(f"CBI model not found: {path}")
    return joblib.load(path)


# ==========================================================
# 3. Per-pixel inference
# ==========================================================
def add_model_covariates(metrics, deficit):
    """
    Add the climatic water deficit ('def', truncated to int) and the rounded
    pixel latitude ('lat') to a burn-metric image.
    """
    if isinstance(deficit, RasterImage):
        deficit = deficit.band(deficit.band_names[0])
    deficit = np.ma.asarray(deficit, dtype="float64")
    def_int = np.ma.array(np.trunc(np.ma.filled(deficit, 0.0)).astype(np.int32),
                          mask=np.ma.getmaskarray(deficit))
    lat = round_half_away(pixel_latitude(metrics.grid)).astype(np.int32)
    return metrics.add_bands({"def": def_int, "lat": lat}, overwrite=True)


def predict_cbi(features, model, chunk_size=PREDICT_CHUNK_SIZE):
    """
    Run `model.predict` on every pixel where all RF_BANDS are valid.

    Parameters
    ----------
    features : RasterImage
        Must contain RF_BANDS.
    model : object with predict(DataFrame) -> array
    chunk_size : int
        Pixels per predict call, bounding memory.

    Returns
    -------
    np.ma.MaskedArray
        CBI truncated to two decimals; masked where any feature is masked.
    """
    shape = tuple(features.grid.shape)
    valid = np.ones(shape, dtype=bool)
    for name in RF_BANDS:
        valid &= ~np.ma.getmaskarray(features.band(name))

    out = np.zeros(shape, dtype="float64")
    idx = np.flatnonzero(valid)
    if idx.size:
        columns = {name: features.band(name).data.ravel()[idx].astype("float64") for name in RF_BANDS}
        X = pd.DataFrame(columns, columns=RF_BANDS)
        preds = np.empty(idx.size, dtype="float64")
        for start in range(0, idx.size, chunk_size):
            stop = start + chunk_size
            preds[start:stop] = np.asarray(model.predict(X.iloc[start:stop]), dtype="float64")
        out.ravel()[idx] = preds
    logger.info("Predicted CBI for %d of %d pixels", idx.size, valid.size)
    return truncate_2dp(np.ma.array(out, mask=~valid))


def estimate_severity(metrics, model, deficit, chunk_size=PREDICT_CHUNK_SIZE):
    """
    Burn metrics → CBI → CBI_bc.

    Returns
    -------
    RasterImage with bands 'cbi_bc', 'cbi' followed by the metric and covariate bands.
    """
    features = add_model_covariates(metrics, deficit)
    cbi = predict_cbi(features, model, chunk_size=chunk_size)
    bands = OrderedDict([("cbi_bc", bias_correct(cbi)), ("cbi", cbi)])
    bands.update(features.bands)
    return RasterImage(bands, metrics.grid, metrics.properties)
