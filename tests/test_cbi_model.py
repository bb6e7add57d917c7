import numpy as np
import pandas as pd
import pytest

from goodfire.raster.raster_utils import RasterImage
from goodfire.severity.burn_metrics import compute_burn_metrics
from goodfire.severity.cbi_model import (
    RF_BANDS, add_model_covariates, bias_correct, estimate_severity, fit_cbi_model,
    load_cbi_model, min_leaf_population, predict_cbi, round_half_away, save_cbi_model,
    truncate_2dp,
)


# ============================================================================
# Bias correction
# ============================================================================

class TestBiasCorrection:

    @pytest.mark.parametrize("value,expected", [
        (1.5, 1.5),     # pivot is a fixed point
        (1.0, 0.85),    # (1.0 - 1.5) * 1.3 + 1.5
        (2.0, 2.08),    # (2.0 - 1.5) * 1.175 + 1.5 = 2.0875, truncated
        (0.0, 0.0),     # clamped
        (3.0, 3.0),     # 3.2625 clamped
    ])
    def test_known_values(self, value, expected):
        assert float(bias_correct(value)) == pytest.approx(expected)

    def test_output_always_in_range(self):
        out = bias_correct(np.linspace(-1.0, 4.0, 501))
        assert out.min() >= 0.0
        assert out.max() <= 3.0

    def test_bounds_reached_only_by_clamping(self):
        inner = bias_correct(np.linspace(0.4, 2.7, 231))
        assert (inner > 0.0).all()
        assert (inner < 3.0).all()

    def test_masked_pixels_stay_masked(self):
        out = bias_correct(np.ma.array([1.0, 2.0], mask=[False, True]))
        assert out.mask.tolist() == [False, True]


def test_truncate_2dp():
    assert float(truncate_2dp(0.29)) == pytest.approx(0.29)
    assert float(truncate_2dp(0.299)) == pytest.approx(0.29)
    assert float(truncate_2dp(2.0875)) == pytest.approx(2.08)


def test_round_half_away():
    assert round_half_away([0.5, 1.5, -0.5, 2.4]).tolist() == [1.0, 2.0, -1.0, 2.0]


@pytest.mark.parametrize("n_rows,expected", [(900, 2), (675, 2), (100, 1), (0, 1)])
def test_min_leaf_population(n_rows, expected):
    assert min_leaf_population(n_rows) == expected


# ============================================================================
# Inference
# ============================================================================

def _features(grid, rbr=241.0):
    bands = {name: np.ma.array(np.full(grid.shape, 10.0)) for name in RF_BANDS}
    bands["rbr"] = np.ma.array(np.full(grid.shape, rbr))
    return RasterImage(bands, grid)


def test_predict_only_on_valid_pixels(grid, stub_model):
    features = _features(grid)
    features.band("dndvi")[0, 0] = np.ma.masked
    cbi = predict_cbi(features, stub_model, chunk_size=5)

    assert np.ma.getmaskarray(cbi)[0, 0]
    assert np.ma.getmaskarray(cbi).sum() == 1
    assert cbi[1, 1] == pytest.approx(1.2)           # 241 / 200 = 1.205 -> 1.20
    assert len(stub_model.calls) == 3                 # 15 valid pixels in chunks of 5
    assert all(cols == RF_BANDS for cols in stub_model.calls)


def test_covariates_def_and_lat(grid):
    metrics = RasterImage({"rbr": np.zeros(grid.shape)}, grid)
    deficit = RasterImage({"def": np.full(grid.shape, 123.9)}, grid)
    out = add_model_covariates(metrics, deficit)
    assert np.all(out.band("def") == 123)
    # CONUS Albers origin sits at 23 N
    assert np.all(out.band("lat") == 23)


def test_estimate_severity_bands(grid, stub_model, composite_image):
    metrics = compute_burn_metrics(composite_image(pre={"nbr": 0.45}, post={"nbr": 0.10}))
    deficit = RasterImage({"def": np.full(grid.shape, 400.0)}, grid)
    severity = estimate_severity(metrics, stub_model, deficit)
    assert severity.band_names[:2] == ["cbi_bc", "cbi"]
    assert severity.band("cbi")[0, 0] == pytest.approx(1.2)
    assert severity.band("cbi_bc")[0, 0] == pytest.approx(1.11)   # (1.2 - 1.5) * 1.3 + 1.5
    assert severity.properties["year"] == 2015


# ============================================================================
# Model set-up
# ============================================================================

def test_fit_save_load(tmp_path):
    rng = np.random.default_rng(0)
    training = pd.DataFrame(rng.uniform(0, 1, size=(40, len(RF_BANDS))), columns=RF_BANDS)
    training["CBI"] = training["rbr"] * 3

    model = fit_cbi_model(training, n_jobs=1)
    assert model.n_estimators == 500
    assert model.min_samples_leaf == 1
    assert model.random_state == 123

    path = save_cbi_model(model, str(tmp_path / "models" / "cbi.joblib"))
    loaded = load_cbi_model(path)
    np.testing.assert_allclose(loaded.predict(training[RF_BANDS]), model.predict(training[RF_BANDS]))


def test_fit_requires_feature_columns():
    with pytest.raises(ValueError):
        fit_cbi_model(pd.DataFrame({"rbr": [1.0], "CBI": [1.0]}))


def test_load_missing_model(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_cbi_model(str(tmp_path / "nope.joblib"))
