import numpy as np
import pytest

from goodfire.severity.burn_metrics import (
    BURN_BANDS, RdnbrStrategy, compute_burn_metrics, rdnbr_denominator, truncate_to_int,
)


def test_dnbr_is_exactly_350(composite_image):
    metrics = compute_burn_metrics(composite_image(pre={"nbr": 0.45}, post={"nbr": 0.10}))
    assert metrics.band("dnbr").dtype == np.int32
    assert np.all(metrics.band("dnbr") == 350)


def test_rbr_and_rdnbr(composite_image):
    composite = composite_image(pre={"nbr": 0.45}, post={"nbr": 0.10})
    metrics = compute_burn_metrics(composite)
    assert metrics.band("rbr")[0, 0] == 241          # 350 / 1.451
    assert metrics.band("rdnbr")[0, 0] == 521        # 350 / sqrt(0.45)

    flat = compute_burn_metrics(composite, RdnbrStrategy.FLAT_OFFSET)
    assert flat.band("rdnbr")[0, 0] == 241


def test_truncation_is_toward_zero():
    out = truncate_to_int(np.array([-350.5, 349.9, 0.999999]))
    assert out.tolist() == [-350, 349, 0]


def test_rdnbr_denominator_is_floored(composite_image):
    metrics = compute_burn_metrics(composite_image(pre={"nbr": 0.0}, post={"nbr": -0.1}))
    assert metrics.band("dnbr")[0, 0] == 100
    assert metrics.band("rdnbr")[0, 0] == 3162       # 100 / sqrt(0.001)
    assert not np.ma.getmaskarray(metrics.band("rdnbr")).any()
    assert rdnbr_denominator(np.ma.array([0.0]))[0] == pytest.approx(np.sqrt(0.001))


def test_masked_input_propagates(composite_image):
    composite = composite_image(pre={"nbr": 0.45}, post={"nbr": 0.10})
    composite.band("pre_nbr")[0, 0] = np.ma.masked
    composite.band("post_ndvi")[3, 3] = np.ma.masked
    metrics = compute_burn_metrics(composite)

    for name in ("dnbr", "rbr", "rdnbr"):
        assert np.ma.getmaskarray(metrics.band(name))[0, 0]
        assert not np.ma.getmaskarray(metrics.band(name))[3, 3]
    assert np.ma.getmaskarray(metrics.band("dndvi"))[3, 3]
    assert not np.ma.getmaskarray(metrics.band("dndvi"))[0, 0]


def test_difference_bands_and_post_mirbi(composite_image):
    metrics = compute_burn_metrics(composite_image(
        pre={"ndvi": 0.7, "evi": 0.5, "ndmi": 0.3, "mirbi": 1.5},
        post={"ndvi": 0.2, "evi": 0.25, "ndmi": -0.1, "mirbi": 1.2345},
    ))
    assert metrics.band_names[:len(BURN_BANDS)] == BURN_BANDS
    assert metrics.band("dndvi")[0, 0] == 500
    assert metrics.band("devi")[0, 0] == 250
    assert metrics.band("dndmi")[0, 0] == 400
    assert metrics.band("dmirbi")[0, 0] == 265
    assert metrics.band("post_mirbi")[0, 0] == 1234
    assert "pre_nbr" in metrics


def test_deterministic(composite_image):
    a = compute_burn_metrics(composite_image(pre={"nbr": 0.6}, post={"nbr": 0.05}))
    b = compute_burn_metrics(composite_image(pre={"nbr": 0.6}, post={"nbr": 0.05}))
    for name in BURN_BANDS:
        np.testing.assert_array_equal(a.band(name), b.band(name))
