"""ガウス+erfcステップによるピークフィットを検証するテスト。"""

import math

import numpy as np
import pytest

from spectrum.calibration import LinearCalibration
from spectrum.errors import FitNonConvergence
from spectrum.histogram import Histogram
from spectrum.peak_fit import (
    SIGMA_SEED_CHANNELS,
    BackgroundSeed,
    default_background_seed,
    fit_peak,
    gaussian_step,
    peak_area,
    step_background,
)

TRUE_PARAMS = (2000.0, 100.3, 2.0, 50.0, 3.0, 20.0)


def _peak_histogram() -> Histogram:
    centers = np.arange(200) + 0.5
    return Histogram(counts=gaussian_step(centers, *TRUE_PARAMS))


def test_gaussian_step_is_peak_plus_background():
    x = np.linspace(90.0, 110.0, 21)
    height, center, sigma, shift, h, v = TRUE_PARAMS
    peak = height * np.exp(-0.5 * ((x - center) / sigma) ** 2)
    assert np.allclose(gaussian_step(x, *TRUE_PARAMS), peak + step_background(x, center, shift, h, v))


def test_fit_recovers_center_and_area():
    """ノイズなしの合成ピークから中心と面積を1%以内で復元する。"""
    hist = _peak_histogram()
    cal = LinearCalibration(slope=0.5, intercept=1.0)
    fit = fit_peak(hist, cal, approx_channel=100.5, approx_height=hist.content_at(100.5))
    assert fit.area_ok
    assert fit.channel == pytest.approx(100.3, abs=0.01)
    assert fit.energy_keV == pytest.approx(0.5 * fit.channel + 1.0)
    expected_area = 2000.0 * 2.0 * math.sqrt(2.0 * math.pi)
    assert fit.area == pytest.approx(expected_area, rel=0.01)
    assert fit.area_uncertainty == pytest.approx(math.sqrt(fit.area))
    assert fit.window == (86.5, 114.5)


def test_background_seed_from_fit():
    hist = _peak_histogram()
    fit = fit_peak(hist, LinearCalibration(1.0, 0.0), 100.5, hist.content_at(100.5))
    seed = fit.background_seed()
    assert seed == BackgroundSeed(*fit.parameters[3:])
    refit = fit_peak(hist, LinearCalibration(1.0, 0.0), 100.5, hist.content_at(100.5), seed=seed)
    assert refit.area == pytest.approx(fit.area, rel=1e-3)


def test_peak_area_subtracts_background():
    params = (100.0, 50.0, 2.0, 5.0, 1.0, 3.0)
    assert peak_area(params, 0.0, 100.0) == pytest.approx(100.0 * 2.0 * math.sqrt(2.0 * math.pi), rel=1e-6)
    assert peak_area(params, 0.0, 100.0, bin_width=2.0) == pytest.approx(
        0.5 * peak_area(params, 0.0, 100.0), rel=1e-9
    )


def test_too_few_bins_raises():
    hist = Histogram(counts=np.array([1.0, 5.0, 20.0, 5.0, 1.0]))
    with pytest.raises(FitNonConvergence):
        fit_peak(hist, LinearCalibration(1.0, 0.0), 2.5, 20.0)


def test_default_background_seed():
    """最初のピークは窓内の最小計数を平坦成分とし、ステップなしで始める。"""
    seed = default_background_seed(np.array([12.0, 7.0, 300.0, 9.0]))
    assert seed == BackgroundSeed(shift=7.0, horizontal_stretch=SIGMA_SEED_CHANNELS, vertical_stretch=0.0)
