"""Linear energy calibration fit and conversions."""

import numpy as np
import pytest

from spectrum.calibration import LinearCalibration, fit_linear_calibration
from spectrum.histogram import Histogram


def test_round_trip():
    cal = LinearCalibration(slope=0.37, intercept=-1.2)
    channels = np.array([10.0, 250.5, 4000.0])
    assert np.allclose(cal.energy_to_channel(cal.channel_to_energy(channels)), channels)
    assert isinstance(cal.channel_to_energy(10.0), float)


def test_fit_recovers_line():
    channels = [2346.0, 2665.0, 2921.6]
    energies = [0.5 * c + 0.2 for c in channels]
    cal = fit_linear_calibration(channels, energies)
    assert cal.slope == pytest.approx(0.5, rel=1e-6)
    assert cal.intercept == pytest.approx(0.2, abs=1e-4)


def test_slope_is_non_negative():
    """エネルギーがチャンネルと逆順でも傾きは負にならない。"""
    cal = fit_linear_calibration([100.0, 200.0, 300.0], [300.0, 200.0, 100.0])
    assert cal.slope >= 0.0


def test_needs_two_distinct_channels():
    with pytest.raises(ValueError):
        fit_linear_calibration([100.0, 100.0], [1173.2, 1332.5])
    with pytest.raises(ValueError):
        fit_linear_calibration([100.0, 200.0], [1173.2])


def test_apply_rescales_axis():
    cal = LinearCalibration(slope=2.0, intercept=1.0)
    calibrated = cal.apply(Histogram(counts=np.zeros(100)))
    assert calibrated.axis_range == pytest.approx((1.0, 201.0))


def test_area_to_channel_units():
    cal = LinearCalibration(slope=0.5, intercept=3.0)
    assert cal.area_to_channel_units(10.0) == pytest.approx(20.0)
    with pytest.raises(ValueError):
        LinearCalibration(slope=0.0, intercept=0.0).energy_to_channel(1.0)
