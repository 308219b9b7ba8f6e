"""Estimate and apply the linear channel-to-energy calibration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.optimize import curve_fit

from spectrum.errors import FitNonConvergence
from spectrum.histogram import Histogram

logger = logging.getLogger(__name__)


def linear_model(channel: NDArray[np.float64], slope: float, intercept: float) -> NDArray[np.float64]:
    """E = slope * channel + intercept."""
    return slope * channel + intercept


@dataclass(frozen=True)
class LinearCalibration:
    """Store calibration coefficients and map between channel and energy."""

    slope: float
    intercept: float

    def channel_to_energy(self, channels: ArrayLike) -> NDArray[np.float64] | float:
        """Convert channel positions to energy (keV)."""
        result = linear_model(np.asarray(channels, dtype=float), self.slope, self.intercept)
        return float(result) if np.ndim(result) == 0 else result

    def energy_to_channel(self, energies: ArrayLike) -> NDArray[np.float64] | float:
        """Convert energy values back to channel positions."""
        if self.slope == 0.0:
            raise ValueError("Calibration with zero slope cannot be inverted")
        result = (np.asarray(energies, dtype=float) - self.intercept) / self.slope
        return float(result) if np.ndim(result) == 0 else result

    def area_to_channel_units(self, area_keV: float) -> float:
        """Convert an integral taken on the energy axis to one on the channel axis."""
        if self.slope == 0.0:
            raise ValueError("Calibration with zero slope cannot be inverted")
        return float(area_keV) / self.slope

    def apply(self, histogram: Histogram) -> Histogram:
        """Return the histogram with its axis rescaled to energy."""
        return histogram.rescaled(self.channel_to_energy)


def fit_linear_calibration(channels: Sequence[float], energies: Sequence[float]) -> LinearCalibration:
    """
    Fit E = m * channel + b over the matched peaks, with m constrained non-negative.

    Args:
        channels: Peak positions in channels.
        energies: Literature energies (keV) matched to those positions.

    Returns:
        LinearCalibration: Fitted calibration.
    """
    ch = np.asarray(channels, dtype=float)
    en = np.asarray(energies, dtype=float)
    if ch.shape != en.shape:
        raise ValueError("channels and energies must have the same length")
    if np.unique(ch).size < 2:
        raise ValueError("At least two distinct channels are needed for a linear calibration.")
    # Only the matched peaks enter the fit, never the rest of the spectrum.
    seed_slope, seed_intercept = np.polyfit(ch, en, 1)
    p0 = [max(float(seed_slope), 0.0), float(seed_intercept)]
    try:
        popt, _ = curve_fit(
            linear_model,
            ch,
            en,
            p0=p0,
            bounds=([0.0, -np.inf], [np.inf, np.inf]),
        )
    except (RuntimeError, ValueError) as exc:
        raise FitNonConvergence(f"Energy calibration fit failed: {exc}") from exc
    calibration = LinearCalibration(slope=float(popt[0]), intercept=float(popt[1]))
    logger.info("E (keV) = %f * ch + %f", calibration.slope, calibration.intercept)
    return calibration
