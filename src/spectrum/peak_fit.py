"""Photopeak fitting with a Gaussian on top of an erfc-shaped Compton step."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from numpy.typing import NDArray
from scipy.integrate import quad
from scipy.optimize import curve_fit
from scipy.special import erfc

from spectrum.calibration import LinearCalibration
from spectrum.errors import FitNonConvergence
from spectrum.histogram import Histogram

logger = logging.getLogger(__name__)

# Fit window half-width around the approximate peak position (channels).
PEAK_FIT_HALF_WINDOW = 14.0
SIGMA_SEED_CHANNELS = 1.5
HEIGHT_LIMIT = 1.0e6
PARAMETER_NAMES = (
    "height",
    "center",
    "sigma",
    "background_shift",
    "background_horizontal_stretch",
    "background_vertical_stretch",
)


def step_background(
    x: NDArray[np.float64],
    center: float,
    shift: float,
    horizontal_stretch: float,
    vertical_stretch: float,
) -> NDArray[np.float64]:
    """Background under a photopeak: shift + vertical_stretch * erfc((x - center) / horizontal_stretch)."""
    return shift + vertical_stretch * erfc((x - center) / horizontal_stretch)


def gaussian_step(
    x: NDArray[np.float64],
    height: float,
    center: float,
    sigma: float,
    shift: float,
    horizontal_stretch: float,
    vertical_stretch: float,
) -> NDArray[np.float64]:
    """Return a Gaussian photopeak plus the step background (six parameters)."""
    peak = height * np.exp(-0.5 * ((x - center) / sigma) ** 2)
    return peak + step_background(x, center, shift, horizontal_stretch, vertical_stretch)


@dataclass(frozen=True)
class BackgroundSeed:
    """Background parameters carried from one peak fit to the next."""

    shift: float = 0.0
    horizontal_stretch: float = 1.0
    vertical_stretch: float = 0.0


@dataclass(frozen=True)
class PeakFit:
    """Result of a single photopeak fit."""

    channel: float
    energy_keV: float
    area: float
    area_uncertainty: float
    area_ok: bool
    parameters: Tuple[float, ...]
    window: Tuple[float, float]

    def background_seed(self) -> BackgroundSeed:
        """Return this fit's background parameters as the seed for the next peak."""
        _, _, _, shift, h_stretch, v_stretch = self.parameters
        return BackgroundSeed(shift=shift, horizontal_stretch=h_stretch, vertical_stretch=v_stretch)


@dataclass(frozen=True)
class FittedPeak:
    """An approved peak: fitted centroid energy and its (possibly manual) area."""

    energy_keV: float
    area: float
    area_uncertainty: float
    manual: bool = False
    match_index: int | None = None


def default_background_seed(counts: NDArray[np.float64]) -> BackgroundSeed:
    """Seed the first fit of a review: flat at the window minimum, no step."""
    return BackgroundSeed(shift=float(np.min(counts)), horizontal_stretch=SIGMA_SEED_CHANNELS, vertical_stretch=0.0)


def peak_area(parameters: Tuple[float, ...], low: float, high: float, bin_width: float = 1.0) -> float:
    """
    Integrate the fitted signal minus its background over [low, high].

    The result is divided by the bin width so that it counts events.
    """
    height, center, sigma, shift, h_stretch, v_stretch = parameters
    total, _ = quad(gaussian_step, low, high, args=tuple(parameters), limit=200)
    background, _ = quad(step_background, low, high, args=(center, shift, h_stretch, v_stretch), limit=200)
    return (total - background) / bin_width


def fit_peak(
    histogram: Histogram,
    calibration: LinearCalibration,
    approx_channel: float,
    approx_height: float,
    half_window: float = PEAK_FIT_HALF_WINDOW,
    seed: BackgroundSeed | None = None,
) -> PeakFit:
    """
    Fit one photopeak of a channel-axis histogram.

    Args:
        histogram: Uncalibrated spectrum (channel axis).
        calibration: Channel-to-energy calibration used for the centroid energy.
        approx_channel: Peak position from the correlation (channels).
        approx_height: Peak height from the search (counts).
        half_window: Fit window half-width (channels).
        seed: Background parameters from the previous fit; None for the first peak.

    Returns:
        PeakFit: Centroid, background-subtracted area and fitted parameters.

    Raises:
        FitNonConvergence: If the least-squares fit fails.
    """
    low = approx_channel - half_window
    high = approx_channel + half_window
    x, y = histogram.window(low, high)
    if x.size < len(PARAMETER_NAMES):
        raise FitNonConvergence(
            f"Only {x.size} bins in the fit window around channel {approx_channel:.1f}"
        )
    if seed is None:
        seed = default_background_seed(y)

    p0 = [
        float(np.clip(approx_height, 0.0, HEIGHT_LIMIT)),
        float(approx_channel),
        SIGMA_SEED_CHANNELS,
        seed.shift,
        max(abs(seed.horizontal_stretch), 1e-3),
        seed.vertical_stretch,
    ]
    lower = [0.0, low, 1e-3, -np.inf, 1e-3, -np.inf]
    upper = [HEIGHT_LIMIT, high, 2.0 * half_window, np.inf, np.inf, np.inf]
    # Poisson weights as for a histogram chi-square; empty bins get unit error.
    sigma_y = np.sqrt(np.clip(y, 1.0, None))
    try:
        popt, _ = curve_fit(gaussian_step, x, y, p0=p0, sigma=sigma_y, bounds=(lower, upper), maxfev=20000)
    except (RuntimeError, ValueError) as exc:
        raise FitNonConvergence(f"Peak fit near channel {approx_channel:.1f} failed: {exc}") from exc
    if not np.all(np.isfinite(popt)):
        raise FitNonConvergence(f"Peak fit near channel {approx_channel:.1f} returned non-finite parameters")

    parameters = tuple(float(p) for p in popt)
    area = peak_area(parameters, low, high, bin_width=histogram.bin_width)
    area_ok = bool(np.isfinite(area) and area > 0.0)
    area_uncertainty = float(np.sqrt(area)) if area_ok else float("nan")
    center = parameters[1]
    energy = float(calibration.channel_to_energy(center))
    logger.debug("Peak at %.3f keV (channel %.2f): area %.1f", energy, center, area)
    return PeakFit(
        channel=center,
        energy_keV=energy,
        area=float(area),
        area_uncertainty=area_uncertainty,
        area_ok=area_ok,
        parameters=parameters,
        window=(low, high),
    )
