"""Simulate uncalibrated HPGe calibration-source spectra for demos and tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict

import numpy as np
from numpy.typing import NDArray
from scipy.special import ndtr

from spectrum.calibration import LinearCalibration
from spectrum.histogram import Histogram
from spectrum.library import Isotope

# Electron rest energy.
ME_C2_KEV = 511.0  # keV
# Compton continuum-to-peak ratio (per line).
COMPTON_CONTINUUM_TO_PEAK = 2.0
# Backscatter peak fraction.
BACKSCATTER_FRACTION = 0.03
# Counts per second in lines that belong to the room background (40K, 208Tl, sum peaks).
BACKGROUND_LINE_CPS = 2.0
# Flat continuum (counts per channel per second).
FLAT_BACKGROUND_CPS = 0.002


def compton_edge(e_gamma_keV: float) -> float:
    """
    Return the Compton edge energy for a single scatter.

    E_edge = E_gamma * (1 - 1 / (1 + 2 * E_gamma / 511 keV))
    """
    return float(e_gamma_keV * (1.0 - 1.0 / (1.0 + 2.0 * e_gamma_keV / ME_C2_KEV)))


def backscatter_energy(e_gamma_keV: float) -> float:
    """
    Return the energy after 180-degree backscatter.

    E_back = E_gamma / (1 + 2 E_gamma / 511 keV)
    """
    return float(e_gamma_keV / (1.0 + 2.0 * e_gamma_keV / ME_C2_KEV))


def hpge_resolution(energy_keV: float) -> float:
    """Return a coaxial-HPGe-like sigma(E) in keV (about 1.9 keV FWHM at 1332 keV)."""
    return float(np.sqrt(0.25 + 6.0e-4 * energy_keV))


def hpge_efficiency(energy_keV: NDArray[np.float64] | float) -> NDArray[np.float64] | float:
    """
    HPGe-like full-energy peak efficiency.

    - Power-law fall-off above ~200 keV
    - Absorption roll-off at low energy
    """
    e = np.asarray(energy_keV, dtype=float)
    eff = 0.02 * (e / 200.0) ** -0.85 * (1.0 - np.exp(-((e / 60.0) ** 3)))
    if eff.shape == ():
        return float(eff)
    return eff


def _binned_gaussian(edges: NDArray[np.float64], center: float, sigma: float) -> NDArray[np.float64]:
    """Return the fraction of a unit Gaussian falling in each bin."""
    cdf = ndtr((edges - center) / sigma)
    return np.diff(cdf)


def compton_continuum_shape(centers_keV: NDArray[np.float64], e_gamma_keV: float) -> NDArray[np.float64]:
    """
    Approximate the Compton continuum of a single line.

    - Support is [0, Compton edge]
    - Exponential shape biased to low energies, normalised to unit sum
    """
    edge = compton_edge(e_gamma_keV)
    mask = (centers_keV >= 0.0) & (centers_keV <= edge)
    continuum = np.zeros_like(centers_keV, dtype=float)
    if not np.any(mask):
        return continuum
    tau = edge / 3.0 if edge > 0 else 1.0
    continuum[mask] = np.exp(-centers_keV[mask] / tau)
    total = continuum.sum()
    if total > 0:
        continuum /= total
    return continuum


@dataclass
class SyntheticSpectrumConfig:
    """Detector and acquisition settings of a simulated calibration run."""

    calibration: LinearCalibration = field(default_factory=lambda: LinearCalibration(slope=0.5, intercept=0.0))
    n_channels: int = 8192
    live_time_s: float = 3600.0
    activity_bq: float = 10000.0
    continuum_to_peak: float = COMPTON_CONTINUUM_TO_PEAK
    backscatter_fraction: float = BACKSCATTER_FRACTION
    background_line_cps: float = BACKGROUND_LINE_CPS
    flat_background_cps: float = FLAT_BACKGROUND_CPS
    resolution_fn: Callable[[float], float] = hpge_resolution
    efficiency_fn: Callable[[float], float] = hpge_efficiency


@dataclass
class SyntheticSpectrum:
    """A simulated spectrum and the true photopeak content per line energy."""

    histogram: Histogram
    true_areas: Dict[float, float]
    true_efficiency: Dict[float, float]


def simulate_calibration_spectrum(
    isotope: Isotope,
    config: SyntheticSpectrumConfig | None = None,
    rng: np.random.Generator | None = None,
) -> SyntheticSpectrum:
    """
    Simulate an uncalibrated spectrum of a calibration source.

    Lines with a non-zero yield scale with activity, live time, yield and
    efficiency; zero-yield lines get a fixed background rate. Each line adds a
    Compton continuum and, above 200 keV, a backscatter peak.

    Args:
        isotope: Calibration source.
        config: Detector/acquisition settings.
        rng: Random generator for Poisson noise; None returns expected counts.

    Returns:
        SyntheticSpectrum with the channel-axis histogram and true peak areas.
    """
    cfg = config or SyntheticSpectrumConfig()
    cal = cfg.calibration
    channel_edges = np.arange(cfg.n_channels + 1, dtype=float)
    energy_edges = np.asarray(cal.channel_to_energy(channel_edges), dtype=float)
    energy_centers = 0.5 * (energy_edges[1:] + energy_edges[:-1])

    expected = np.full(cfg.n_channels, cfg.flat_background_cps * cfg.live_time_s, dtype=float)
    true_areas: Dict[float, float] = {}
    true_eff: Dict[float, float] = {}
    for line in isotope.lines:
        eff = float(cfg.efficiency_fn(line.energy_keV))
        if line.yield_ > 0.0:
            area = cfg.activity_bq * cfg.live_time_s * line.yield_ * eff
        else:
            area = cfg.background_line_cps * cfg.live_time_s
        true_areas[line.energy_keV] = area
        true_eff[line.energy_keV] = eff
        sigma = cfg.resolution_fn(line.energy_keV)
        expected += area * _binned_gaussian(energy_edges, line.energy_keV, sigma)
        expected += cfg.continuum_to_peak * area * compton_continuum_shape(energy_centers, line.energy_keV)
        if line.energy_keV > 200.0 and cfg.backscatter_fraction > 0.0:
            e_back = backscatter_energy(line.energy_keV)
            back_area = cfg.backscatter_fraction * area
            expected += back_area * _binned_gaussian(energy_edges, e_back, cfg.resolution_fn(e_back))

    counts = rng.poisson(expected).astype(float) if rng is not None else expected
    return SyntheticSpectrum(
        histogram=Histogram(counts=counts, low_edge=0.0, bin_width=1.0),
        true_areas=true_areas,
        true_efficiency=true_eff,
    )
