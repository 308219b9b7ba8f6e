"""Per-peak detector efficiency and the fitted efficiency curve."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.optimize import curve_fit

from efficiency.activity import ActivityRecord
from spectrum.errors import FitNonConvergence
from spectrum.library import Isotope
from spectrum.peak_fit import FittedPeak

logger = logging.getLogger(__name__)

# A fitted centroid must lie strictly within this distance of a literature line.
LITERATURE_TOLERANCE_KEV = 2.3
# Fixed offset of the efficiency model exponent.
MODEL_OFFSET = 25.0
AMPLITUDE_LIMIT = 1.0e5
# Seed for p3: exp(5) puts the threshold gate at ~0.996.
GATE_SEED = 5.0


@dataclass(frozen=True)
class EfficiencyPoint:
    """Measured efficiency at one literature line."""

    energy_keV: float
    energy_uncertainty_keV: float
    efficiency: float
    efficiency_uncertainty: float
    yield_: float
    area: float
    fitted_energy_keV: float
    match_index: int | None = None


def efficiency_model(
    energy_keV: ArrayLike,
    p0: float,
    p1: float,
    p2: float,
    p3: float,
    p4: float,
    p5: float,
) -> NDArray[np.float64]:
    """
    eff(E) = exp((p0 + p1 lnE + p2 lnE^2) * 2/pi * atan(exp(p3 + p4 lnE + p5 lnE^2)) - 25)

    A log-quadratic amplitude gated by a smooth log-quadratic threshold: the
    gate reproduces the low-energy roll-off, the amplitude the high-energy fall.
    """
    z = np.log(np.asarray(energy_keV, dtype=float))
    amplitude = p0 + p1 * z + p2 * z * z
    gate = 2.0 / np.pi * np.arctan(np.exp(p3 + p4 * z + p5 * z * z))
    return np.exp(amplitude * gate - MODEL_OFFSET)


@dataclass(frozen=True)
class EfficiencyCurve:
    """Fitted efficiency model; valid over the fitted energy range only."""

    parameters: Tuple[float, ...]
    covariance: NDArray[np.float64]
    energy_range_keV: Tuple[float, float]

    def __call__(self, energy_keV: ArrayLike) -> NDArray[np.float64]:
        return efficiency_model(energy_keV, *self.parameters)

    def in_range(self, energy_keV: float) -> bool:
        low, high = self.energy_range_keV
        return low <= energy_keV <= high

    def formula(self) -> str:
        p = self.parameters
        return (
            f"Eff = exp(({p[0]:f} + {p[1]:f} ln(E) + {p[2]:f} ln(E)^2) * 2/pi * "
            f"atan(exp({p[3]:f} + {p[4]:f} ln(E) + {p[5]:f} ln(E)^2)) - 25)"
        )


def efficiency_uncertainty(
    efficiency: float,
    area: float,
    yield_: float,
    yield_uncertainty: float,
    run_time_s: float,
    run_time_uncertainty_s: float,
    activity_bq: float,
    activity_uncertainty_bq: float,
) -> float:
    """
    dEff = eff * sqrt(1/area + (dY/Y)^2 + (dt/t)^2 + (dA/A)^2)

    1/area is the Poisson relative variance of the photopeak count.
    """
    return abs(efficiency) * math.sqrt(
        1.0 / area
        + (yield_uncertainty / yield_) ** 2
        + (run_time_uncertainty_s / run_time_s) ** 2
        + (activity_uncertainty_bq / activity_bq) ** 2
    )


def efficiency_points(
    fitted_peaks: Sequence[FittedPeak],
    isotope: Isotope,
    activity: ActivityRecord,
    run_time_s: float,
    run_time_uncertainty_s: float,
) -> List[EfficiencyPoint]:
    """
    Convert approved peak areas into efficiencies.

    Each peak is paired with the first literature line within 2.3 keV of its
    centroid; peaks without such a line are left out. A line may be claimed
    by several peaks.

    Args:
        fitted_peaks: Approved peaks in review order.
        isotope: Calibration source.
        activity: Source activity during the run.
        run_time_s: Run length (s).
        run_time_uncertainty_s: Uncertainty of the run length (s).

    Returns:
        Efficiency points in the order of ``fitted_peaks``.
    """
    if run_time_s <= 0.0:
        raise ValueError("run_time_s must be positive")
    if activity.activity_bq <= 0.0:
        raise ValueError("Activity must be positive")
    points: List[EfficiencyPoint] = []
    for peak in fitted_peaks:
        line = next(
            (
                ln
                for ln in isotope.lines
                if peak.energy_keV - LITERATURE_TOLERANCE_KEV < ln.energy_keV < peak.energy_keV + LITERATURE_TOLERANCE_KEV
            ),
            None,
        )
        if line is None:
            logger.debug("Peak at %.2f keV matches no %s line; skipped", peak.energy_keV, isotope.name)
            continue
        if line.yield_ <= 0.0:
            logger.warning("%.3f keV is a background line without yield; skipped", line.energy_keV)
            continue
        if not peak.area > 0.0:
            logger.warning("Peak at %.2f keV has non-positive area %.3g; skipped", peak.energy_keV, peak.area)
            continue
        eff = peak.area / activity.activity_bq / run_time_s / line.yield_
        d_eff = efficiency_uncertainty(
            eff,
            peak.area,
            line.yield_,
            line.yield_uncertainty,
            run_time_s,
            run_time_uncertainty_s,
            activity.activity_bq,
            activity.uncertainty_bq,
        )
        points.append(
            EfficiencyPoint(
                energy_keV=line.energy_keV,
                energy_uncertainty_keV=line.energy_uncertainty_keV,
                efficiency=eff,
                efficiency_uncertainty=d_eff,
                yield_=line.yield_,
                area=peak.area,
                fitted_energy_keV=peak.energy_keV,
                match_index=peak.match_index,
            )
        )
    return points


def _seed_parameters(energies: NDArray[np.float64], eff: NDArray[np.float64], d_eff: NDArray[np.float64]) -> List[float]:
    """Seed p0..p2 from a log-quadratic fit with the gate held near one."""
    gate = 2.0 / np.pi * np.arctan(np.exp(GATE_SEED))
    z = np.log(energies)
    target = (np.log(eff) + MODEL_OFFSET) / gate
    # Weight by the inverse error of ln(eff).
    weights = eff / d_eff
    degree = min(2, np.unique(z).size - 1)
    coeffs = np.polyfit(z, target, degree, w=weights)[::-1]
    amplitude = list(coeffs) + [0.0] * (3 - len(coeffs))
    amplitude[0] = float(np.clip(amplitude[0], 0.0, AMPLITUDE_LIMIT))
    return [float(a) for a in amplitude] + [GATE_SEED, 0.0, 0.0]


def fit_efficiency_curve(points: Sequence[EfficiencyPoint], initial: Sequence[float] | None = None) -> EfficiencyCurve:
    """
    Fit the six-parameter efficiency model to the measured points.

    Points are weighted by their efficiency uncertainty; p0 is bounded to
    [0, 1e5]. The curve is only meaningful inside the fitted energy range.

    Raises:
        FitNonConvergence: If the fit fails.
    """
    if not points:
        raise ValueError("No efficiency points to fit")
    energies = np.array([p.energy_keV for p in points], dtype=float)
    eff = np.array([p.efficiency for p in points], dtype=float)
    d_eff = np.array([p.efficiency_uncertainty for p in points], dtype=float)
    lo, hi = float(energies.min()), float(energies.max())
    p0 = list(initial) if initial is not None else _seed_parameters(energies, eff, d_eff)
    lower = [0.0] + [-np.inf] * 5
    upper = [AMPLITUDE_LIMIT] + [np.inf] * 5
    try:
        popt, pcov = curve_fit(
            efficiency_model,
            energies,
            eff,
            p0=p0,
            sigma=d_eff,
            absolute_sigma=True,
            bounds=(lower, upper),
            maxfev=20000,
        )
    except (RuntimeError, ValueError) as exc:
        raise FitNonConvergence(f"Efficiency curve fit failed: {exc}") from exc
    curve = EfficiencyCurve(
        parameters=tuple(float(p) for p in popt),
        covariance=np.asarray(pcov, dtype=float),
        energy_range_keV=(lo, hi),
    )
    logger.info("%s", curve.formula())
    return curve


def compute_efficiency(
    fitted_peaks: Sequence[FittedPeak],
    isotope: Isotope,
    activity: ActivityRecord,
    run_time_s: float,
    run_time_uncertainty_s: float,
) -> Tuple[List[EfficiencyPoint], EfficiencyCurve]:
    """Compute the efficiency points and fit the efficiency curve through them."""
    points = efficiency_points(fitted_peaks, isotope, activity, run_time_s, run_time_uncertainty_s)
    if not points:
        raise ValueError(f"None of the approved peaks lies within {LITERATURE_TOLERANCE_KEV} keV of a {isotope.name} line")
    curve = fit_efficiency_curve(points)
    return points, curve
