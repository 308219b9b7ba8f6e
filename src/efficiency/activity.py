"""Source activity at the time of the calibration run, with error propagation."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime

from spectrum.errors import DegenerateActivity
from spectrum.library import Isotope

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0
# Dates carry no time of day (both taken at midnight), so the elapsed time is
# uncertain by one day.
ELAPSED_TIME_UNCERTAINTY_S = SECONDS_PER_DAY


@dataclass(frozen=True)
class ActivityRecord:
    """Activity of the source during the run (Bq)."""

    activity_bq: float
    uncertainty_bq: float
    elapsed_s: float

    @property
    def relative_uncertainty(self) -> float:
        return self.uncertainty_bq / self.activity_bq if self.activity_bq > 0 else float("inf")


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


def elapsed_seconds(reference_date: date | datetime, measurement_date: date | datetime) -> float:
    """Return measurement_date - reference_date in seconds at day resolution."""
    days = (_as_date(measurement_date) - _as_date(reference_date)).days
    return days * SECONDS_PER_DAY


def decayed_activity(reference_activity: float, elapsed_s: float, half_life_s: float) -> float:
    """A = A0 * exp(-ln2 * t / T_half)."""
    if half_life_s <= 0.0:
        raise DegenerateActivity("Half-life must be positive")
    if elapsed_s == 0.0:
        return float(reference_activity)
    decay_constant = math.log(2.0) / half_life_s
    return float(reference_activity * math.exp(-decay_constant * elapsed_s))


def activity_uncertainty(
    activity: float,
    reference_activity: float,
    reference_activity_uncertainty: float,
    elapsed_s: float,
    elapsed_uncertainty_s: float,
    half_life_s: float,
    half_life_uncertainty_s: float,
) -> float:
    """
    Propagate independent errors of A0, the half-life and the elapsed time.

    dλ = ln2 dT/T^2, d(λt) = λt sqrt((dλ/λ)^2 + (dt/t)^2),
    dExp = d(λt) exp(-λt), dA = A sqrt((dA0/A0)^2 + (dExp/exp(-λt))^2)
    """
    decay_constant = math.log(2.0) / half_life_s
    d_decay_constant = math.log(2.0) * half_life_uncertainty_s / half_life_s**2
    exponent = decay_constant * elapsed_s
    d_exponent = exponent * math.sqrt(
        (d_decay_constant / decay_constant) ** 2 + (elapsed_uncertainty_s / elapsed_s) ** 2
    )
    exp_term = math.exp(-exponent)
    d_exp_term = d_exponent * exp_term
    return activity * math.sqrt(
        (reference_activity_uncertainty / reference_activity) ** 2 + (d_exp_term / exp_term) ** 2
    )


def activity_at(
    reference_activity: float,
    reference_activity_uncertainty: float,
    reference_date: date | datetime,
    measurement_date: date | datetime,
    isotope: Isotope,
) -> ActivityRecord:
    """
    Compute the source activity on the measurement date.

    Args:
        reference_activity: Certified activity (Bq) on the reference date.
        reference_activity_uncertainty: Its uncertainty (Bq).
        reference_date: Date of the certified activity.
        measurement_date: Date of the calibration run.
        isotope: Calibration source (half-life and its uncertainty).

    Returns:
        ActivityRecord with the propagated uncertainty.

    Raises:
        DegenerateActivity: Zero or negative elapsed time, non-positive
            half-life or reference activity, where propagation is undefined.
    """
    if reference_activity <= 0.0:
        raise DegenerateActivity("Reference activity must be positive")
    if isotope.half_life_s <= 0.0:
        raise DegenerateActivity(f"{isotope.name} has a non-positive half-life")
    elapsed = elapsed_seconds(reference_date, measurement_date)
    if elapsed == 0.0:
        raise DegenerateActivity("Reference and measurement dates coincide; elapsed-time uncertainty is undefined")
    if elapsed < 0.0:
        raise DegenerateActivity("Measurement date precedes the reference date")

    activity = decayed_activity(reference_activity, elapsed, isotope.half_life_s)
    uncertainty = activity_uncertainty(
        activity,
        reference_activity,
        reference_activity_uncertainty,
        elapsed,
        ELAPSED_TIME_UNCERTAINTY_S,
        isotope.half_life_s,
        isotope.half_life_uncertainty_s,
    )
    logger.info(
        "Activity of %s after %.0f s: %.2f +/- %.2f Bq", isotope.name, elapsed, activity, uncertainty
    )
    return ActivityRecord(activity_bq=activity, uncertainty_bq=uncertainty, elapsed_s=elapsed)
