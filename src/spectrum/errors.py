"""Exceptions raised by the efficiency calibration pipeline."""

from __future__ import annotations


class CalibrationError(Exception):
    """Base class for pipeline failures that abort or degrade a calibration pass."""


class InsufficientMatches(CalibrationError):
    """Ratio correlation ran out of candidate peaks before reaching the match threshold."""

    def __init__(self, isotope: str, required: int, best: int) -> None:
        self.isotope = isotope
        self.required = required
        self.best = best
        super().__init__(
            f"Only {best} of the required {required} peaks matched the {isotope} literature lines. "
            "The wrong isotope may be selected, or the peak search sensitivity needs adjusting."
        )


class DegenerateActivity(CalibrationError):
    """Activity decay cannot be propagated (zero elapsed time, zero half-life, ...)."""


class FitNonConvergence(CalibrationError):
    """A least-squares fit did not converge within its bounds."""


class SessionStateError(CalibrationError):
    """A session operation was called before the stage it depends on."""
