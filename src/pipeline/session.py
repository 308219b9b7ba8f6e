"""Efficiency calibration session: peak search → correlation → peak review → efficiency."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum, IntEnum
from typing import Callable, Generator, List, Optional, Tuple

import numpy as np

from efficiency.activity import ActivityRecord, activity_at
from efficiency.curve import EfficiencyCurve, EfficiencyPoint, compute_efficiency
from pipeline.config import RunMetadata, SessionConfig
from spectrum.calibration import LinearCalibration, fit_linear_calibration
from spectrum.correlation import MatchedPeak, correlate
from spectrum.errors import FitNonConvergence, SessionStateError
from spectrum.histogram import Histogram
from spectrum.library import Isotope
from spectrum.peak_detection import CandidatePeak, find_candidate_peaks
from spectrum.peak_fit import BackgroundSeed, FittedPeak, PeakFit, fit_peak

logger = logging.getLogger(__name__)


class SessionState(IntEnum):
    """Stages of a session; each owns the data it produces."""

    SEARCHING = 0
    CORRELATING = 1
    FITTING = 2
    COMPUTING_EFFICIENCY = 3


class ReviewAction(Enum):
    APPROVE = "approve"
    OVERRIDE = "override"
    REJECT = "reject"


@dataclass(frozen=True)
class ReviewDecision:
    """User verdict on one peak fit."""

    action: ReviewAction
    area: float | None = None
    energy_axis: bool = False

    @classmethod
    def approve(cls) -> "ReviewDecision":
        return cls(ReviewAction.APPROVE)

    @classmethod
    def reject(cls) -> "ReviewDecision":
        return cls(ReviewAction.REJECT)

    @classmethod
    def override(cls, area: float, energy_axis: bool = False) -> "ReviewDecision":
        """
        Replace the fitted area with a manual value.

        With ``energy_axis=True`` the area was read off the calibrated
        (keV) spectrum and is converted back to counts.
        """
        if not area > 0.0:
            raise ValueError("Manual area must be positive")
        return cls(ReviewAction.OVERRIDE, area=float(area), energy_axis=energy_axis)


class CalibrationSession:
    """
    Hold all state of one efficiency calibration.

    Operations advance the session through :class:`SessionState`; going back
    is done with :meth:`reset`, which discards everything produced by later
    stages.
    """

    def __init__(
        self,
        histogram: Histogram,
        run: RunMetadata,
        config: SessionConfig | None = None,
        isotope: Isotope | None = None,
    ) -> None:
        self.histogram = histogram
        self.run = run
        # Own copy; search(sensitivity=...) updates it.
        self.config = replace(config) if config is not None else SessionConfig()
        self.isotope = isotope or run.source()
        self.state = SessionState.SEARCHING
        # The activity depends only on the run metadata and survives resets.
        self.activity: ActivityRecord = activity_at(
            run.reference_activity_bq,
            run.reference_activity_uncertainty_bq,
            run.reference_date,
            run.measurement_date,
            self.isotope,
        )
        # SEARCHING
        self.candidates: List[CandidatePeak] = []
        # CORRELATING
        self.matches: List[MatchedPeak] = []
        self.dropped: List[CandidatePeak] = []
        self.calibration: Optional[LinearCalibration] = None
        # FITTING
        self.peak_fits: List[PeakFit] = []
        self.fitted_peaks: List[FittedPeak] = []
        self._review: Optional[Generator[PeakFit, Optional[ReviewDecision], None]] = None
        self._review_done = False
        # COMPUTING_EFFICIENCY
        self.efficiency_points: List[EfficiencyPoint] = []
        self.efficiency_curve: Optional[EfficiencyCurve] = None

    # ------------------------------------------------------------------ state
    def reset(self, to_state: SessionState) -> None:
        """
        Return to ``to_state`` and clear all data owned by later stages.

        Raises:
            SessionStateError: If ``to_state`` lies ahead of the current stage.
        """
        if to_state > self.state:
            raise SessionStateError(
                f"Cannot reset forward from {self.state.name.lower()} to {to_state.name.lower()}"
            )
        if to_state < SessionState.COMPUTING_EFFICIENCY:
            self.efficiency_points = []
            self.efficiency_curve = None
        if to_state < SessionState.FITTING:
            if self._review is not None:
                self._review.close()
            self._review = None
            self._review_done = False
            self.peak_fits = []
            self.fitted_peaks = []
        if to_state < SessionState.CORRELATING:
            self.matches = []
            self.dropped = []
            self.calibration = None
        if to_state < self.state:
            logger.debug("Session reset from %s to %s", self.state.name, to_state.name)
        self.state = to_state

    def back(self) -> None:
        """Discard the correlation and everything after it."""
        self.reset(SessionState.SEARCHING)

    def _require(self, state: SessionState, operation: str) -> None:
        if self.state < state:
            raise SessionStateError(
                f"{operation} needs the {state.name.lower()} stage; session is {self.state.name.lower()}"
            )

    # --------------------------------------------------------------- searching
    def search(self, sensitivity: float | None = None) -> List[CandidatePeak]:
        """Search for candidate peaks, replacing previous candidates."""
        if sensitivity is not None:
            self.config.sensitivity = sensitivity
        self.reset(SessionState.SEARCHING)
        self.candidates = find_candidate_peaks(self.histogram, sensitivity=self.config.sensitivity)
        logger.info("Found %d candidate peaks (sensitivity %g)", len(self.candidates), self.config.sensitivity)
        return list(self.candidates)

    def delete_candidate(self, index: int) -> CandidatePeak:
        """Remove a false candidate (counted along the channel axis)."""
        if self.state != SessionState.SEARCHING:
            raise SessionStateError("Candidates can only be deleted while searching; call back() first")
        if len(self.candidates) <= 1:
            raise ValueError("Cannot delete the only peak")
        return self.candidates.pop(index)

    # ------------------------------------------------------------- correlating
    def correlate(self) -> List[MatchedPeak]:
        """
        Correlate the candidates with the literature lines and calibrate.

        The leading candidates dropped by the backoff are removed from the
        candidate list. On failure the session stays in the search stage.
        """
        if not self.candidates:
            raise SessionStateError("No candidate peaks; run search() first")
        self.reset(SessionState.SEARCHING)
        result = correlate(self.candidates, self.isotope)
        calibration = fit_linear_calibration(result.channels, result.energies)
        dropped = set(id(p) for p in result.dropped)
        self.candidates = [p for p in self.candidates if id(p) not in dropped]
        self.dropped = result.dropped
        self.matches = result.matches
        self.calibration = calibration
        self.state = SessionState.CORRELATING
        return list(self.matches)

    def delete_match(self, index: int) -> MatchedPeak:
        """Drop a matched peak so it is not fitted; the calibration is kept."""
        if self.state != SessionState.CORRELATING:
            raise SessionStateError("Matches can only be deleted before fitting starts")
        if len(self.matches) <= 1:
            raise ValueError("Cannot delete the only peak")
        return self.matches.pop(index)

    def recalibrate(self) -> LinearCalibration:
        """Refit the calibration on the remaining matches."""
        if self.state != SessionState.CORRELATING:
            raise SessionStateError("Recalibration is only possible before fitting starts")
        self.calibration = fit_linear_calibration([m.channel for m in self.matches], [m.energy_keV for m in self.matches])
        return self.calibration

    # ----------------------------------------------------------------- fitting
    def review_peaks(self) -> Generator[PeakFit, Optional[ReviewDecision], None]:
        """
        Fit the matched peaks one at a time.

        Returns a generator that yields a :class:`PeakFit` per match and expects
        a :class:`ReviewDecision` through ``send()`` before fitting the next
        peak. Plain iteration sends None, which approves good fits and rejects
        failed ones. Restarting the review discards earlier results.
        """
        self._require(SessionState.CORRELATING, "Peak review")
        if self.calibration is None:
            raise SessionStateError("Peak review needs an energy calibration; run correlate() first")
        self.reset(SessionState.CORRELATING)
        self.state = SessionState.FITTING
        self._review = self._review_loop()
        return self._review

    def _review_loop(self) -> Generator[PeakFit, Optional[ReviewDecision], None]:
        seed: BackgroundSeed | None = None
        for index, match in enumerate(list(self.matches)):
            try:
                fit = fit_peak(
                    self.histogram,
                    self.calibration,
                    match.channel,
                    match.height,
                    half_window=self.config.fit_half_window,
                    seed=seed if self.config.carry_background_seed else None,
                )
                seed = fit.background_seed()
            except FitNonConvergence as exc:
                logger.warning("%s", exc)
                fit = self._failed_fit(match)
            self.peak_fits.append(fit)
            decision = yield fit
            self._apply_decision(index, fit, decision)
        self._review_done = True
        logger.info("Reviewed %d peaks, %d kept", len(self.peak_fits), len(self.fitted_peaks))

    def _failed_fit(self, match: MatchedPeak) -> PeakFit:
        half = self.config.fit_half_window
        return PeakFit(
            channel=match.channel,
            energy_keV=float(self.calibration.channel_to_energy(match.channel)),
            area=float("nan"),
            area_uncertainty=float("nan"),
            area_ok=False,
            parameters=(),
            window=(match.channel - half, match.channel + half),
        )

    def _apply_decision(self, index: int, fit: PeakFit, decision: Optional[ReviewDecision]) -> None:
        if decision is None:
            decision = ReviewDecision.approve() if fit.area_ok else ReviewDecision.reject()
        if decision.action is ReviewAction.APPROVE:
            if not fit.area_ok:
                logger.warning("Cannot approve the failed fit at %.2f keV without a manual area", fit.energy_keV)
                return
            self.fitted_peaks.append(
                FittedPeak(energy_keV=fit.energy_keV, area=fit.area, area_uncertainty=fit.area_uncertainty, match_index=index)
            )
        elif decision.action is ReviewAction.OVERRIDE:
            area = decision.area
            if decision.energy_axis:
                area = self.calibration.area_to_channel_units(area)
            logger.info("Manual area %.1f used for the peak at %.2f keV", area, fit.energy_keV)
            self.fitted_peaks.append(
                FittedPeak(
                    energy_keV=fit.energy_keV,
                    area=area,
                    area_uncertainty=float(np.sqrt(area)),
                    manual=True,
                    match_index=index,
                )
            )
        else:
            logger.debug("Peak at %.2f keV rejected", fit.energy_keV)

    def review_all(self, decide: Callable[[PeakFit], Optional[ReviewDecision]] | None = None) -> List[FittedPeak]:
        """Drive the review to the end, asking ``decide`` for every fit."""
        review = self.review_peaks()
        try:
            fit = next(review)
            while True:
                fit = review.send(decide(fit) if decide is not None else None)
        except StopIteration:
            pass
        return list(self.fitted_peaks)

    # -------------------------------------------------------------- efficiency
    def compute_efficiency(self) -> Tuple[List[EfficiencyPoint], EfficiencyCurve]:
        """Compute per-peak efficiencies and fit the efficiency curve."""
        self._require(SessionState.FITTING, "Efficiency computation")
        if not self._review_done:
            raise SessionStateError("Finish the peak review before computing the efficiency")
        if not self.fitted_peaks:
            raise SessionStateError("No peaks were approved")
        self.reset(SessionState.FITTING)
        points, curve = compute_efficiency(
            self.fitted_peaks,
            self.isotope,
            self.activity,
            self.run.run_time_s,
            self.run.run_time_uncertainty_s,
        )
        self.efficiency_points = points
        self.efficiency_curve = curve
        self.state = SessionState.COMPUTING_EFFICIENCY
        return points, curve
