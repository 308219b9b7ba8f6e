"""Match found peaks to literature gamma lines by comparing energy ratios."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Sequence

from spectrum.errors import InsufficientMatches
from spectrum.library import Isotope
from spectrum.peak_detection import CandidatePeak

logger = logging.getLogger(__name__)

# Relative tolerance of the ratio test, applied around the peak ratio.
RATIO_TOLERANCE = 0.01


@dataclass(frozen=True)
class MatchedPeak:
    """A candidate peak bound to a literature line."""

    channel: float
    energy_keV: float
    height: float


@dataclass
class CorrelationResult:
    """Matches of a successful correlation pass.

    ``dropped`` lists the leading candidates removed by the backoff, in the
    order they were dropped.
    """

    matches: List[MatchedPeak]
    dropped: List[CandidatePeak] = field(default_factory=list)

    @property
    def channels(self) -> List[float]:
        return [m.channel for m in self.matches]

    @property
    def energies(self) -> List[float]:
        return [m.energy_keV for m in self.matches]

    @property
    def heights(self) -> List[float]:
        return [m.height for m in self.matches]


def required_matches(isotope: Isotope) -> int:
    """Return the minimum number of matches (anchor included) for an isotope."""
    # Rounding guards against 0.7 * 10 = 7.000000000000001.
    return int(math.ceil(round(isotope.min_match_fraction * len(isotope.lines), 9)))


def ratio_matches(peaks: Sequence[CandidatePeak], isotope: Isotope) -> List[MatchedPeak]:
    """
    Run the ratio test with the first peak and the first literature line as anchors.

    A peak m matches line k when P0/Pm lies within 1% of E0/Ek. The anchor pair
    is always recorded first. A line or a peak may match more than once;
    duplicates are kept.
    """
    if not peaks:
        return []
    anchor_peak = peaks[0]
    anchor_energy = isotope.lines[0].energy_keV
    matches = [MatchedPeak(channel=anchor_peak.position, energy_keV=anchor_energy, height=anchor_peak.height)]
    for line in isotope.lines[1:]:
        ratio_lit = anchor_energy / line.energy_keV
        for peak in peaks[1:]:
            ratio_found = anchor_peak.position / peak.position
            low = ratio_found - RATIO_TOLERANCE * ratio_found
            high = ratio_found + RATIO_TOLERANCE * ratio_found
            if low < ratio_lit < high:
                matches.append(MatchedPeak(channel=peak.position, energy_keV=line.energy_keV, height=peak.height))
    return matches


def correlate(candidate_peaks: Sequence[CandidatePeak], isotope: Isotope) -> CorrelationResult:
    """
    Correlate candidate peaks to the isotope's literature lines.

    If too few lines match, the leading (lowest-channel) candidate is assumed
    not to be the anchor line; it is dropped and the ratio test is repeated
    with the next peak. Only the leading peak is ever dropped.

    Raises:
        InsufficientMatches: When a single candidate is left without reaching
            the isotope's minimum match count.
    """
    peaks = sorted(candidate_peaks, key=lambda p: p.position)
    required = required_matches(isotope)
    dropped: List[CandidatePeak] = []
    best = 0
    while len(peaks) > 1:
        matches = ratio_matches(peaks, isotope)
        best = max(best, len(matches))
        if len(matches) >= required:
            logger.info(
                "Correlated %d peaks to %s lines (leading peak at channel %.2f, %d dropped)",
                len(matches), isotope.name, peaks[0].position, len(dropped),
            )
            return CorrelationResult(matches=matches, dropped=dropped)
        logger.debug(
            "Only %d/%d matches with leading peak at %.2f; dropping it",
            len(matches), required, peaks[0].position,
        )
        dropped.append(peaks[0])
        peaks = peaks[1:]
    raise InsufficientMatches(isotope.name, required, best)
