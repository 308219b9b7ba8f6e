"""Candidate peak search on a raw calibration spectrum."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

import numpy as np
from numpy.typing import NDArray
from scipy.ndimage import gaussian_filter1d
from scipy.signal import find_peaks as _scipy_find_peaks

from spectrum.histogram import Histogram

logger = logging.getLogger(__name__)

# Smallest peak height relative to the tallest one.
DEFAULT_SENSITIVITY = 0.0005
# Gaussian smoothing applied before the search (bins).
SEARCH_SIGMA_BINS = 0.9
MAX_PEAKS = 50


@dataclass(frozen=True)
class CandidatePeak:
    """Hold a peak found by the search: position in channels and bin height in counts."""

    position: float
    height: float


def find_peaks(
    histogram: Histogram,
    sensitivity: float = DEFAULT_SENSITIVITY,
    sigma_bins: float = SEARCH_SIGMA_BINS,
    max_peaks: int = MAX_PEAKS,
    min_significance: float = 3.0,
) -> NDArray[np.float64]:
    """
    Locate local maxima above a cutoff relative to the tallest peak.

    Args:
        histogram: Spectrum to search.
        sensitivity: Cutoff as a fraction of the tallest smoothed bin, in (0, 1).
            Smaller values find smaller peaks.
        sigma_bins: Gaussian smoothing width in bins.
        max_peaks: Keep at most this many of the tallest peaks.
        min_significance: Minimum prominence in units of the Poisson error of the
            smoothed bin, which rejects counting-noise wiggles in the continuum.

    Returns:
        Peak positions on the histogram axis, sorted ascending.
    """
    if not 0.0 < sensitivity < 1.0:
        raise ValueError("sensitivity must lie in (0, 1)")
    counts = histogram.counts
    smoothed = gaussian_filter1d(counts, sigma=sigma_bins, mode="nearest") if sigma_bins > 0 else counts
    top = float(smoothed.max())
    if top <= 0.0:
        return np.array([], dtype=float)
    cutoff = sensitivity * top
    indices, props = _scipy_find_peaks(smoothed, height=cutoff, prominence=cutoff)
    if indices.size == 0:
        return np.array([], dtype=float)
    noise = np.sqrt(np.clip(smoothed[indices], 1.0, None))
    keep = props["prominences"] >= min_significance * noise
    indices = indices[keep]
    if indices.size > max_peaks:
        tallest = np.argsort(smoothed[indices])[::-1][:max_peaks]
        indices = indices[tallest]
    positions = np.sort(histogram.centers[indices])
    logger.debug("Peak search (sensitivity=%g) found %d peaks", sensitivity, positions.size)
    return positions


def find_candidate_peaks(
    histogram: Histogram,
    sensitivity: float = DEFAULT_SENSITIVITY,
    **kwargs,
) -> List[CandidatePeak]:
    """Run the peak search and read each peak's height from the raw histogram."""
    positions = find_peaks(histogram, sensitivity=sensitivity, **kwargs)
    return [CandidatePeak(position=float(x), height=histogram.content_at(x)) for x in positions]
