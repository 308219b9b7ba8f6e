"""Fixed-width 1-D histogram of detector channel versus counts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Tuple

import numpy as np
from numpy.typing import NDArray


@dataclass(frozen=True)
class Histogram:
    """
    Binned spectrum with uniform bins.

    Args:
        counts: Counts per bin.
        low_edge: Lower edge of the first bin (channel or energy units).
        bin_width: Width of each bin.
    """

    counts: NDArray[np.float64]
    low_edge: float = 0.0
    bin_width: float = 1.0

    def __post_init__(self) -> None:
        counts = np.asarray(self.counts, dtype=float)
        if counts.ndim != 1 or counts.size == 0:
            raise ValueError("counts must be a non-empty 1-D array")
        if self.bin_width <= 0.0:
            raise ValueError("bin_width must be positive")
        object.__setattr__(self, "counts", counts)

    @property
    def n_bins(self) -> int:
        return int(self.counts.size)

    @property
    def axis_range(self) -> Tuple[float, float]:
        """Return (low, high) edges of the axis."""
        return self.low_edge, self.low_edge + self.n_bins * self.bin_width

    @property
    def centers(self) -> NDArray[np.float64]:
        return self.low_edge + (np.arange(self.n_bins, dtype=float) + 0.5) * self.bin_width

    @property
    def edges(self) -> NDArray[np.float64]:
        return self.low_edge + np.arange(self.n_bins + 1, dtype=float) * self.bin_width

    def find_bin(self, x: float) -> int:
        """Return the index of the bin containing x, clipped to the axis."""
        idx = int(np.floor((x - self.low_edge) / self.bin_width))
        return int(np.clip(idx, 0, self.n_bins - 1))

    def content_at(self, x: float) -> float:
        """Return the counts of the bin containing x."""
        return float(self.counts[self.find_bin(x)])

    def window(self, low: float, high: float) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Return (bin centers, counts) for bins whose centers lie in [low, high]."""
        centers = self.centers
        mask = (centers >= low) & (centers <= high)
        return centers[mask], self.counts[mask]

    def rescaled(self, mapping: Callable[[float], float]) -> "Histogram":
        """
        Return a copy whose axis is mapped through a monotonic increasing function.

        Only the axis ends are mapped, so the mapping must be linear for the
        bins to stay uniform (which is the case for the energy calibration).
        """
        low, high = self.axis_range
        new_low = float(mapping(low))
        new_high = float(mapping(high))
        if new_high <= new_low:
            raise ValueError("Axis mapping must be increasing")
        return Histogram(
            counts=self.counts.copy(),
            low_edge=new_low,
            bin_width=(new_high - new_low) / self.n_bins,
        )
