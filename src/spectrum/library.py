"""Literature gamma lines and half-lives of the calibration sources (NNDC values)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Tuple


@dataclass(frozen=True)
class GammaLine:
    """Represent a single gamma line energy and its emission yield per decay."""

    energy_keV: float
    energy_uncertainty_keV: float
    yield_: float
    yield_uncertainty: float


@dataclass(frozen=True)
class Isotope:
    """
    Hold calibration-source reference data.

    The first line is the anchor used by the ratio correlation; the remaining
    lines are ordered by detection relevance.
    """

    name: str
    half_life_s: float
    half_life_uncertainty_s: float
    lines: Tuple[GammaLine, ...]
    min_match_fraction: float

    @property
    def energies_keV(self) -> List[float]:
        return [line.energy_keV for line in self.lines]

    @property
    def anchor(self) -> GammaLine:
        return self.lines[0]


def _lines(energies, d_energies, yields, d_yields) -> Tuple[GammaLine, ...]:
    return tuple(
        GammaLine(energy_keV=e, energy_uncertainty_keV=de, yield_=y, yield_uncertainty=dy)
        for e, de, y, dy in zip(energies, d_energies, yields, d_yields)
    )


def default_library() -> Dict[str, Isotope]:
    """Return the calibration sources supported by the pipeline (152Eu and 60Co)."""
    return {
        "152Eu": Isotope(
            name="152Eu",
            half_life_s=426272112.0,
            half_life_uncertainty_s=283824.0,
            lines=_lines(
                [121.782, 344.278, 411.116, 443.965, 778.904, 867.373, 964.079, 1112.069, 1212.948, 1299.140, 1408.005],
                [0.001, 0.001, 0.001, 0.003, 0.002, 0.003, 0.018, 0.003, 0.011, 0.009, 0.003],
                [0.286678, 0.26558, 0.022372, 0.031576, 0.129603, 0.042584, 0.146494, 0.136855, 0.014263, 0.016254, 0.210692],
                [0.001456, 0.005129, 0.000246, 0.000297, 0.001414, 0.000274, 0.000719, 0.000676, 0.000093, 0.000193, 0.001016],
            ),
            min_match_fraction=0.7,
        ),
        # The last three 60Co entries are background lines seen in every run:
        # natural 40K, the 1173+1332 sum peak and 208Tl. They carry no yield.
        "60Co": Isotope(
            name="60Co",
            half_life_s=166344192.0,
            half_life_uncertainty_s=12096.0,
            lines=_lines(
                [1173.228, 1332.490, 1460.821, 2505.72, 2614.532],
                [0.003, 0.004, 0.006, 0.005, 0.013],
                [0.998500, 0.999826, 0.0, 0.0, 0.0],
                [0.0003, 0.000006, 0.0, 0.0, 0.0],
            ),
            min_match_fraction=0.5,
        ),
    }


_LIBRARY = default_library()


def available_isotopes() -> List[str]:
    """Return the names of the isotopes in the default library."""
    return list(_LIBRARY.keys())


def get_isotope(name: str) -> Isotope:
    """Look up an isotope by name in the default library."""
    try:
        return _LIBRARY[name]
    except KeyError:
        raise KeyError(f"Unknown isotope {name!r}; available: {', '.join(_LIBRARY)}") from None
