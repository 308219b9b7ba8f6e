"""Run metadata and tunables of an efficiency calibration session."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date
from pathlib import Path
from typing import Any, Dict

from spectrum.library import Isotope, get_isotope
from spectrum.peak_detection import DEFAULT_SENSITIVITY
from spectrum.peak_fit import PEAK_FIT_HALF_WINDOW

# Used when the run length is entered without an uncertainty.
DEFAULT_RUN_TIME_UNCERTAINTY_S = 1.0


@dataclass
class RunMetadata:
    """校正測定の入力情報（線源、基準放射能、日付、測定時間）。"""

    isotope: str
    reference_activity_bq: float
    reference_activity_uncertainty_bq: float
    reference_date: date
    measurement_date: date
    run_time_s: float
    run_time_uncertainty_s: float = 0.0

    def __post_init__(self) -> None:
        if self.run_time_s <= 0.0:
            raise ValueError("run_time_s must be positive")
        if self.reference_activity_uncertainty_bq < 0.0:
            raise ValueError("reference_activity_uncertainty_bq must be non-negative")
        if self.run_time_uncertainty_s < 0.0:
            raise ValueError("run_time_uncertainty_s must be non-negative")
        if self.run_time_uncertainty_s == 0.0:
            self.run_time_uncertainty_s = DEFAULT_RUN_TIME_UNCERTAINTY_S

    def source(self) -> Isotope:
        """Return the library entry of the calibration source."""
        return get_isotope(self.isotope)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reference_date"] = self.reference_date.isoformat()
        data["measurement_date"] = self.measurement_date.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunMetadata":
        values = dict(data)
        for key in ("reference_date", "measurement_date"):
            if isinstance(values.get(key), str):
                values[key] = date.fromisoformat(values[key])
        return cls(**values)


def load_run_metadata(path: str | Path) -> RunMetadata:
    """Read run metadata from a JSON file with ISO-formatted dates."""
    with Path(path).open("r", encoding="utf-8") as f:
        return RunMetadata.from_dict(json.load(f))


@dataclass
class SessionConfig:
    """ピーク探索とピークフィットの設定。"""

    sensitivity: float = DEFAULT_SENSITIVITY
    fit_half_window: float = PEAK_FIT_HALF_WINDOW
    carry_background_seed: bool = True  # seed each fit with the previous background
