"""Detector efficiency calibration from a calibration-source gamma spectrum.

Run `python main.py` to simulate an uncalibrated 152Eu spectrum, find its peaks,
correlate them with the literature lines, calibrate the energy axis, fit every
identified photopeak and derive the detector efficiency curve.

Notes:
- Pass --spectrum to analyse a measured spectrum instead (a .npy array or a
  whitespace-separated text file with one count per channel).
- Run metadata can come from a JSON file (--run-config) or from the flags.
- Every peak whose fit converged is approved; failed fits are skipped.
"""

from __future__ import annotations

import argparse
import json
import logging
from datetime import date
from pathlib import Path
import sys

import numpy as np

# Ensure src/ is on sys.path for direct script execution.
ROOT = Path(__file__).resolve().parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

RESULTS_DIR = ROOT / "results"

from efficiency.activity import activity_at
from pipeline.config import RunMetadata, SessionConfig, load_run_metadata
from pipeline.session import CalibrationSession
from spectrum.errors import CalibrationError
from spectrum.histogram import Histogram
from spectrum.library import available_isotopes
from spectrum.peak_detection import DEFAULT_SENSITIVITY
from spectrum.synthetic import SyntheticSpectrumConfig, simulate_calibration_spectrum


def _load_histogram(path: Path) -> Histogram:
    """Read a counts-per-channel array."""
    if path.suffix == ".npy":
        counts = np.load(path)
    else:
        counts = np.loadtxt(path)
    return Histogram(counts=np.asarray(counts, dtype=float).ravel())


def _run_metadata_from_args(args: argparse.Namespace) -> RunMetadata:
    if args.run_config is not None:
        return load_run_metadata(args.run_config)
    return RunMetadata(
        isotope=args.isotope,
        reference_activity_bq=args.reference_activity,
        reference_activity_uncertainty_bq=args.reference_activity_uncertainty,
        reference_date=date.fromisoformat(args.reference_date),
        measurement_date=date.fromisoformat(args.measurement_date),
        run_time_s=args.run_time,
        run_time_uncertainty_s=args.run_time_uncertainty,
    )


def _simulated_histogram(run: RunMetadata, seed: int | None) -> Histogram:
    """Simulate the run with the decayed source activity."""
    isotope = run.source()
    record = activity_at(
        run.reference_activity_bq,
        run.reference_activity_uncertainty_bq,
        run.reference_date,
        run.measurement_date,
        isotope,
    )
    cfg = SyntheticSpectrumConfig(live_time_s=run.run_time_s, activity_bq=record.activity_bq)
    rng = np.random.default_rng(seed) if seed is not None else None
    return simulate_calibration_spectrum(isotope, cfg, rng=rng).histogram


def _summary(session: CalibrationSession) -> dict:
    cal = session.calibration
    curve = session.efficiency_curve
    return {
        "run": session.run.to_dict(),
        "activity_bq": session.activity.activity_bq,
        "activity_uncertainty_bq": session.activity.uncertainty_bq,
        "calibration": {"slope": cal.slope, "intercept": cal.intercept} if cal is not None else None,
        "matches": [
            {"channel": m.channel, "energy_keV": m.energy_keV, "height": m.height} for m in session.matches
        ],
        "efficiency_points": [
            {
                "energy_keV": p.energy_keV,
                "efficiency": p.efficiency,
                "efficiency_uncertainty": p.efficiency_uncertainty,
                "area": p.area,
            }
            for p in session.efficiency_points
        ],
        "efficiency_curve": list(curve.parameters) if curve is not None else None,
    }


def run_calibration(args: argparse.Namespace) -> int:
    """Run the whole pipeline non-interactively; return a process exit code."""
    run = _run_metadata_from_args(args)
    try:
        if args.spectrum is not None:
            histogram = _load_histogram(Path(args.spectrum))
        else:
            histogram = _simulated_histogram(run, args.seed)
        session = CalibrationSession(histogram, run, SessionConfig(sensitivity=args.sensitivity))
    except CalibrationError as exc:
        print(f"Activity computation failed: {exc}")
        return 1
    print(f"Activity at the time of the measurement: {session.activity.activity_bq:.2f} +/- {session.activity.uncertainty_bq:.2f} Bq")

    candidates = session.search()
    print(f"Found {len(candidates)} candidate peaks")
    try:
        matches = session.correlate()
    except CalibrationError as exc:
        print(f"Correlation failed: {exc}")
        return 1
    for m in matches:
        print(f"  {m.channel:.1f} ch = {m.energy_keV:.3f} keV")
    print(f"E (keV) = {session.calibration.slope:f} * ch + {session.calibration.intercept:f}")

    fitted = session.review_all()
    for fp in fitted:
        print(f"Peak at Energy = {fp.energy_keV:.3f} keV. Area = {fp.area:.1f}")
    try:
        points, curve = session.compute_efficiency()
    except (CalibrationError, ValueError) as exc:
        print(f"Efficiency computation failed: {exc}")
        return 1
    for p in points:
        print(f"Energy: {p.energy_keV:.3f} keV  Efficiency: {p.efficiency:.5g} +/- {p.efficiency_uncertainty:.2g}")
    print(curve.formula())

    if args.output is not None:
        out_path = Path(args.output)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with out_path.open("w", encoding="utf-8") as f:
            json.dump(_summary(session), f, indent=2)
        print(f"Saved results to: {out_path}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Detector efficiency calibration from a calibration-source spectrum.")
    parser.add_argument("--isotope", choices=available_isotopes(), default="152Eu", help="Calibration source.")
    parser.add_argument("--spectrum", default=None, help="Counts per channel (.npy or text). Simulated if omitted.")
    parser.add_argument("--run-config", default=None, help="JSON file with the run metadata (overrides the flags below).")
    parser.add_argument("--reference-activity", type=float, default=10000.0, help="Reference activity in Bq.")
    parser.add_argument("--reference-activity-uncertainty", type=float, default=200.0, help="Uncertainty in Bq.")
    parser.add_argument("--reference-date", default="2021-11-01", help="Date of the reference activity (YYYY-MM-DD).")
    parser.add_argument("--measurement-date", default="2021-11-11", help="Date of the calibration run (YYYY-MM-DD).")
    parser.add_argument("--run-time", type=float, default=3600.0, help="Run length in seconds.")
    parser.add_argument("--run-time-uncertainty", type=float, default=0.0, help="Run length uncertainty (0 means 1 s).")
    parser.add_argument(
        "--sensitivity",
        type=float,
        default=DEFAULT_SENSITIVITY,
        help="Peak search sensitivity, smallest/biggest peak height (smaller = more sensitive).",
    )
    parser.add_argument("--seed", type=int, default=0, help="Poisson noise seed for the simulated spectrum.")
    parser.add_argument("--output", default=None, help=f"Write a JSON summary, e.g. {RESULTS_DIR / 'efficiency.json'}.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log pipeline progress.")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    sys.exit(run_calibration(args))


if __name__ == "__main__":
    main()
