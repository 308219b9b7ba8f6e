"""校正セッションの状態遷移と合成スペクトルでの一連の処理を検証するテスト。"""

from datetime import date

import numpy as np
import pytest

from pipeline.config import RunMetadata, SessionConfig
from pipeline.session import CalibrationSession, ReviewAction, ReviewDecision, SessionState
from spectrum.errors import InsufficientMatches, SessionStateError
from spectrum.histogram import Histogram
from spectrum.peak_detection import DEFAULT_SENSITIVITY
from spectrum.synthetic import SyntheticSpectrumConfig, simulate_calibration_spectrum


def _run(isotope: str) -> RunMetadata:
    return RunMetadata(
        isotope=isotope,
        reference_activity_bq=10000.0,
        reference_activity_uncertainty_bq=200.0,
        reference_date=date(2021, 11, 1),
        measurement_date=date(2021, 11, 11),
        run_time_s=3600.0,
    )


def _session(isotope: str):
    """減衰後の放射能で雑音なしスペクトルを作り、セッションを返す。"""
    run = _run(isotope)
    decayed = CalibrationSession(Histogram(counts=np.ones(10)), run)
    cfg = SyntheticSpectrumConfig(live_time_s=run.run_time_s, activity_bq=decayed.activity.activity_bq)
    synthetic = simulate_calibration_spectrum(run.source(), cfg)
    return CalibrationSession(synthetic.histogram, run), synthetic


@pytest.fixture
def co60_session():
    return _session("60Co")


def test_co60_end_to_end(co60_session):
    """60Co: 後方散乱ピークを落として校正し、2本の効率点を得る。"""
    session, synthetic = co60_session
    session.search()
    matches = session.correlate()
    assert session.state is SessionState.CORRELATING
    assert [m.energy_keV for m in matches] == [1173.228, 1332.490, 1460.821, 2505.72, 2614.532]
    assert session.dropped
    assert session.candidates[0].position == pytest.approx(2 * 1173.228, abs=1.0)
    assert session.calibration.slope == pytest.approx(0.5, rel=1e-3)
    assert session.calibration.intercept == pytest.approx(0.0, abs=1.5)

    fitted = session.review_all()
    assert len(fitted) == len(matches)
    assert [fp.match_index for fp in fitted] == list(range(len(matches)))
    assert session.state is SessionState.FITTING

    points, curve = session.compute_efficiency()
    assert session.state is SessionState.COMPUTING_EFFICIENCY
    assert [p.energy_keV for p in points] == [1173.228, 1332.490]
    for p in points:
        assert p.efficiency == pytest.approx(synthetic.true_efficiency[p.energy_keV], rel=0.03)
        assert p.efficiency_uncertainty > 0.0
    assert curve(1173.228) == pytest.approx(points[0].efficiency, rel=1e-3)


def test_eu152_end_to_end():
    """152Eu: 11本全てが同定され、効率点が真値に近い。"""
    session, synthetic = _session("152Eu")
    session.search()
    matches = session.correlate()
    assert len(matches) == 11
    session.review_all()
    points, curve = session.compute_efficiency()
    assert len(points) == 11
    for p in points:
        assert p.efficiency == pytest.approx(synthetic.true_efficiency[p.energy_keV], rel=0.03)
    assert curve.energy_range_keV == (121.782, 1408.005)
    assert np.all(np.isfinite(curve.parameters))


def test_reset_clears_later_stages(co60_session):
    session, _ = co60_session
    session.search()
    session.correlate()
    session.review_all()
    session.compute_efficiency()

    session.reset(SessionState.CORRELATING)
    assert session.state is SessionState.CORRELATING
    assert session.efficiency_points == [] and session.efficiency_curve is None
    assert session.fitted_peaks == [] and session.peak_fits == []
    assert session.matches and session.calibration is not None

    n_candidates = len(session.candidates)
    session.back()
    assert session.state is SessionState.SEARCHING
    assert session.matches == [] and session.calibration is None
    assert len(session.candidates) == n_candidates


def test_out_of_order_operations_raise(co60_session):
    """前段の処理を終えずに次の段を呼ぶとSessionStateErrorになる。"""
    session, _ = co60_session
    with pytest.raises(SessionStateError):
        session.correlate()
    session.search()
    with pytest.raises(SessionStateError):
        session.review_peaks()
    with pytest.raises(SessionStateError):
        session.compute_efficiency()
    session.correlate()
    with pytest.raises(SessionStateError):
        session.delete_candidate(0)
    review = session.review_peaks()
    next(review)
    with pytest.raises(SessionStateError):
        session.compute_efficiency()
    with pytest.raises(SessionStateError):
        session.delete_match(0)


def test_review_decisions(co60_session):
    """承認・手動面積・棄却の判断がそれぞれ反映される。"""
    session, _ = co60_session
    session.search()
    session.correlate()
    review = session.review_peaks()
    first = next(review)
    assert first.area_ok
    review.send(ReviewDecision.reject())
    review.send(ReviewDecision.override(1234.0))
    review.send(ReviewDecision.override(1000.0, energy_axis=True))
    review.send(ReviewDecision.approve())
    with pytest.raises(StopIteration):
        review.send(ReviewDecision.reject())

    assert len(session.peak_fits) == 5
    manual, manual_kev, approved = session.fitted_peaks
    assert manual.manual and manual.area == 1234.0 and manual.match_index == 1
    assert manual_kev.area == pytest.approx(1000.0 / session.calibration.slope)
    assert not approved.manual and approved.match_index == 3
    assert approved.area == session.peak_fits[3].area

    points, _ = session.compute_efficiency()
    assert [p.energy_keV for p in points] == [1332.490]
    assert points[0].area == 1234.0


def test_override_requires_positive_area():
    with pytest.raises(ValueError):
        ReviewDecision.override(0.0)
    assert ReviewDecision.override(5.0).action is ReviewAction.OVERRIDE


def test_restarting_review_discards_earlier_fits(co60_session):
    session, _ = co60_session
    session.search()
    session.correlate()
    review = session.review_peaks()
    next(review)
    review.send(None)
    assert len(session.fitted_peaks) == 1
    session.review_all(lambda fit: ReviewDecision.reject())
    assert session.fitted_peaks == []
    with pytest.raises(SessionStateError):
        session.compute_efficiency()


def test_delete_match_and_recalibrate(co60_session):
    session, _ = co60_session
    session.search()
    session.correlate()
    removed = session.delete_match(4)
    assert removed.energy_keV == 2614.532
    cal = session.recalibrate()
    assert cal.slope == pytest.approx(0.5, rel=1e-3)
    assert len(session.review_all()) == 4


def test_failed_correlation_keeps_candidates():
    """相関に失敗しても候補ピークは残り、探索段に留まる。"""
    centers = np.arange(2000) + 0.5
    counts = 5.0 + 1000.0 * np.exp(-0.5 * ((centers - 200.5) / 2.0) ** 2)
    counts += 800.0 * np.exp(-0.5 * ((centers - 700.5) / 2.0) ** 2)
    session = CalibrationSession(Histogram(counts=counts), _run("60Co"))
    candidates = session.search()
    assert len(candidates) == 2
    with pytest.raises(InsufficientMatches):
        session.correlate()
    assert session.state is SessionState.SEARCHING
    assert session.candidates == candidates
    assert session.calibration is None


def test_delete_candidate(co60_session):
    session, _ = co60_session
    candidates = session.search()
    removed = session.delete_candidate(0)
    assert removed == candidates[0]
    assert len(session.candidates) == len(candidates) - 1
    session.candidates = session.candidates[:1]
    with pytest.raises(ValueError):
        session.delete_candidate(0)


def test_reset_cannot_skip_ahead(co60_session):
    """先の段へのresetは拒否され、状態もデータも変わらない。"""
    session, _ = co60_session
    with pytest.raises(SessionStateError):
        session.reset(SessionState.FITTING)
    assert session.state is SessionState.SEARCHING
    assert session.calibration is None
    with pytest.raises(SessionStateError):
        session.review_peaks()


def test_review_needs_calibration(co60_session):
    session, _ = co60_session
    session.search()
    session.correlate()
    session.calibration = None
    with pytest.raises(SessionStateError):
        session.review_peaks()


def test_search_sensitivity_does_not_touch_shared_config(co60_session):
    """セッション間で共有した設定は探索感度の変更で書き換わらない。"""
    _, synthetic = co60_session
    shared = SessionConfig()
    first = CalibrationSession(synthetic.histogram, _run("60Co"), shared)
    second = CalibrationSession(synthetic.histogram, _run("60Co"), shared)
    first.search(sensitivity=0.01)
    assert first.config.sensitivity == 0.01
    assert shared.sensitivity == DEFAULT_SENSITIVITY
    assert second.config.sensitivity == DEFAULT_SENSITIVITY


def test_efficiency_points_keep_match_index(co60_session):
    session, _ = co60_session
    session.search()
    session.correlate()
    session.review_all()
    points, _ = session.compute_efficiency()
    assert [p.match_index for p in points] == [0, 1]
    for p in points:
        assert session.fitted_peaks[p.match_index].area == p.area
