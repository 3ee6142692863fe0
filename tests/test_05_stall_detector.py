"""
Phase 5: Stall Detector

Tests for StallDetector:
1. Flat/growing ETA with a throughput collapse -> high confidence
2. Flat ETA at steady speed -> medium confidence
3. Speed drop alone -> low confidence, watch
4. Healthy convergence and too-few samples -> no stall

Run: pytest tests/test_05_stall_detector.py
"""

import os
import sys
from datetime import timedelta

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.services.stall_detector import (
    CONFIDENCE_HIGH,
    CONFIDENCE_LOW,
    CONFIDENCE_MEDIUM,
    CONFIDENCE_NONE,
    RECOMMEND_ALERT,
    RECOMMEND_CONTINUE,
    RECOMMEND_WATCH,
    StallDetector,
)
from scripts.utils import utc_now

T0 = utc_now()


def feed(detector: StallDetector, etas, speeds, minutes_apart: int = 30):
    for i, (eta, speed) in enumerate(zip(etas, speeds)):
        detector.record_sample(
            step=1000 + i * 100,
            eta_seconds=eta,
            steps_per_second=speed,
            total_steps=4000,
            timestamp=T0 + timedelta(minutes=i * minutes_apart),
        )


def make_detector() -> StallDetector:
    return StallDetector(min_samples=4, window_size=20, convergence_threshold=0.5, speed_drop_threshold=0.5)


def test_insufficient_samples():
    detector = make_detector()
    feed(detector, [7200, 7200, 7200], [1.0, 1.0, 1.0])
    verdict = detector.analyze()
    assert not verdict.is_stalling
    assert verdict.confidence == CONFIDENCE_NONE
    assert "Insufficient" in verdict.reason


def test_eta_flat_and_speed_collapsed_is_high():
    detector = make_detector()
    feed(detector, [7200, 7100, 7200, 7500], [1.0, 0.8, 0.5, 0.3])
    verdict = detector.analyze()

    assert verdict.is_stalling
    assert verdict.confidence == CONFIDENCE_HIGH
    assert verdict.recommendation == RECOMMEND_ALERT
    assert verdict.signals == {"eta_not_converging": True, "speed_dropping": True}
    assert verdict.convergence_ratio < 0
    assert verdict.current_step == 1300


def test_eta_flat_at_steady_speed_is_medium():
    detector = make_detector()
    feed(detector, [7200, 7100, 7200, 7500], [1.0, 1.0, 1.0, 1.0])
    verdict = detector.analyze()

    assert verdict.is_stalling
    assert verdict.confidence == CONFIDENCE_MEDIUM
    assert verdict.signals["eta_not_converging"]
    assert not verdict.signals["speed_dropping"]


def test_healthy_convergence():
    detector = make_detector()
    feed(detector, [7200, 5400, 3600, 1800], [1.0, 1.0, 1.0, 1.0])
    verdict = detector.analyze()

    assert not verdict.is_stalling
    assert verdict.recommendation == RECOMMEND_CONTINUE
    assert verdict.convergence_ratio == 1.0


def test_speed_drop_alone_is_low_watch():
    detector = make_detector()
    feed(detector, [7200, 5400, 3600, 1800], [1.0, 0.8, 0.5, 0.3])
    verdict = detector.analyze()

    assert not verdict.is_stalling
    assert verdict.confidence == CONFIDENCE_LOW
    assert verdict.recommendation == RECOMMEND_WATCH


def test_one_healthy_interval_prevents_stall():
    detector = make_detector()
    feed(detector, [7200, 7150, 5200, 5150], [1.0, 1.0, 1.0, 1.0])
    assert not detector.analyze().is_stalling


def test_only_trailing_window_is_judged():
    detector = make_detector()
    # Early healthy progress followed by a flat stretch
    feed(detector, [9000, 7200, 5400, 3600, 3600, 3650, 3700], [1.0] * 7)
    verdict = detector.analyze()
    assert verdict.is_stalling
    assert verdict.confidence == CONFIDENCE_MEDIUM


def test_reset_clears_history():
    detector = make_detector()
    feed(detector, [7200, 7100, 7200, 7500], [1.0, 0.8, 0.5, 0.3])
    detector.reset()
    assert detector.peak_speed is None
    assert not detector.analyze().is_stalling
