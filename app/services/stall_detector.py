"""
StallDetector - flag training whose ETA has stopped converging.

Healthy training sees its ETA fall roughly one second per second of wall
clock. A run that keeps stepping while its ETA stays flat (or grows) is
stalling: step 3500/4000 says "2 hours remaining" just like step 3000 did.
A throughput drop from the observed peak reinforces the diagnosis but on
its own is only a warning.

The detector is advisory. It holds samples and answers ``analyze()``; grace
periods and termination belong to the monitoring loop.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, List, Optional

from app.config import settings
from scripts.utils import format_duration, utc_now

CONFIDENCE_NONE = "none"
CONFIDENCE_LOW = "low"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_HIGH = "high"

RECOMMEND_CONTINUE = "continue"
RECOMMEND_WATCH = "watch"
RECOMMEND_ALERT = "alert"


@dataclass
class Sample:
    timestamp: datetime
    step: Optional[int]
    eta_seconds: Optional[float]
    steps_per_second: Optional[float]
    total_steps: Optional[int] = None


@dataclass
class StallVerdict:
    is_stalling: bool = False
    confidence: str = CONFIDENCE_NONE
    reason: Optional[str] = None
    recommendation: str = RECOMMEND_CONTINUE
    convergence_ratio: Optional[float] = None
    signals: Dict[str, bool] = field(
        default_factory=lambda: {"eta_not_converging": False, "speed_dropping": False}
    )
    sample_count: int = 0
    current_step: Optional[int] = None


class StallDetector:
    def __init__(
        self,
        min_samples: Optional[int] = None,
        window_size: Optional[int] = None,
        convergence_threshold: Optional[float] = None,
        speed_drop_threshold: Optional[float] = None,
    ):
        self.min_samples = min_samples or settings.stall_min_samples
        self.window_size = window_size or settings.stall_window_size
        self.convergence_threshold = (
            convergence_threshold if convergence_threshold is not None else settings.stall_convergence_threshold
        )
        self.speed_drop_threshold = (
            speed_drop_threshold if speed_drop_threshold is not None else settings.stall_speed_drop_threshold
        )
        self.samples: Deque[Sample] = deque(maxlen=self.window_size)
        self.peak_speed: Optional[float] = None
        self.logger = logging.getLogger("StallDetector")

    def record_sample(
        self,
        step: Optional[int],
        eta_seconds: Optional[float],
        steps_per_second: Optional[float] = None,
        total_steps: Optional[int] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        if steps_per_second is not None and (self.peak_speed is None or steps_per_second > self.peak_speed):
            self.peak_speed = steps_per_second

        self.samples.append(
            Sample(
                timestamp=timestamp or utc_now(),
                step=step,
                eta_seconds=eta_seconds,
                steps_per_second=steps_per_second,
                total_steps=total_steps,
            )
        )

    def reset(self) -> None:
        self.samples.clear()
        self.peak_speed = None

    def analyze(self) -> StallVerdict:
        verdict = StallVerdict(sample_count=len(self.samples))
        if self.samples:
            verdict.current_step = self.samples[-1].step

        with_eta = [s for s in self.samples if s.eta_seconds is not None]
        if len(with_eta) < self.min_samples:
            verdict.reason = f"Insufficient samples ({len(with_eta)}/{self.min_samples})"
            return verdict

        eta_reason, ratio = self._eta_convergence(with_eta)
        speed_reason = self._speed_drop()
        verdict.convergence_ratio = ratio
        verdict.signals["eta_not_converging"] = eta_reason is not None
        verdict.signals["speed_dropping"] = speed_reason is not None

        if eta_reason and speed_reason:
            verdict.is_stalling = True
            verdict.confidence = CONFIDENCE_HIGH
            verdict.reason = f"{eta_reason}; {speed_reason}"
        elif eta_reason:
            verdict.is_stalling = True
            verdict.confidence = CONFIDENCE_MEDIUM
            verdict.reason = eta_reason
        elif speed_reason:
            verdict.confidence = CONFIDENCE_LOW
            verdict.reason = speed_reason

        if verdict.is_stalling:
            verdict.recommendation = RECOMMEND_ALERT
        elif verdict.confidence == CONFIDENCE_LOW:
            verdict.recommendation = RECOMMEND_WATCH
        return verdict

    def _eta_convergence(self, with_eta: List[Sample]):
        """Returns (reason or None, overall ratio).

        Only the trailing ``min_samples`` ETA samples are judged, and every
        interval among them must be below the threshold.
        """
        window = with_eta[-self.min_samples:]
        oldest, newest = window[0], window[-1]
        elapsed = (newest.timestamp - oldest.timestamp).total_seconds()
        decrease = oldest.eta_seconds - newest.eta_seconds
        ratio = decrease / elapsed if elapsed > 0 else 1.0

        for older, newer in zip(window, window[1:]):
            span = (newer.timestamp - older.timestamp).total_seconds()
            if span <= 0:
                continue
            if (older.eta_seconds - newer.eta_seconds) / span >= self.convergence_threshold:
                return None, ratio

        if ratio >= self.convergence_threshold:
            return None, ratio

        change = (
            f"decreased by {format_duration(decrease)}"
            if decrease >= 0
            else f"increased by {format_duration(-decrease)}"
        )
        reason = (
            f"ETA not converging: {change} over {format_duration(elapsed)} "
            f"(expected ~{format_duration(elapsed)} decrease)"
        )
        return reason, ratio

    def _speed_drop(self) -> Optional[str]:
        if not self.peak_speed:
            return None
        with_speed = [s for s in self.samples if s.steps_per_second is not None]
        if len(with_speed) < 2:
            return None

        latest = with_speed[-1].steps_per_second
        drop_ratio = latest / self.peak_speed
        if drop_ratio >= 1 - self.speed_drop_threshold:
            return None
        return (
            f"Speed dropped {(1 - drop_ratio) * 100:.0f}% from peak "
            f"({self.peak_speed:.2f} -> {latest:.2f} steps/sec)"
        )
