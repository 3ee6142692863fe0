"""
TrainingJobMonitor - watches a detached training process on the instance.

Each ``tick`` reads the log tail and the process state in a single remote
command, persists progress, feeds the stall detector and checks the
soft/hard deadlines. All cross-tick memory lives in ``MonitorState`` so a
tick can be driven directly with synthetic time and output.
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Tuple

from app.config import settings
from app.services.exceptions import RemoteCommandTimeout, RemoteUnreachableError
from app.services.remote_executor import INSTANCE_GONE
from app.services.stall_detector import StallDetector, StallVerdict
from app.services.training_output_parser import ParsedProgress, TrainingOutputParser
from models.training_job import TrainingJob
from scripts.utils import format_duration, utc_now

STATE_MARKER = "__TK_STATE__"
# Trainer-reported totals below this share of the requested steps belong to
# some other progress bar (sampling, caching), not to training
MIN_TOTAL_STEPS_RATIO = 0.5


class TickOutcome(str, Enum):
    CONTINUE = "continue"
    FINISHED = "finished"
    PROCESS_FAILED = "process_failed"
    STALL_TIMEOUT = "stall_timeout"
    HARD_TIMEOUT = "hard_timeout"
    INSTANCE_LOST = "instance_lost"


@dataclass
class TickResult:
    outcome: TickOutcome
    detail: Optional[str] = None
    progress: Optional[ParsedProgress] = None
    verdict: Optional[StallVerdict] = None
    exit_code: Optional[int] = None


@dataclass
class RemoteJobPaths:
    """Where a job lives on the instance."""

    root: str
    dataset_dir: str
    output_dir: str
    log_file: str
    pid_file: str
    exit_file: str

    @classmethod
    def for_job(cls, job_id, workdir: Optional[str] = None) -> "RemoteJobPaths":
        root = f"{(workdir or settings.remote_workdir).rstrip('/')}/{job_id}"
        return cls(
            root=root,
            dataset_dir=f"{root}/dataset",
            output_dir=f"{root}/output",
            log_file=f"{root}/train.log",
            pid_file=f"{root}/train.pid",
            exit_file=f"{root}/train.exit",
        )


@dataclass
class MonitorState:
    detector: StallDetector = field(default_factory=StallDetector)
    stall_detected_at: Optional[datetime] = None
    stall_notified: bool = False
    soft_timeout_notified: bool = False
    last_step: Optional[int] = None
    ticks: int = 0
    unreachable_ticks: int = 0
    errors: List[str] = field(default_factory=list)


def build_poll_command(paths: RemoteJobPaths, tail_lines: int) -> str:
    log = shlex.quote(paths.log_file)
    pid = shlex.quote(paths.pid_file)
    exit_file = shlex.quote(paths.exit_file)
    return (
        f"tail -n {tail_lines} {log} 2>/dev/null; echo '{STATE_MARKER}'; "
        f"if [ -f {exit_file} ]; then echo \"exited $(cat {exit_file})\"; "
        f"elif kill -0 $(cat {pid} 2>/dev/null) 2>/dev/null; then echo running; "
        f"else echo missing; fi"
    )


def parse_poll_output(stdout: str) -> Tuple[str, str, Optional[int]]:
    """Split poll output into (log text, process state, exit code)."""
    log_text, sep, state_text = stdout.rpartition(STATE_MARKER)
    if not sep:
        return stdout, "unknown", None

    state_line = state_text.strip().splitlines()[0] if state_text.strip() else "unknown"
    if state_line.startswith("exited"):
        raw = state_line[len("exited"):].strip()
        try:
            return log_text, "exited", int(raw)
        except ValueError:
            return log_text, "exited", None
    return log_text, state_line, None


class TrainingJobMonitor:
    """Polls one job until training ends, stalls, runs out of budget or the
    instance disappears."""

    def __init__(
        self,
        job: TrainingJob,
        remote,
        job_store,
        notifier,
        paths: Optional[RemoteJobPaths] = None,
        parser: Optional[TrainingOutputParser] = None,
        state: Optional[MonitorState] = None,
        poll_interval: Optional[float] = None,
        tail_lines: Optional[int] = None,
        grace_period: Optional[timedelta] = None,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.job = job
        self.remote = remote
        self.job_store = job_store
        self.notifier = notifier
        self.paths = paths or RemoteJobPaths.for_job(job.id)
        self.parser = parser or TrainingOutputParser()
        self.state = state or MonitorState(soft_timeout_notified=bool(job.soft_timeout_notified))
        self.poll_interval = poll_interval or settings.monitor_poll_interval_seconds
        self.tail_lines = tail_lines or settings.monitor_tail_lines
        self.grace_period = grace_period or timedelta(seconds=settings.stall_grace_period_seconds)
        self._sleep = sleep
        self._clock = clock
        self.logger = logging.getLogger("TrainingJobMonitor")

    async def run(self) -> TickResult:
        """Tick until the outcome is anything other than CONTINUE."""
        self.logger.info(f"👀 Monitoring job {self.job.id} every {self.poll_interval}s")
        while True:
            result = await self.tick()
            if result.outcome != TickOutcome.CONTINUE:
                self.logger.info(f"🏁 Monitoring of job {self.job.id} ended: {result.outcome.value}")
                return result
            await self._sleep(self.poll_interval)

    async def tick(self, now: Optional[datetime] = None) -> TickResult:
        now = now or self._clock()
        self.state.ticks += 1

        try:
            output = await self.remote.run(build_poll_command(self.paths, self.tail_lines), check=False)
        except (RemoteUnreachableError, RemoteCommandTimeout) as e:
            return await self._handle_unreachable(e, now)

        self.state.unreachable_ticks = 0
        log_text, process_state, exit_code = parse_poll_output(output.stdout)

        progress = self.parser.parse(log_text)
        await self._record_progress(progress, now)
        if progress.errors:
            self.state.errors = progress.errors[-5:]

        if process_state == "exited":
            if exit_code == 0:
                return TickResult(TickOutcome.FINISHED, progress=progress, exit_code=0)
            return TickResult(
                TickOutcome.PROCESS_FAILED,
                detail=self._failure_detail(f"Training exited with status {exit_code}"),
                progress=progress,
                exit_code=exit_code,
            )
        if process_state == "missing":
            return TickResult(
                TickOutcome.PROCESS_FAILED,
                detail=self._failure_detail("Training process disappeared without an exit status"),
                progress=progress,
            )

        hard = self._check_hard_timeout(now)
        if hard:
            hard.progress = progress
            return hard

        self._check_soft_timeout(now)
        await self._persist_soft_timeout_flag()

        verdict = self.state.detector.analyze()
        stalled = await self._handle_stall(verdict, now)
        if stalled:
            stalled.progress = progress
            return stalled

        return TickResult(TickOutcome.CONTINUE, progress=progress, verdict=verdict)

    # ==================== Steps ====================

    async def _handle_unreachable(self, error: Exception, now: datetime) -> TickResult:
        self.state.unreachable_ticks += 1
        state = await self.remote.check_instance(self.job.instance_id)
        if state == INSTANCE_GONE:
            return TickResult(
                TickOutcome.INSTANCE_LOST,
                detail=f"Instance {self.job.instance_id} gone while unreachable: {error}",
            )

        hard = self._check_hard_timeout(now)
        if hard:
            return hard

        self.logger.warning(
            f"🔌 Job {self.job.id} unreachable (tick {self.state.unreachable_ticks}), "
            f"instance {state}; skipping tick"
        )
        await self.job_store.touch(self.job.id)
        return TickResult(TickOutcome.CONTINUE, detail=str(error))

    async def _record_progress(self, progress: ParsedProgress, now: datetime) -> None:
        total = progress.total_steps or self.job.steps
        accepted = progress.has_progress and total >= self.job.steps * MIN_TOTAL_STEPS_RATIO
        if not accepted:
            await self.job_store.touch(self.job.id)
            return

        await self.job_store.update_progress(self.job.id, progress.last_step, total, progress.last_loss)
        self.state.detector.record_sample(
            step=progress.last_step,
            eta_seconds=progress.eta_seconds,
            steps_per_second=progress.steps_per_second,
            total_steps=total,
            timestamp=now,
        )
        if progress.last_step != self.state.last_step:
            self.logger.info(
                f"📈 Job {self.job.id}: step {progress.last_step}/{total}"
                + (f" loss={progress.last_loss:.4f}" if progress.last_loss is not None else "")
            )
        self.state.last_step = progress.last_step

    def _check_hard_timeout(self, now: datetime) -> Optional[TickResult]:
        if self.job.hard_timeout_at and now >= self.job.hard_timeout_at:
            return TickResult(
                TickOutcome.HARD_TIMEOUT,
                detail=f"Prepaid runtime exhausted at {self.job.hard_timeout_at.isoformat()}",
            )
        return None

    def _check_soft_timeout(self, now: datetime) -> None:
        if self.state.soft_timeout_notified or not self.job.soft_timeout_at:
            return
        if now < self.job.soft_timeout_at:
            return

        self.state.soft_timeout_notified = True
        remaining = ""
        if self.job.hard_timeout_at:
            remaining = f" It will be stopped in {format_duration((self.job.hard_timeout_at - now).total_seconds())} if it has not finished."
        self.notifier.notify_user(
            self.job.user_id,
            f"Training '{self.job.model_name}' is taking longer than estimated.{remaining}",
            severity="warning",
        )
        self.notifier.notify_ops(
            f"Job {self.job.id} passed its soft timeout",
            severity="warning",
            data={"instance_id": self.job.instance_id, "step": self.state.last_step},
        )

    async def _persist_soft_timeout_flag(self) -> None:
        if self.state.soft_timeout_notified and not self.job.soft_timeout_notified:
            await self.job_store.mark_soft_timeout_notified(self.job.id)
            self.job.soft_timeout_notified = True

    async def _handle_stall(self, verdict: StallVerdict, now: datetime) -> Optional[TickResult]:
        if not verdict.is_stalling:
            if self.state.stall_detected_at is not None:
                self.logger.info(f"✅ Job {self.job.id} recovered from stall")
            self.state.stall_detected_at = None
            self.state.stall_notified = False
            return None

        if self.state.stall_detected_at is None:
            self.state.stall_detected_at = now
            self.logger.warning(f"🐌 Stall detected on job {self.job.id} ({verdict.confidence}): {verdict.reason}")

        if not self.state.stall_notified:
            self.state.stall_notified = True
            self.notifier.notify_user(
                self.job.user_id,
                f"Training '{self.job.model_name}' has slowed down and may be stuck. "
                f"It will be stopped in {format_duration(self.grace_period.total_seconds())} "
                f"unless it recovers.",
                severity="warning",
            )
            self.notifier.notify_ops(
                f"Stall detected on job {self.job.id}",
                severity="warning",
                data={
                    "confidence": verdict.confidence,
                    "reason": verdict.reason,
                    "instance_id": self.job.instance_id,
                },
            )
            return None

        if now - self.state.stall_detected_at >= self.grace_period:
            return TickResult(
                TickOutcome.STALL_TIMEOUT,
                detail=f"Still stalling after {format_duration(self.grace_period.total_seconds())} grace: {verdict.reason}",
                verdict=verdict,
            )
        return None

    def _failure_detail(self, headline: str) -> str:
        if self.state.errors:
            return f"{headline}: {self.state.errors[-1]}"
        return headline
