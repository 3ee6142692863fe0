"""
InstanceSweeper - independent audit of jobs against live provider state.

Catches the cases the worker cannot fix itself:
  - a job ended but its instance was never confirmed destroyed
  - a job stopped heart-beating (worker crashed or hung)
  - a job is running well past its prepaid hard timeout
  - a labelled instance exists that no job knows about

Runs in its own process on its own clock and never creates anything. Jobs
it fails have their prepaid charge settled here, since no worker will.
The job store's conditional updates keep it out of a live worker's way.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from app.config import settings
from app.services.billing import BillingReconciler
from app.services.exceptions import TerminationFailedError
from app.services.termination_manager import TerminationManager
from models.training_job import FailureReason, TrainingJob
from scripts.utils import format_duration, utc_now
from scripts.vast_client import RUNNING_STATES


@dataclass
class SweepReport:
    started_at: datetime
    skipped: bool = False
    orphans_checked: int = 0
    orphans_recorded: List[str] = field(default_factory=list)
    terminated: List[Dict[str, Any]] = field(default_factory=list)
    stuck_failed: List[str] = field(default_factory=list)
    overdue_failed: List[str] = field(default_factory=list)
    settled: List[str] = field(default_factory=list)
    untracked: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "skipped": self.skipped,
            "orphans_checked": self.orphans_checked,
            "orphans_recorded": self.orphans_recorded,
            "terminated": self.terminated,
            "stuck_failed": self.stuck_failed,
            "overdue_failed": self.overdue_failed,
            "settled": self.settled,
            "untracked": self.untracked,
            "errors": self.errors,
        }


class InstanceSweeper:
    def __init__(
        self,
        job_store,
        provider,
        notifier,
        ledger=None,
        billing: Optional[BillingReconciler] = None,
        terminator: Optional[TerminationManager] = None,
        interval: Optional[float] = None,
        stuck_threshold: Optional[timedelta] = None,
        overdue_grace: Optional[timedelta] = None,
        untracked_grace: Optional[timedelta] = None,
        label_prefix: Optional[str] = None,
    ):
        self.job_store = job_store
        self.provider = provider
        self.notifier = notifier
        self.billing = billing or (BillingReconciler(job_store, ledger, notifier) if ledger is not None else None)
        self.terminator = terminator or TerminationManager(provider, job_store, notifier)
        self.interval = interval or settings.sweeper_interval_seconds
        self.stuck_threshold = stuck_threshold or timedelta(seconds=settings.stuck_job_threshold_seconds)
        self.overdue_grace = overdue_grace or timedelta(seconds=settings.overdue_grace_seconds)
        self.untracked_grace = untracked_grace or timedelta(seconds=settings.untracked_instance_grace_seconds)
        self.label_prefix = label_prefix or settings.instance_label_prefix
        self._sweeping = False
        self.logger = logging.getLogger("InstanceSweeper")

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        self.logger.info(
            f"🧹 Sweeper started (interval={self.interval}s, stuck after {format_duration(self.stuck_threshold.total_seconds())})"
        )
        while not stop_event.is_set():
            try:
                await self.sweep()
            except Exception as e:
                self.logger.exception("💥 Sweep failed")
                self.notifier.notify_ops("Sweep cycle failed", severity="error", data={"error": str(e)})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        self.logger.info("🛑 Sweeper stopped")

    async def sweep(self) -> SweepReport:
        report = SweepReport(started_at=utc_now())
        if self._sweeping:
            self.logger.debug("Sweep already in progress, skipping")
            report.skipped = True
            return report

        self._sweeping = True
        try:
            await self._sweep_orphans(report)
            await self._sweep_stuck(report)
            await self._sweep_overdue(report)
            await self._sweep_untracked(report)
        finally:
            self._sweeping = False

        if report.terminated or report.stuck_failed or report.overdue_failed or report.errors:
            self.logger.info(
                f"🧹 Sweep done: terminated={len(report.terminated)} stuck={len(report.stuck_failed)} "
                f"overdue={len(report.overdue_failed)} errors={len(report.errors)}"
            )
        else:
            self.logger.debug("Sweep done: nothing to clean")
        return report

    # ==================== Passes ====================

    async def _sweep_orphans(self, report: SweepReport) -> None:
        for job in await self.job_store.find_orphan_candidates():
            report.orphans_checked += 1
            try:
                status = await asyncio.to_thread(self.provider.get_instance_status, job.instance_id)
                if status in RUNNING_STATES:
                    self.notifier.notify_ops(
                        f"Orphan instance {job.instance_id} still running for {job.status.value} job {job.id}",
                        severity="critical",
                        data={"job_id": str(job.id), "instance_id": job.instance_id},
                    )
                    await self._terminate(job, job.instance_id, f"job {job.status.value}", report)
                else:
                    await self.job_store.mark_instance_terminated(job.id)
                    report.orphans_recorded.append(str(job.id))
                    self.logger.info(f"Instance {job.instance_id} of job {job.id} is {status or 'gone'}")
            except Exception as e:
                self._record_error(report, job, e)

    async def _sweep_stuck(self, report: SweepReport) -> None:
        cutoff = utc_now() - self.stuck_threshold
        for job in await self.job_store.find_stuck_jobs(self.stuck_threshold):
            try:
                idle = format_duration((utc_now() - job.updated_at).total_seconds()) if job.updated_at else "?"
                self.notifier.notify_ops(
                    f"Job {job.id} stuck in {job.status.value} (no heartbeat for {idle})",
                    severity="warning",
                    data={"job_id": str(job.id), "instance_id": job.instance_id},
                )
                # Fail first: a worker that heart-beats in the meantime keeps its job and instance
                failed = await self.job_store.mark_failed(
                    job.id,
                    FailureReason.STUCK_SWEEPER_CLEANUP,
                    f"No heartbeat for {idle} while {job.status.value}",
                    stale_before=cutoff,
                )
                if not failed:
                    self.logger.info(f"Job {job.id} reported in before cleanup, leaving it alone")
                    continue
                report.stuck_failed.append(str(job.id))
                await self._settle(job, FailureReason.STUCK_SWEEPER_CLEANUP, report)
                await self._terminate_if_running(job, "stuck job", report)
            except Exception as e:
                self._record_error(report, job, e)

    async def _sweep_overdue(self, report: SweepReport) -> None:
        for job in await self.job_store.find_overdue_jobs(self.overdue_grace):
            try:
                failed = await self.job_store.mark_failed(
                    job.id,
                    FailureReason.HARD_TIMEOUT,
                    f"Still {job.status.value} {format_duration(self.overdue_grace.total_seconds())} past hard timeout",
                )
                if not failed:
                    continue
                report.overdue_failed.append(str(job.id))
                self.notifier.notify_ops(
                    f"Job {job.id} ran past its hard timeout",
                    severity="error",
                    data={"job_id": str(job.id), "hard_timeout_at": job.hard_timeout_at.isoformat()},
                )
                await self._settle(job, FailureReason.HARD_TIMEOUT, report)
                await self._terminate_if_running(job, "past hard timeout", report)
            except Exception as e:
                self._record_error(report, job, e)

    async def _sweep_untracked(self, report: SweepReport) -> None:
        prefix = f"{self.label_prefix}-"
        now = utc_now()
        for instance in await asyncio.to_thread(self.provider.list_instances):
            label = instance.get("label") or ""
            status = instance.get("actual_status") or instance.get("cur_state")
            if not label.startswith(prefix) or status not in RUNNING_STATES:
                continue

            instance_id = str(instance["id"])
            try:
                if await self.job_store.find_by_instance_id(instance_id) is not None:
                    continue

                started = instance.get("start_date")
                age = now - datetime.fromtimestamp(float(started), tz=timezone.utc) if started else None
                report.untracked.append(instance_id)
                self.notifier.notify_ops(
                    f"Instance {instance_id} ({label}) has no job record",
                    severity="warning",
                    data={"instance_id": instance_id, "age": format_duration(age.total_seconds()) if age else None},
                )
                # Young instances may belong to a worker that has not persisted the id yet
                if age is not None and age > self.untracked_grace:
                    await self._terminate(None, instance_id, "untracked instance", report)
            except Exception as e:
                report.errors.append({"instance_id": instance_id, "error": str(e)})
                self.logger.error(f"❌ Error checking instance {instance_id}: {e}")

    # ==================== Helpers ====================

    async def _terminate_if_running(self, job: TrainingJob, reason: str, report: SweepReport) -> None:
        if not job.instance_id or job.instance_terminated_at is not None:
            return
        status = await asyncio.to_thread(self.provider.get_instance_status, job.instance_id)
        if status in RUNNING_STATES:
            await self._terminate(job, job.instance_id, reason, report)
        else:
            await self.job_store.mark_instance_terminated(job.id)

    async def _terminate(self, job: Optional[TrainingJob], instance_id: str, reason: str, report: SweepReport) -> None:
        job_id = job.id if job is not None else None
        self.logger.warning(f"🔪 Terminating instance {instance_id} ({reason})")
        try:
            await self.terminator.terminate(job_id, instance_id)
        except TerminationFailedError as e:
            report.errors.append({"instance_id": instance_id, "error": str(e)})
            return
        report.terminated.append(
            {"instance_id": instance_id, "job_id": str(job_id) if job_id else None, "reason": reason}
        )

    async def _settle(self, job: TrainingJob, reason: FailureReason, report: SweepReport) -> None:
        """Reconcile the prepaid charge of a job this sweep failed."""
        if not job.charge_transaction_id:
            return
        if self.billing is None:
            self.notifier.notify_ops(
                f"Job {job.id} failed by sweeper but no ledger is configured; billing left unsettled",
                severity="error",
                data={"job_id": str(job.id), "transaction_id": job.charge_transaction_id},
            )
            return
        try:
            rec = await self.billing.settle(job, reason)
        except Exception as e:
            self.logger.exception(f"Billing settlement for job {job.id} failed")
            report.errors.append({"job_id": str(job.id), "error": f"settlement failed: {e}"})
            self.notifier.notify_ops(
                f"Reconciliation failed for job {job.id}", severity="error", data={"error": str(e)}
            )
            return
        if rec is not None:
            report.settled.append(str(job.id))
            self.logger.info(f"💸 Settled job {job.id}: {rec.action} {rec.amount} points")

    def _record_error(self, report: SweepReport, job: TrainingJob, error: Exception) -> None:
        self.logger.error(f"❌ Sweeper error on job {job.id}: {error}")
        report.errors.append({"job_id": str(job.id), "instance_id": job.instance_id, "error": str(error)})
