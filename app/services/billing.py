"""
Billing settlement - squares a job's prepaid charge with the rental time it
actually used.

Both the worker and the sweeper settle jobs through here. The job store's
once-only reconciliation update decides which of them gets to do it.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from app.config import settings
from app.services.cost_estimator import CostEstimator, Reconciliation
from models.training_job import FailureReason, TrainingJob
from scripts.ledger_client import LedgerError
from scripts.utils import utc_now

# Failures caused by the platform or the provider; the user gets everything back
FULL_REFUND_REASONS = frozenset(
    {
        FailureReason.PROVISIONING_FAILED,
        FailureReason.INSTANCE_LOST,
        FailureReason.REMOTE_UNREACHABLE,
        FailureReason.UPLOAD_FAILED,
        FailureReason.FINALIZATION_FAILED,
        FailureReason.UNEXPECTED_ERROR,
        FailureReason.BILLING_ERROR,
        FailureReason.INSUFFICIENT_BALANCE,
        FailureReason.STUCK_SWEEPER_CLEANUP,
    }
)


class BillingReconciler:
    def __init__(
        self,
        job_store,
        ledger,
        notifier,
        estimator: Optional[CostEstimator] = None,
        clock: Callable[[], datetime] = utc_now,
        config=None,
    ):
        self.job_store = job_store
        self.ledger = ledger
        self.notifier = notifier
        self.config = config or settings
        self.estimator = estimator or CostEstimator(job_store, config=self.config)
        self._clock = clock
        self.logger = logging.getLogger("BillingReconciler")

    def actual_points(self, job: TrainingJob, reason: Optional[FailureReason]) -> int:
        if reason in FULL_REFUND_REASONS or job.provisioned_at is None:
            return 0
        hours = (self._clock() - job.provisioned_at).total_seconds() / 3600
        rate = job.hourly_rate or self.config.default_hourly_rate
        return self.estimator.calculate_actual_cost(hours, rate).actual_points

    async def settle(self, job: TrainingJob, reason: Optional[FailureReason]) -> Optional[Reconciliation]:
        """Refund unused prepaid points or flag an overage, at most once per job.

        ``reason`` is None for a completed job. Returns None when the job was
        never charged or someone else already settled it.
        """
        if not job.charge_transaction_id or job.estimated_cost_points is None:
            return None

        actual_points = self.actual_points(job, reason)
        rec = self.estimator.reconcile(job.estimated_cost_points, actual_points)
        overage = rec.amount if rec.action == "overage" else None
        if not await self.job_store.record_reconciliation(job.id, actual_points, overage):
            self.logger.info(f"Job {job.id} already reconciled")
            return None
        job.actual_cost_points = actual_points
        job.cost_overage_points = overage
        job.cost_reconciled = True

        if rec.action == "refund":
            why = reason.value if reason else "unused prepaid time"
            try:
                await asyncio.to_thread(self.ledger.refund, job.charge_transaction_id, rec.amount, why)
                self.logger.info(f"💸 Refunded {rec.amount} points for job {job.id}")
            except LedgerError as e:
                self.notifier.notify_ops(
                    f"Refund FAILED for job {job.id}, manual action needed",
                    severity="critical",
                    data={"user_id": job.user_id, "points": rec.amount, "error": str(e)},
                )
        elif rec.action == "overage":
            details = {
                "job_id": str(job.id),
                "estimated_points": rec.estimated_points,
                "actual_points": rec.actual_points,
            }
            try:
                await asyncio.to_thread(self.ledger.flag_overage, job.charge_transaction_id, rec.amount, details)
            except LedgerError as e:
                self.logger.error(f"❌ Could not flag overage for job {job.id}: {e}")
            self.notifier.notify_ops(
                f"Cost overage of {rec.amount} points on job {job.id} (not charged)",
                severity="warning",
                data=details,
            )
        return rec
