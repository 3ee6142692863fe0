"""
Job Store - persistent record of training jobs with atomic claim semantics.

Every mutation here is one conditional ``UPDATE ... WHERE`` issued through
``QuerySet.update()``; callers learn whether they won by the affected row
count. The worker and the sweeper run in different processes and rely on
nothing else for mutual exclusion.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from tortoise.expressions import F

from models.training_job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    FailureReason,
    InvalidTransitionError,
    TrainingJob,
    TrainingJobStatus,
)
from scripts.utils import utc_now


class JobStore:
    """Service for TrainingJob persistence."""

    def __init__(self):
        self.logger = logging.getLogger("JobStore")

    # ==================== Submission surface ====================

    async def create_job(
        self,
        user_id: str,
        environment: str,
        model_name: str,
        base_model: str,
        steps: int,
        dataset_url: str,
        dataset_size: int = 0,
        training_config: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TrainingJob:
        """Enqueue a new job. QUEUED is the only status a submitter may write."""
        now = utc_now()
        job = await TrainingJob.create(
            user_id=user_id,
            environment=environment,
            model_name=model_name,
            base_model=base_model,
            steps=steps,
            dataset_url=dataset_url,
            dataset_size=dataset_size,
            training_config=training_config,
            metadata=metadata,
            status=TrainingJobStatus.QUEUED,
            created_at=now,
            updated_at=now,
        )
        self.logger.info(f"📝 Queued job {job.id} ({model_name}) env={environment}")
        return job

    async def get_job(self, job_id) -> Optional[TrainingJob]:
        return await TrainingJob.get_or_none(id=job_id)

    async def list_jobs(
        self,
        status: Optional[TrainingJobStatus] = None,
        environment: Optional[str] = None,
        limit: int = 50,
    ) -> List[TrainingJob]:
        query = TrainingJob.all()
        if status is not None:
            query = query.filter(status=status)
        if environment is not None:
            query = query.filter(environment=environment)
        return await query.order_by("-created_at").limit(limit)

    # ==================== Claiming ====================

    async def fetch_next_queued(self, environment: str) -> Optional[TrainingJob]:
        """Oldest QUEUED job for this environment. Read-only peek."""
        return (
            await TrainingJob.filter(status=TrainingJobStatus.QUEUED, environment=environment)
            .order_by("created_at")
            .first()
        )

    async def claim_job(self, job_id) -> Optional[TrainingJob]:
        """Atomically move QUEUED -> PROVISIONING. None if someone else got it."""
        updated = await TrainingJob.filter(id=job_id, status=TrainingJobStatus.QUEUED).update(
            status=TrainingJobStatus.PROVISIONING, updated_at=utc_now()
        )
        if not updated:
            return None
        return await TrainingJob.get(id=job_id)

    async def fail_queued(self, job_id, reason: FailureReason, detail: str = None) -> bool:
        """Pre-flight rejection of a job that was never claimed."""
        now = utc_now()
        updated = await TrainingJob.filter(id=job_id, status=TrainingJobStatus.QUEUED).update(
            status=TrainingJobStatus.FAILED,
            failure_reason=reason,
            failure_detail=detail,
            completed_at=now,
            updated_at=now,
        )
        return bool(updated)

    # ==================== State machine ====================

    async def set_status(self, job: TrainingJob, target: TrainingJobStatus) -> bool:
        """Advance ``job`` to ``target``, guarded by the status we believe it has.

        Returns False when the stored row has moved on (e.g. the sweeper
        failed it); raises InvalidTransitionError for a forbidden transition.
        """
        current = job.status
        if not TrainingJobStatus.can_transition(current, target):
            raise InvalidTransitionError(current, target)

        now = utc_now()
        updated = await TrainingJob.filter(id=job.id, status=current).update(
            status=target, updated_at=now
        )
        if updated:
            job.status = target
            job.updated_at = now
        return bool(updated)

    async def mark_completed(self, job_id, artifact_path: Optional[str] = None) -> bool:
        now = utc_now()
        updated = await TrainingJob.filter(id=job_id, status=TrainingJobStatus.FINALIZING).update(
            status=TrainingJobStatus.COMPLETED,
            artifact_path=artifact_path,
            progress=100,
            completed_at=now,
            updated_at=now,
        )
        return bool(updated)

    async def mark_failed(
        self,
        job_id,
        reason: FailureReason,
        detail: Optional[str] = None,
        partial: bool = False,
        stale_before: Optional[datetime] = None,
        artifact_path: Optional[str] = None,
    ) -> bool:
        """Move any non-terminal job to FAILED. No-op for terminal jobs.

        ``partial`` with ``artifact_path`` records a checkpoint kept from a run
        that was stopped early.

        ``stale_before`` additionally requires the heartbeat to be older than
        the given instant, so a sweeper never fails a job that just reported in.
        """
        query = TrainingJob.filter(id=job_id, status__not_in=list(TERMINAL_STATUSES))
        if stale_before is not None:
            query = query.filter(updated_at__lt=stale_before)

        now = utc_now()
        fields: Dict[str, Any] = dict(
            status=TrainingJobStatus.FAILED,
            failure_reason=reason,
            failure_detail=detail[:2000] if detail else None,
            partial_result=partial,
            completed_at=now,
            updated_at=now,
        )
        if artifact_path:
            fields["artifact_path"] = artifact_path
        updated = await query.update(**fields)
        return bool(updated)

    # ==================== Partial updates ====================

    async def touch(self, job_id) -> None:
        """Liveness heartbeat."""
        await TrainingJob.filter(id=job_id).update(updated_at=utc_now())

    async def set_estimated_cost(self, job_id, points: int, transaction_id: Optional[str]) -> None:
        await TrainingJob.filter(id=job_id).update(
            estimated_cost_points=points,
            charge_transaction_id=transaction_id,
            updated_at=utc_now(),
        )

    async def set_instance_info(
        self,
        job_id,
        instance_id: str,
        offer_id: Optional[str] = None,
        gpu_type: Optional[str] = None,
        hourly_rate: Optional[float] = None,
        provisioned_at: Optional[datetime] = None,
    ) -> None:
        now = utc_now()
        await TrainingJob.filter(id=job_id).update(
            instance_id=instance_id,
            offer_id=offer_id,
            gpu_type=gpu_type,
            hourly_rate=hourly_rate,
            provisioned_at=provisioned_at or now,
            updated_at=now,
        )

    async def set_connection_info(self, job_id, ssh_host: str, ssh_port: int) -> None:
        await TrainingJob.filter(id=job_id).update(
            ssh_host=ssh_host, ssh_port=ssh_port, updated_at=utc_now()
        )

    async def set_timeouts(self, job_id, soft_timeout_at: datetime, hard_timeout_at: datetime) -> None:
        await TrainingJob.filter(id=job_id).update(
            soft_timeout_at=soft_timeout_at,
            hard_timeout_at=hard_timeout_at,
            updated_at=utc_now(),
        )

    async def set_training_started(self, job_id) -> None:
        now = utc_now()
        await TrainingJob.filter(id=job_id).update(training_started_at=now, updated_at=now)

    async def mark_soft_timeout_notified(self, job_id) -> None:
        await TrainingJob.filter(id=job_id).update(soft_timeout_notified=True, updated_at=utc_now())

    async def update_progress(
        self,
        job_id,
        current_step: int,
        total_steps: Optional[int],
        loss: Optional[float] = None,
    ) -> None:
        fields: Dict[str, Any] = {"current_step": current_step, "updated_at": utc_now()}
        if total_steps:
            fields["total_steps"] = total_steps
            fields["progress"] = min(100, round(current_step / total_steps * 100))
        if loss is not None:
            fields["current_loss"] = loss
        await TrainingJob.filter(id=job_id).update(**fields)

    # ==================== Billing ====================

    async def record_reconciliation(
        self, job_id, actual_cost_points: int, overage_points: Optional[int] = None
    ) -> bool:
        """Set actual cost once. False if the job was already reconciled."""
        updated = await TrainingJob.filter(id=job_id, cost_reconciled=False).update(
            actual_cost_points=actual_cost_points,
            cost_overage_points=overage_points,
            cost_reconciled=True,
            updated_at=utc_now(),
        )
        return bool(updated)

    # ==================== Termination bookkeeping ====================

    async def increment_termination_attempts(self, job_id) -> None:
        await TrainingJob.filter(id=job_id).update(
            termination_attempts=F("termination_attempts") + 1,
            updated_at=utc_now(),
        )

    async def mark_instance_terminated(self, job_id, count_attempt: bool = False) -> None:
        """Record the instance as gone. ``count_attempt`` adds the successful
        destroy call to the attempts already recorded."""
        fields: Dict[str, Any] = {"instance_terminated_at": utc_now()}
        if count_attempt:
            fields["termination_attempts"] = F("termination_attempts") + 1
        await TrainingJob.filter(id=job_id, instance_terminated_at__isnull=True).update(**fields)

    # ==================== Audit queries ====================

    async def find_orphan_candidates(self) -> List[TrainingJob]:
        """Terminal jobs whose instance has not been confirmed dead."""
        return await TrainingJob.filter(
            status__in=list(TERMINAL_STATUSES),
            instance_terminated_at__isnull=True,
            instance_id__isnull=False,
        ).order_by("updated_at")

    async def find_stuck_jobs(self, threshold: timedelta) -> List[TrainingJob]:
        """Active jobs with no heartbeat within ``threshold``."""
        return await TrainingJob.filter(
            status__in=list(ACTIVE_STATUSES),
            updated_at__lt=utc_now() - threshold,
        ).order_by("updated_at")

    async def find_overdue_jobs(self, grace: timedelta) -> List[TrainingJob]:
        """Active jobs running past their hard timeout plus ``grace``."""
        return await TrainingJob.filter(
            status__in=list(ACTIVE_STATUSES),
            hard_timeout_at__lt=utc_now() - grace,
        ).order_by("hard_timeout_at")

    async def find_by_instance_id(self, instance_id: str) -> Optional[TrainingJob]:
        return await TrainingJob.filter(instance_id=str(instance_id)).first()

    async def completed_jobs_for_estimation(self, base_model: str, limit: int = 20) -> List[TrainingJob]:
        return (
            await TrainingJob.filter(
                status=TrainingJobStatus.COMPLETED,
                base_model=base_model,
                training_started_at__isnull=False,
                completed_at__isnull=False,
            )
            .order_by("-completed_at")
            .limit(limit)
        )
