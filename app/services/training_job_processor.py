"""
TrainingJobProcessor - drives one claimed job to a terminal state.

    PROVISIONING -> UPLOADING -> TRAINING -> FINALIZING -> COMPLETED
         |              |            |            |
         +--------------+------------+------------+------> FAILED

The prepaid charge happens right after the claim, before any instance
exists. Whatever happens afterwards, the job ends terminal, billing is
reconciled at most once, the user hears exactly one outcome and the
instance is handed to the TerminationManager.
"""

import asyncio
import functools
import logging
import os
import shlex
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from app.config import settings
from app.services.billing import BillingReconciler
from app.services.cost_estimator import CostEstimate, CostEstimator, Reconciliation
from app.services.exceptions import (
    BillingError,
    FinalizationError,
    HardTimeoutError,
    InstanceLostError,
    InsufficientBalanceError,
    ProvisioningFailure,
    RemoteCommandError,
    RemoteCommandTimeout,
    StallTimeoutError,
    TerminationFailedError,
    TrainingExecutionError,
    UploadError,
    WorkflowError,
)
from app.services.remote_executor import ResilientRemoteExecutor
from app.services.termination_manager import TerminationManager
from app.services.training_job_monitor import RemoteJobPaths, TickOutcome, TrainingJobMonitor
from models.training_job import FailureReason, TrainingJob, TrainingJobStatus
from scripts.ledger_client import LedgerError, LedgerInsufficientFunds
from scripts.ssh_executor import SshExecutor
from scripts.utils import format_duration, utc_now
from scripts.vast_client import VastAIError

# Stopped by us while training was still running; the newest checkpoint is recovered
PARTIAL_RESULT_REASONS = frozenset({FailureReason.STALL_TIMEOUT, FailureReason.HARD_TIMEOUT})

OPS_ALERT_REASONS = frozenset(
    {
        FailureReason.UNEXPECTED_ERROR,
        FailureReason.INSTANCE_LOST,
        FailureReason.REMOTE_UNREACHABLE,
        FailureReason.BILLING_ERROR,
        FailureReason.FINALIZATION_FAILED,
    }
)

USER_FAILURE_MESSAGES = {
    FailureReason.INSUFFICIENT_BALANCE: "you do not have enough points for this training",
    FailureReason.PROVISIONING_FAILED: "no GPU could be rented for it",
    FailureReason.UPLOAD_FAILED: "the dataset could not be staged",
    FailureReason.TRAINING_FAILED: "the trainer exited with an error",
    FailureReason.STALL_TIMEOUT: "it stopped making progress",
    FailureReason.HARD_TIMEOUT: "it used up the prepaid runtime",
}

DATASET_STAGE_TIMEOUT = 30 * 60
FINALIZE_DEADLINE = 45 * 60
CHECKPOINT_FLUSH_SECONDS = 10
CHECKPOINT_COLLECT_DEADLINE = 10 * 60


@dataclass
class JobRun:
    """Per-job scratch state for one ``process`` call."""

    paths: RemoteJobPaths
    remote: Optional[ResilientRemoteExecutor] = None
    reconciliation: Optional[Reconciliation] = None


class TrainingJobProcessor:
    def __init__(
        self,
        job_store,
        provider,
        ledger,
        notifier,
        estimator: Optional[CostEstimator] = None,
        terminator: Optional[TerminationManager] = None,
        billing: Optional[BillingReconciler] = None,
        remote_factory: Optional[Callable[[str, int], ResilientRemoteExecutor]] = None,
        monitor_factory: Optional[Callable[..., TrainingJobMonitor]] = None,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
        config=None,
    ):
        self.job_store = job_store
        self.provider = provider
        self.ledger = ledger
        self.notifier = notifier
        self.config = config or settings
        self.estimator = estimator or CostEstimator(job_store, config=self.config)
        self.billing = billing or BillingReconciler(
            job_store, ledger, notifier, estimator=self.estimator, clock=clock, config=self.config
        )
        self.terminator = terminator or TerminationManager(provider, job_store, notifier, sleep=sleep)
        self.remote_factory = remote_factory or self._default_remote_factory
        self.monitor_factory = monitor_factory or self._default_monitor_factory
        self._sleep = sleep
        self._clock = clock
        self.logger = logging.getLogger("TrainingJobProcessor")

    # ==================== Public API ====================

    async def preflight(self, job: TrainingJob) -> CostEstimate:
        """Estimate the job and confirm the user can pay for it.

        Raises:
            InsufficientBalanceError: the user cannot cover the estimate
            BillingError: the ledger could not be asked
        """
        estimate = await self.estimator.estimate(
            job.base_model, job.steps, job.dataset_size, self._gpu_class(job)
        )
        try:
            affordable = await asyncio.to_thread(
                self.ledger.check_balance, job.user_id, estimate.estimated_points
            )
        except LedgerError as e:
            raise BillingError(f"Balance check failed: {e}", job_id=str(job.id)) from e

        if not affordable:
            raise InsufficientBalanceError(
                f"User {job.user_id} cannot cover {estimate.estimated_points} points",
                job_id=str(job.id),
            )
        return estimate

    async def reject(self, job: TrainingJob, error: WorkflowError) -> bool:
        """Fail a job that never left QUEUED."""
        rejected = await self.job_store.fail_queued(job.id, error.failure_reason, str(error))
        if rejected:
            self.logger.info(f"🚫 Job {job.id} rejected before claim: {error}")
            self._notify_user_outcome(job, error.failure_reason)
        return rejected

    async def process(self, job: TrainingJob, estimate: CostEstimate) -> TrainingJob:
        """Run a claimed (PROVISIONING) job to COMPLETED or FAILED."""
        run = JobRun(paths=RemoteJobPaths.for_job(job.id, self.config.remote_workdir))
        self.logger.info(f"🚀 Processing job {job.id} ({job.base_model}, {job.steps} steps)")

        try:
            await self._charge(job, estimate)
            await self._provision(job, estimate, run)

            await self._advance(job, TrainingJobStatus.UPLOADING)
            await self._stage_dataset(job, run)

            await self._advance(job, TrainingJobStatus.TRAINING)
            await self._launch_training(job, run)
            await self._watch_training(job, run)

            await self._advance(job, TrainingJobStatus.FINALIZING)
            artifact_path = await self._finalize(job, run)
            await self._complete(job, run, artifact_path)

        except WorkflowError as e:
            self.logger.error(f"❌ Job {job.id} failed ({e.failure_reason.value}): {e}")
            await self._fail(job, run, e)
        except asyncio.CancelledError:
            self.logger.warning(f"⚠️ Job {job.id} interrupted by shutdown")
            await self._fail(job, run, WorkflowError("Worker shut down while the job was running"))
            raise
        except Exception as e:
            self.logger.exception(f"💥 Unexpected error processing job {job.id}")
            await self._fail(job, run, WorkflowError(f"Unexpected error: {e}"))
        finally:
            await self._release(job, run)

        return await self.job_store.get_job(job.id) or job

    # ==================== Steps ====================

    async def _charge(self, job: TrainingJob, estimate: CostEstimate) -> None:
        points = estimate.estimated_points
        try:
            transaction_id = await asyncio.to_thread(
                self.ledger.charge,
                job.user_id,
                points,
                {"job_id": str(job.id), "model_name": job.model_name, "kind": "training_prepaid"},
            )
        except LedgerInsufficientFunds as e:
            raise InsufficientBalanceError(f"Charge of {points} points declined: {e}", job_id=str(job.id)) from e
        except LedgerError as e:
            raise BillingError(f"Charge of {points} points failed: {e}", job_id=str(job.id)) from e

        await self.job_store.set_estimated_cost(job.id, points, transaction_id)
        job.estimated_cost_points = points
        job.charge_transaction_id = transaction_id
        self.logger.info(f"💳 Charged {points} points for job {job.id} (tx {transaction_id})")

    async def _provision(self, job: TrainingJob, estimate: CostEstimate, run: JobRun) -> None:
        label = f"{self.config.instance_label_prefix}-{job.id}"
        try:
            offer = await asyncio.to_thread(
                self.provider.select_offer,
                self.config.offer_min_vram_gb,
                self.config.offer_max_price,
                self.config.offer_gpu_name,
            )
            if not offer:
                raise ProvisioningFailure("No GPU offer matches the requirements", job_id=str(job.id))

            instance_id = await asyncio.to_thread(
                self.provider.create_instance,
                offer["id"],
                self.config.instance_image,
                self.config.instance_disk_gb,
                label,
            )
            if not instance_id:
                found = await asyncio.to_thread(self.provider.find_instance_by_label, label)
                instance_id = str(found["id"]) if found else None
            if not instance_id:
                raise ProvisioningFailure(f"Offer {offer['id']} rented but no instance id returned", job_id=str(job.id))

            hourly_rate = offer.get("hourly_rate") or self.config.default_hourly_rate
            provisioned_at = self._clock()
            await self.job_store.set_instance_info(
                job.id,
                instance_id,
                offer_id=offer["id"],
                gpu_type=offer.get("gpu_name"),
                hourly_rate=hourly_rate,
                provisioned_at=provisioned_at,
            )
            job.instance_id = instance_id
            job.offer_id = offer["id"]
            job.gpu_type = offer.get("gpu_name")
            job.hourly_rate = hourly_rate
            job.provisioned_at = provisioned_at
            self.logger.info(f"🖥️ Instance {instance_id} ({job.gpu_type} @ ${hourly_rate:.3f}/h) for job {job.id}")

            await self._attach_ssh_key(instance_id)
            instance = await asyncio.to_thread(
                self.provider.wait_until_running,
                instance_id,
                self.config.instance_ready_timeout_seconds,
                self.config.instance_ready_poll_seconds,
            )
        except VastAIError as e:
            raise ProvisioningFailure(f"Provider error: {e}", job_id=str(job.id)) from e

        if not instance:
            raise ProvisioningFailure(
                f"Instance {job.instance_id} not ready after {self.config.instance_ready_timeout_seconds}s",
                job_id=str(job.id),
            )

        ssh_host = instance["ssh_host"]
        ssh_port = int(instance.get("ssh_port") or 22)
        await self.job_store.set_connection_info(job.id, ssh_host, ssh_port)
        job.ssh_host, job.ssh_port = ssh_host, ssh_port

        max_hours = self.estimator.calculate_max_affordable_hours(job.estimated_cost_points, job.hourly_rate)
        job.soft_timeout_at = job.provisioned_at + timedelta(hours=estimate.estimated_hours)
        job.hard_timeout_at = job.provisioned_at + timedelta(hours=max_hours)
        await self.job_store.set_timeouts(job.id, job.soft_timeout_at, job.hard_timeout_at)
        self.logger.info(
            f"⏱️ Job {job.id} budget: soft {format_duration(estimate.estimated_hours * 3600)}, "
            f"hard {format_duration(max_hours * 3600)}"
        )

        run.remote = self.remote_factory(ssh_host, ssh_port)

    async def _attach_ssh_key(self, instance_id: str) -> None:
        key_path = self.config.ssh_public_key_path
        if not key_path:
            return
        with open(os.path.expanduser(key_path)) as f:
            public_key = f.read().strip()
        await asyncio.to_thread(self.provider.attach_ssh_key, instance_id, public_key)

    async def _stage_dataset(self, job: TrainingJob, run: JobRun) -> None:
        paths = run.paths
        dataset_dir = shlex.quote(paths.dataset_dir)
        archive = shlex.quote(f"{paths.dataset_dir}/dataset.archive")
        command = (
            f"mkdir -p {dataset_dir} {shlex.quote(paths.output_dir)} && "
            f"curl -fsSL --retry 3 -o {archive} {shlex.quote(job.dataset_url)} && "
            f"(unzip -oq {archive} -d {dataset_dir} || tar -xf {archive} -C {dataset_dir}) && "
            f"rm -f {archive} && find {dataset_dir} -type f | wc -l"
        )
        try:
            result = await run.remote.run_confirmed(
                command,
                job.instance_id,
                job.hard_timeout_at,
                timeout=DATASET_STAGE_TIMEOUT,
                heartbeat=self._heartbeat(job),
            )
        except (RemoteCommandError, RemoteCommandTimeout) as e:
            raise UploadError(f"Dataset staging failed: {e}", job_id=str(job.id)) from e

        lines = result.stdout.strip().splitlines()
        file_count = int(lines[-1]) if lines and lines[-1].strip().isdigit() else 0
        if file_count == 0:
            raise UploadError("Dataset staging produced no files", job_id=str(job.id))
        self.logger.info(f"📦 Staged {file_count} dataset files for job {job.id}")

    async def _launch_training(self, job: TrainingJob, run: JobRun) -> None:
        paths = run.paths
        train_command = self.config.training_command.format(
            base_model=shlex.quote(job.base_model),
            steps=int(job.steps),
            dataset_dir=shlex.quote(paths.dataset_dir),
            output_dir=shlex.quote(paths.output_dir),
            model_name=shlex.quote(job.model_name),
        )
        wrapped = f"{train_command} > {shlex.quote(paths.log_file)} 2>&1; echo $? > {shlex.quote(paths.exit_file)}"
        command = (
            f"cd {shlex.quote(paths.root)} && rm -f {shlex.quote(paths.exit_file)} && "
            f"nohup sh -c {shlex.quote(wrapped)} > /dev/null 2>&1 & echo $! > {shlex.quote(paths.pid_file)}"
        )
        try:
            await run.remote.run_confirmed(
                command, job.instance_id, job.hard_timeout_at, heartbeat=self._heartbeat(job)
            )
        except (RemoteCommandError, RemoteCommandTimeout) as e:
            raise TrainingExecutionError(f"Could not launch training: {e}", job_id=str(job.id)) from e

        await self.job_store.set_training_started(job.id)
        job.training_started_at = self._clock()
        self.logger.info(f"🏋️ Training launched for job {job.id}")
        self.notifier.notify_user(
            job.user_id, f"Training '{job.model_name}' has started ({job.steps} steps).", severity="info"
        )

    async def _watch_training(self, job: TrainingJob, run: JobRun) -> None:
        monitor = self.monitor_factory(job, run.remote, run.paths)
        result = await monitor.run()

        if result.outcome == TickOutcome.FINISHED:
            return
        if result.outcome == TickOutcome.PROCESS_FAILED:
            raise TrainingExecutionError(result.detail or "Training process failed", job_id=str(job.id))
        if result.outcome == TickOutcome.STALL_TIMEOUT:
            raise StallTimeoutError(result.detail or "Training stalled", job_id=str(job.id))
        if result.outcome == TickOutcome.HARD_TIMEOUT:
            raise HardTimeoutError(result.detail or "Hard timeout reached", job_id=str(job.id))
        if result.outcome == TickOutcome.INSTANCE_LOST:
            raise InstanceLostError(result.detail or "Instance lost", job_id=str(job.id))
        raise WorkflowError(f"Monitor returned unexpected outcome {result.outcome}", job_id=str(job.id))

    async def _finalize(self, job: TrainingJob, run: JobRun) -> str:
        deadline = self._clock() + timedelta(seconds=FINALIZE_DEADLINE)
        try:
            artifact = await self._collect_artifact(job, run, deadline)
        except (RemoteCommandError, RemoteCommandTimeout, HardTimeoutError) as e:
            raise FinalizationError(f"Finalization failed: {e}", job_id=str(job.id)) from e
        if not artifact:
            raise FinalizationError("Training finished but produced no artifact", job_id=str(job.id))

        self.logger.info(f"💾 Job {job.id} artifact: {artifact}")
        return artifact

    async def _collect_artifact(self, job: TrainingJob, run: JobRun, deadline: datetime) -> Optional[str]:
        """Newest file matching ``artifact_glob`` in the output dir, uploaded
        when an upload command is configured. None if there is none."""
        find = (
            f"find {shlex.quote(run.paths.output_dir)} -type f "
            f"-name {shlex.quote(self.config.artifact_glob)} | sort | tail -n 1"
        )
        result = await run.remote.run_confirmed(find, job.instance_id, deadline, heartbeat=self._heartbeat(job))
        artifact = result.stdout.strip()
        if not artifact:
            return None

        if self.config.artifact_upload_command:
            upload = self.config.artifact_upload_command.format(
                artifact_path=shlex.quote(artifact),
                job_id=job.id,
                model_name=shlex.quote(job.model_name),
            )
            uploaded = await run.remote.run_confirmed(
                upload, job.instance_id, deadline, timeout=DATASET_STAGE_TIMEOUT, heartbeat=self._heartbeat(job)
            )
            lines = uploaded.stdout.strip().splitlines()
            if lines:
                artifact = lines[-1].strip()
        return artifact

    async def _complete(self, job: TrainingJob, run: JobRun, artifact_path: str) -> None:
        run.reconciliation = await self._reconcile(job, None)
        if not await self.job_store.mark_completed(job.id, artifact_path):
            raise WorkflowError(f"Job {job.id} left FINALIZING before it could complete", job_id=str(job.id))
        job.status = TrainingJobStatus.COMPLETED
        job.artifact_path = artifact_path
        self.logger.info(f"✅ Job {job.id} completed")
        self._notify_user_outcome(job, None, run.reconciliation)

    # ==================== Failure, billing, cleanup ====================

    async def _advance(self, job: TrainingJob, target: TrainingJobStatus) -> None:
        if not await self.job_store.set_status(job, target):
            raise WorkflowError(
                f"Job {job.id} is no longer {job.status.value}; refusing to move it to {target.value}",
                job_id=str(job.id),
            )
        self.logger.info(f"➡️ Job {job.id} -> {target.value}")

    async def _fail(self, job: TrainingJob, run: JobRun, error: WorkflowError) -> None:
        reason = error.failure_reason
        checkpoint = None
        if reason in PARTIAL_RESULT_REASONS:
            checkpoint = await self._recover_checkpoint(job, run)

        marked = await self.job_store.mark_failed(
            job.id, reason, str(error), partial=checkpoint is not None, artifact_path=checkpoint
        )
        if not marked:
            self.logger.warning(f"⚠️ Job {job.id} was already terminal; leaving its status as is")
        job.status = TrainingJobStatus.FAILED

        try:
            run.reconciliation = await self._reconcile(job, reason)
        except Exception as e:
            self.logger.exception(f"Billing reconciliation for job {job.id} failed")
            self.notifier.notify_ops(
                f"Reconciliation failed for job {job.id}", severity="error", data={"error": str(e)}
            )

        if marked:
            self._notify_user_outcome(job, reason, run.reconciliation)
        if reason in OPS_ALERT_REASONS:
            self.notifier.notify_ops(
                f"Job {job.id} failed: {reason.value}",
                severity="error",
                data={"detail": str(error)[:500], "instance_id": job.instance_id},
            )

    async def _recover_checkpoint(self, job: TrainingJob, run: JobRun) -> Optional[str]:
        """Stop the trainer, give it a moment to flush, and keep the newest
        checkpoint before the instance goes away. Best effort."""
        if run.remote is None:
            return None

        pid_file = shlex.quote(run.paths.pid_file)
        try:
            await run.remote.run(f"kill -TERM $(cat {pid_file}) 2>/dev/null || true", check=False)
        except WorkflowError as e:
            self.logger.warning(f"⚠️ Could not signal training process for job {job.id}: {e}")
            return None
        await self._sleep(CHECKPOINT_FLUSH_SECONDS)

        deadline = self._clock() + timedelta(seconds=CHECKPOINT_COLLECT_DEADLINE)
        try:
            checkpoint = await self._collect_artifact(job, run, deadline)
        except WorkflowError as e:
            self.logger.warning(f"⚠️ Could not recover a checkpoint for job {job.id}: {e}")
            return None

        if not checkpoint:
            self.logger.info(f"Job {job.id} left no checkpoint behind")
            return None
        job.artifact_path = checkpoint
        job.partial_result = True
        self.logger.info(f"💾 Job {job.id} partial checkpoint: {checkpoint}")
        return checkpoint

    async def _reconcile(self, job: TrainingJob, reason: Optional[FailureReason]) -> Optional[Reconciliation]:
        return await self.billing.settle(job, reason)

    async def _release(self, job: TrainingJob, run: JobRun) -> None:
        if run.remote is not None:
            try:
                await run.remote.close()
            except Exception as e:
                self.logger.warning(f"⚠️ Closing SSH session for job {job.id} failed: {e}")

        try:
            await self.terminator.terminate(job.id, job.instance_id)
        except TerminationFailedError as e:
            # ops were alerted by the terminator; the sweeper retries
            self.logger.critical(f"🔥 {e}")

    def _notify_user_outcome(
        self, job: TrainingJob, reason: Optional[FailureReason], rec: Optional[Reconciliation] = None
    ) -> None:
        refund = ""
        if rec is not None and rec.action == "refund":
            refund = f" {rec.amount} points were refunded."

        if reason is None:
            self.notifier.notify_user(
                job.user_id, f"Training '{job.model_name}' is complete.{refund}", severity="success"
            )
            return

        why = USER_FAILURE_MESSAGES.get(reason, "of an internal error")
        partial = " The latest checkpoint was saved." if job.partial_result and job.artifact_path else ""
        self.notifier.notify_user(
            job.user_id,
            f"Training '{job.model_name}' failed because {why}.{partial}{refund}",
            severity="error",
        )

    # ==================== Factories ====================

    def _heartbeat(self, job: TrainingJob):
        return functools.partial(self.job_store.touch, job.id)

    def _gpu_class(self, job: TrainingJob) -> Optional[str]:
        return (job.training_config or {}).get("gpu_class")

    def _default_remote_factory(self, host: str, port: int) -> ResilientRemoteExecutor:
        ssh = SshExecutor(
            host=host,
            port=port,
            username=self.config.ssh_username,
            key_path=self.config.ssh_key_path,
            key_password=self.config.ssh_key_password,
            connect_timeout=self.config.ssh_connect_timeout_seconds,
        )
        return ResilientRemoteExecutor(ssh, provider=self.provider, sleep=self._sleep, clock=self._clock)

    def _default_monitor_factory(self, job: TrainingJob, remote, paths: RemoteJobPaths) -> TrainingJobMonitor:
        return TrainingJobMonitor(
            job, remote, self.job_store, self.notifier, paths=paths, sleep=self._sleep, clock=self._clock
        )
