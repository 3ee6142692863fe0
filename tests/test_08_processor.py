"""
Phase 8: Training Job Processor

End-to-end tests for TrainingJobProcessor against an in-memory database,
with the provider, ledger, remote host and monitor replaced by fakes:
1. Pre-flight balance check and rejection
2. Happy path: charge -> provision -> stage -> train -> finalize -> refund
3. Failures at each phase end FAILED with the right refund policy
4. Overage is flagged, never charged
5. The instance is always handed to termination

Run: pytest tests/test_08_processor.py
"""

import asyncio
import os
import sys
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.services.cost_estimator import CostEstimate, CostEstimator
from app.services.exceptions import InsufficientBalanceError
from app.services.job_store import JobStore
from app.services.training_job_monitor import TickOutcome, TickResult
from app.services import training_job_processor
from app.services.training_job_processor import TrainingJobProcessor
from models.database import close_db, init_db
from models.training_job import FailureReason, TrainingJobStatus
from scripts.ledger_client import LedgerError, LedgerInsufficientFunds
from scripts.ssh_executor import CommandResult
from scripts.utils import utc_now
from scripts.vast_client import VastAIError

DB_URL = "sqlite://:memory:"
ARTIFACT = "/workspace/trainkeeper/job/output/style-lora.safetensors"


class FakeClock:
    def __init__(self):
        self.now = utc_now()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def result(stdout: str = "") -> CommandResult:
    return CommandResult(command="cmd", stdout=stdout, stderr="", return_code=0, success=True, duration=0.1)


def make_remote():
    async def run_confirmed(command, instance_id, deadline, timeout=None, check=True, heartbeat=None):
        if "curl" in command:
            return result("12\n")
        if "find" in command:
            return result(ARTIFACT + "\n")
        return result("")

    remote = Mock()
    remote.run_confirmed = AsyncMock(side_effect=run_confirmed)
    remote.run = AsyncMock(return_value=result(""))
    remote.close = AsyncMock()
    return remote


def make_provider():
    provider = Mock()
    provider.select_offer.return_value = {"id": "offer-7", "gpu_name": "RTX 4090", "hourly_rate": 0.35}
    provider.create_instance.return_value = "inst-1"
    provider.wait_until_running.return_value = {"ssh_host": "10.0.0.5", "ssh_port": 40022}
    provider.terminate_instance.return_value = True
    return provider


def make_ledger(balance: int = 100000):
    ledger = Mock()
    ledger.check_balance.side_effect = lambda user_id, amount: balance >= amount
    ledger.charge.return_value = "tx-1"
    ledger.refund.return_value = "rf-1"
    return ledger


class Harness:
    """Wires a processor to fakes; ``training_hours`` is how long the fake
    training takes on the processor's clock."""

    def __init__(self, outcome=TickOutcome.FINISHED, training_hours: float = 2.4, balance: int = 100000):
        self.store = JobStore()
        self.clock = FakeClock()
        self.provider = make_provider()
        self.ledger = make_ledger(balance)
        self.notifier = Mock()
        self.remote = make_remote()
        self.remote_factory = Mock(return_value=self.remote)
        self.sleep = AsyncMock()

        async def run_monitor():
            self.clock.advance(hours=training_hours)
            return TickResult(outcome, detail=f"monitor said {outcome.value}")

        self.monitor = Mock()
        self.monitor.run = AsyncMock(side_effect=run_monitor)
        self.monitor_factory = Mock(return_value=self.monitor)

        self.processor = TrainingJobProcessor(
            job_store=self.store,
            provider=self.provider,
            ledger=self.ledger,
            notifier=self.notifier,
            estimator=CostEstimator(self.store),
            remote_factory=self.remote_factory,
            monitor_factory=self.monitor_factory,
            sleep=self.sleep,
            clock=self.clock,
        )

    async def queue_job(self):
        return await self.store.create_job(
            user_id="user-1",
            environment="test",
            model_name="style-lora",
            base_model="FLUX",
            steps=2000,
            dataset_url="https://example.com/ds.zip",
            dataset_size=20,
        )

    async def run_job(self):
        """Pre-flight, claim and process one job like the orchestrator does."""
        job = await self.queue_job()
        estimate = await self.processor.preflight(job)
        claimed = await self.store.claim_job(job.id)
        return await self.processor.process(claimed, estimate)

    def user_messages(self):
        return [c.args[1] for c in self.notifier.notify_user.call_args_list]

    def ops_messages(self):
        return [c.args[0] for c in self.notifier.notify_ops.call_args_list]


def run_db_test(test_fn):
    async def runner():
        await init_db(DB_URL)
        try:
            await test_fn()
        finally:
            await close_db()

    asyncio.run(runner())


def fixed_estimate(points: int, hours: float = 2.5) -> CostEstimate:
    return CostEstimate(
        estimated_points=points,
        estimated_hours=hours,
        buffered_hours=hours * 1.5,
        gpu_rate=0.35,
        gpu_cost_usd=hours * 0.35,
        platform_fee_usd=hours * 0.35 * 0.2,
        total_cost_usd=hours * 0.35 * 1.2,
        buffered_cost_usd=hours * 0.35 * 1.8,
    )


# ==================== Module ====================


def test_lifecycle_diagram_is_plain_text():
    # a backslash in the docstring would be an invalid escape sequence
    assert "\\" not in training_job_processor.__doc__
    assert "-> FAILED" in training_job_processor.__doc__


# ==================== Pre-flight ====================


def test_preflight_charges_full_estimate_when_affordable():
    async def body():
        h = Harness(balance=20000)
        h.processor.estimator.estimate = AsyncMock(return_value=fixed_estimate(15800))

        job = await h.run_job()

        assert job.status == TrainingJobStatus.COMPLETED
        h.ledger.charge.assert_called_once()
        assert h.ledger.charge.call_args.args[:2] == ("user-1", 15800)
        assert job.estimated_cost_points == 15800

    run_db_test(body)


def test_preflight_rejects_unaffordable_job_before_provisioning():
    async def body():
        h = Harness(balance=10000)
        h.processor.estimator.estimate = AsyncMock(return_value=fixed_estimate(15800))
        job = await h.queue_job()

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await h.processor.preflight(job)
        assert await h.processor.reject(job, exc_info.value)

        stored = await h.store.get_job(job.id)
        assert stored.status == TrainingJobStatus.FAILED
        assert stored.failure_reason == FailureReason.INSUFFICIENT_BALANCE
        assert stored.instance_id is None
        h.ledger.charge.assert_not_called()
        h.provider.create_instance.assert_not_called()
        assert any("enough points" in m for m in h.user_messages())

    run_db_test(body)


# ==================== Happy path ====================


def test_happy_path_completes_and_refunds_unused_time():
    async def body():
        h = Harness(training_hours=2.4)
        job = await h.run_job()

        assert job.status == TrainingJobStatus.COMPLETED
        assert job.artifact_path == ARTIFACT
        assert job.progress == 100
        assert job.instance_id == "inst-1"
        assert job.gpu_type == "RTX 4090"
        assert job.ssh_host == "10.0.0.5"
        assert job.ssh_port == 40022

        # 15120 prepaid, 2.4h at $0.35 + 20% fee = 10080 actual
        assert job.estimated_cost_points == 15120
        assert job.actual_cost_points == 10080
        assert job.cost_reconciled
        assert job.cost_overage_points is None
        h.ledger.refund.assert_called_once_with("tx-1", 5040, "unused prepaid time")
        h.ledger.flag_overage.assert_not_called()

        # Hard limit is what the prepayment buys at the real rate: 3.6h
        budget = (job.hard_timeout_at - job.provisioned_at).total_seconds() / 3600
        assert budget == pytest.approx(3.6, abs=1e-3)

        h.remote_factory.assert_called_once_with("10.0.0.5", 40022)
        h.remote.close.assert_awaited_once()
        h.provider.terminate_instance.assert_called_once_with("inst-1")
        assert job.instance_terminated_at is not None

        messages = h.user_messages()
        assert any("has started" in m for m in messages)
        assert any("is complete" in m and "5040 points were refunded" in m for m in messages)

    run_db_test(body)


def test_overage_is_flagged_not_charged():
    async def body():
        h = Harness(training_hours=10)
        job = await h.run_job()

        assert job.status == TrainingJobStatus.COMPLETED
        assert job.actual_cost_points == 42000
        assert job.cost_overage_points == 26880
        h.ledger.charge.assert_called_once()
        h.ledger.refund.assert_not_called()
        h.ledger.flag_overage.assert_called_once()
        assert h.ledger.flag_overage.call_args.args[:2] == ("tx-1", 26880)
        assert any("overage" in m for m in h.ops_messages())

    run_db_test(body)


# ==================== Failures ====================


def test_charge_declined_fails_without_instance():
    async def body():
        h = Harness()
        h.ledger.charge.side_effect = LedgerInsufficientFunds("balance too low", status_code=402)
        job = await h.run_job()

        assert job.status == TrainingJobStatus.FAILED
        assert job.failure_reason == FailureReason.INSUFFICIENT_BALANCE
        h.provider.create_instance.assert_not_called()
        h.provider.terminate_instance.assert_not_called()
        h.ledger.refund.assert_not_called()
        assert len(h.user_messages()) == 1

    run_db_test(body)


def test_ledger_outage_at_charge_is_billing_error():
    async def body():
        h = Harness()
        h.ledger.charge.side_effect = LedgerError("ledger 503", status_code=503)
        job = await h.run_job()

        assert job.failure_reason == FailureReason.BILLING_ERROR
        h.provider.create_instance.assert_not_called()
        assert any("billing_error" in m for m in h.ops_messages())

    run_db_test(body)


def test_no_offer_fails_provisioning_with_full_refund():
    async def body():
        h = Harness()
        h.provider.select_offer.return_value = None
        job = await h.run_job()

        assert job.status == TrainingJobStatus.FAILED
        assert job.failure_reason == FailureReason.PROVISIONING_FAILED
        assert job.actual_cost_points == 0
        h.ledger.refund.assert_called_once_with("tx-1", 15120, "provisioning_failed")
        h.provider.terminate_instance.assert_not_called()
        assert any("no GPU could be rented" in m and "15120 points were refunded" in m for m in h.user_messages())

    run_db_test(body)


def test_instance_never_ready_is_still_terminated():
    async def body():
        h = Harness()
        h.provider.wait_until_running.return_value = None
        job = await h.run_job()

        assert job.failure_reason == FailureReason.PROVISIONING_FAILED
        assert job.instance_id == "inst-1"
        h.provider.terminate_instance.assert_called_once_with("inst-1")
        assert job.instance_terminated_at is not None

    run_db_test(body)


def test_provider_error_after_rent_keeps_instance_for_cleanup():
    async def body():
        h = Harness()
        h.provider.wait_until_running.side_effect = VastAIError("timeout talking to API")
        job = await h.run_job()

        assert job.failure_reason == FailureReason.PROVISIONING_FAILED
        h.provider.terminate_instance.assert_called_once_with("inst-1")

    run_db_test(body)


def test_empty_dataset_fails_upload():
    async def body():
        h = Harness()

        async def run_confirmed(command, instance_id, deadline, timeout=None, check=True, heartbeat=None):
            return result("0\n")

        h.remote.run_confirmed.side_effect = run_confirmed
        job = await h.run_job()

        assert job.failure_reason == FailureReason.UPLOAD_FAILED
        h.ledger.refund.assert_called_once_with("tx-1", 15120, "upload_failed")
        h.monitor.run.assert_not_called()

    run_db_test(body)


def test_training_failure_charges_elapsed_time():
    async def body():
        h = Harness(outcome=TickOutcome.PROCESS_FAILED, training_hours=1)
        job = await h.run_job()

        assert job.status == TrainingJobStatus.FAILED
        assert job.failure_reason == FailureReason.TRAINING_FAILED
        assert not job.partial_result
        assert job.actual_cost_points == 4200
        h.ledger.refund.assert_called_once_with("tx-1", 10920, "training_failed")
        h.provider.terminate_instance.assert_called_once_with("inst-1")
        assert any("exited with an error" in m for m in h.user_messages())

    run_db_test(body)


def test_stall_timeout_stops_trainer_and_keeps_latest_checkpoint():
    async def body():
        h = Harness(outcome=TickOutcome.STALL_TIMEOUT, training_hours=1)
        job = await h.run_job()

        assert job.failure_reason == FailureReason.STALL_TIMEOUT
        assert job.partial_result
        assert job.artifact_path == ARTIFACT
        kill = h.remote.run.await_args.args[0]
        assert kill.startswith("kill -TERM")
        # The checkpoint is looked up before the instance is destroyed
        commands = [c.args[0] for c in h.remote.run_confirmed.await_args_list]
        assert "find" in commands[-1]
        assert any("latest checkpoint was saved" in m for m in h.user_messages())
        h.provider.terminate_instance.assert_called_once_with("inst-1")

    run_db_test(body)


def test_stall_without_checkpoint_claims_nothing():
    async def body():
        h = Harness(outcome=TickOutcome.STALL_TIMEOUT, training_hours=1)

        async def run_confirmed(command, instance_id, deadline, timeout=None, check=True, heartbeat=None):
            if "curl" in command:
                return result("12\n")
            return result("")

        h.remote.run_confirmed.side_effect = run_confirmed
        job = await h.run_job()

        assert job.failure_reason == FailureReason.STALL_TIMEOUT
        assert not job.partial_result
        assert job.artifact_path is None
        failure = [m for m in h.user_messages() if "failed because" in m]
        assert len(failure) == 1
        assert "checkpoint" not in failure[0]

    run_db_test(body)


def test_hard_timeout_keeps_checkpoint_and_charges_elapsed_time():
    async def body():
        h = Harness(outcome=TickOutcome.HARD_TIMEOUT, training_hours=3.6)
        job = await h.run_job()

        assert job.failure_reason == FailureReason.HARD_TIMEOUT
        assert job.partial_result
        assert job.artifact_path == ARTIFACT
        # 3.6h at $0.35 + 20% fee uses the whole prepayment
        assert job.actual_cost_points == 15120
        h.ledger.refund.assert_not_called()

    run_db_test(body)


def test_remote_waits_keep_the_job_heart_beating():
    async def body():
        h = Harness()
        h.store.touch = AsyncMock()

        async def run_confirmed(command, instance_id, deadline, timeout=None, check=True, heartbeat=None):
            # every step sits through one outage round before it gets through
            await heartbeat()
            if "curl" in command:
                return result("12\n")
            if "find" in command:
                return result(ARTIFACT + "\n")
            return result("")

        h.remote.run_confirmed.side_effect = run_confirmed
        job = await h.run_job()

        assert job.status == TrainingJobStatus.COMPLETED
        # dataset staging, launch and artifact lookup
        assert [c.args[0] for c in h.store.touch.await_args_list] == [job.id] * 3

    run_db_test(body)


def test_instance_lost_is_fully_refunded_and_alerts_ops():
    async def body():
        h = Harness(outcome=TickOutcome.INSTANCE_LOST, training_hours=1)
        job = await h.run_job()

        assert job.failure_reason == FailureReason.INSTANCE_LOST
        h.ledger.refund.assert_called_once_with("tx-1", 15120, "instance_lost")
        assert any("instance_lost" in m for m in h.ops_messages())

    run_db_test(body)


def test_refund_failure_raises_critical_alert():
    async def body():
        h = Harness(outcome=TickOutcome.INSTANCE_LOST)
        h.ledger.refund.side_effect = LedgerError("ledger down", status_code=503)
        job = await h.run_job()

        assert job.status == TrainingJobStatus.FAILED
        assert job.cost_reconciled
        critical = [
            c for c in h.notifier.notify_ops.call_args_list if c.kwargs.get("severity") == "critical"
        ]
        assert len(critical) == 1
        assert "Refund FAILED" in critical[0].args[0]

    run_db_test(body)


def test_termination_failure_does_not_break_processing():
    async def body():
        h = Harness()
        h.provider.terminate_instance.side_effect = VastAIError("api down", status_code=500)
        job = await h.run_job()

        assert job.status == TrainingJobStatus.COMPLETED
        assert job.instance_terminated_at is None
        assert job.termination_attempts == 5
        critical = [
            c for c in h.notifier.notify_ops.call_args_list if c.kwargs.get("severity") == "critical"
        ]
        assert len(critical) == 1

    run_db_test(body)


def test_sweeper_failing_the_job_mid_run_is_respected():
    async def body():
        h = Harness()

        async def swept_while_training():
            await h.store.mark_failed(
                h.monitor_factory.call_args.args[0].id, FailureReason.STUCK_SWEEPER_CLEANUP, "no heartbeat"
            )
            return TickResult(TickOutcome.FINISHED)

        h.monitor.run.side_effect = swept_while_training
        job = await h.run_job()

        assert job.status == TrainingJobStatus.FAILED
        assert job.failure_reason == FailureReason.STUCK_SWEEPER_CLEANUP
        h.ledger.refund.assert_called_once()
        h.provider.terminate_instance.assert_called_once_with("inst-1")
        # The user already heard nothing from us about a failure we did not record
        assert not any("failed because" in m for m in h.user_messages())

    run_db_test(body)
