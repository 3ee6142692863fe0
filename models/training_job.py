"""
TrainingJob model - one prepaid fine-tuning request and its rented instance
"""

from enum import Enum
from typing import FrozenSet
from tortoise import fields
from tortoise.models import Model


class InvalidTransitionError(RuntimeError):
    """Raised when code asks for a status change the state machine forbids."""

    def __init__(self, current: "TrainingJobStatus", target: "TrainingJobStatus"):
        super().__init__(f"Invalid status transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


class TrainingJobStatus(str, Enum):
    """Status enum for TrainingJob, declared in lifecycle order"""

    QUEUED = "queued"
    PROVISIONING = "provisioning"
    UPLOADING = "uploading"
    TRAINING = "training"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @classmethod
    def can_transition(cls, current: "TrainingJobStatus", target: "TrainingJobStatus") -> bool:
        """Forward by exactly one step, to FAILED from any non-terminal state,
        or re-assert the current status."""
        if current == target:
            return True
        if current.is_terminal:
            return False
        if target == cls.FAILED:
            return True
        return LIFECYCLE.index(target) == LIFECYCLE.index(current) + 1

    @classmethod
    def predecessors(cls, target: "TrainingJobStatus") -> FrozenSet["TrainingJobStatus"]:
        """All statuses from which ``target`` may be reached."""
        return frozenset(s for s in cls if s != target and cls.can_transition(s, target))


# Happy-path order; FAILED is reachable from every non-terminal entry.
LIFECYCLE = (
    TrainingJobStatus.QUEUED,
    TrainingJobStatus.PROVISIONING,
    TrainingJobStatus.UPLOADING,
    TrainingJobStatus.TRAINING,
    TrainingJobStatus.FINALIZING,
    TrainingJobStatus.COMPLETED,
)

TERMINAL_STATUSES = frozenset({TrainingJobStatus.COMPLETED, TrainingJobStatus.FAILED})

ACTIVE_STATUSES = frozenset(
    {
        TrainingJobStatus.PROVISIONING,
        TrainingJobStatus.UPLOADING,
        TrainingJobStatus.TRAINING,
        TrainingJobStatus.FINALIZING,
    }
)


class FailureReason(str, Enum):
    """Machine-readable failure tags stored in TrainingJob.failure_reason"""

    INSUFFICIENT_BALANCE = "insufficient_balance"
    BILLING_ERROR = "billing_error"
    PROVISIONING_FAILED = "provisioning_failed"
    UPLOAD_FAILED = "upload_failed"
    REMOTE_UNREACHABLE = "remote_unreachable"
    INSTANCE_LOST = "instance_lost"
    TRAINING_FAILED = "training_failed"
    STALL_TIMEOUT = "stall_timeout"
    HARD_TIMEOUT = "hard_timeout"
    FINALIZATION_FAILED = "finalization_failed"
    STUCK_SWEEPER_CLEANUP = "stuck_sweeper_cleanup"
    UNEXPECTED_ERROR = "unexpected_error"


class TrainingJob(Model):
    """
    Training Job Table - the single shared record between worker, sweeper and API
    """

    id = fields.UUIDField(pk=True)
    environment = fields.CharField(max_length=64, index=True)
    user_id = fields.CharField(max_length=255, index=True)

    # Request
    model_name = fields.CharField(max_length=255)
    base_model = fields.CharField(max_length=64)
    steps = fields.IntField()
    dataset_size = fields.IntField(default=0)
    dataset_url = fields.TextField()
    training_config = fields.JSONField(null=True)
    metadata = fields.JSONField(null=True)

    status = fields.CharEnumField(
        TrainingJobStatus, max_length=32, default=TrainingJobStatus.QUEUED, index=True
    )

    # Billing
    estimated_cost_points = fields.IntField(null=True)
    charge_transaction_id = fields.CharField(max_length=255, null=True)
    actual_cost_points = fields.IntField(null=True)
    cost_reconciled = fields.BooleanField(default=False)
    cost_overage_points = fields.IntField(null=True)

    # Remote resource (null until provisioning succeeds)
    instance_id = fields.CharField(max_length=64, null=True, index=True)
    offer_id = fields.CharField(max_length=64, null=True)
    gpu_type = fields.CharField(max_length=128, null=True)
    hourly_rate = fields.FloatField(null=True)
    ssh_host = fields.CharField(max_length=255, null=True)
    ssh_port = fields.IntField(null=True)
    provisioned_at = fields.DatetimeField(null=True)

    # Timing
    created_at = fields.DatetimeField(null=True)
    updated_at = fields.DatetimeField(null=True, index=True)
    training_started_at = fields.DatetimeField(null=True)
    soft_timeout_at = fields.DatetimeField(null=True)
    hard_timeout_at = fields.DatetimeField(null=True)
    soft_timeout_notified = fields.BooleanField(default=False)

    # Progress
    current_step = fields.IntField(null=True)
    total_steps = fields.IntField(null=True)
    current_loss = fields.FloatField(null=True)
    progress = fields.IntField(default=0)

    # Termination bookkeeping
    instance_terminated_at = fields.DatetimeField(null=True)
    termination_attempts = fields.IntField(default=0)

    # Outcome
    failure_reason = fields.CharEnumField(FailureReason, max_length=64, null=True)
    failure_detail = fields.TextField(null=True)
    partial_result = fields.BooleanField(default=False)
    artifact_path = fields.TextField(null=True)
    completed_at = fields.DatetimeField(null=True)

    class Meta:
        table = "training_job"

    def __str__(self):
        return f"TrainingJob({self.id} {self.model_name} {self.status.value})"
