"""Error taxonomy shared by the job processor, monitor, terminator and sweeper."""

from typing import Optional

from models.training_job import FailureReason


class WorkflowError(Exception):
    """Base exception for workflow errors."""

    failure_reason: FailureReason = FailureReason.UNEXPECTED_ERROR

    def __init__(self, message: str, job_id: str = None, failure_reason: Optional[FailureReason] = None):
        super().__init__(message)
        self.job_id = job_id
        if failure_reason is not None:
            self.failure_reason = failure_reason


class InsufficientBalanceError(WorkflowError):
    """The user cannot afford the prepaid estimate. Never reaches an instance."""

    failure_reason = FailureReason.INSUFFICIENT_BALANCE


class BillingError(WorkflowError):
    """The ledger failed while charging."""

    failure_reason = FailureReason.BILLING_ERROR


class ProvisioningFailure(WorkflowError):
    """No usable instance was obtained."""

    failure_reason = FailureReason.PROVISIONING_FAILED


class UploadError(WorkflowError):
    """Raised when dataset staging fails."""

    failure_reason = FailureReason.UPLOAD_FAILED


class TrainingExecutionError(WorkflowError):
    """Raised when the training process fails or cannot be launched."""

    failure_reason = FailureReason.TRAINING_FAILED


class FinalizationError(WorkflowError):
    """Raised when no artifact could be produced after training."""

    failure_reason = FailureReason.FINALIZATION_FAILED


class RemoteUnreachableError(WorkflowError):
    """Connection-class failures persisted through the whole backoff schedule.

    This says nothing about whether the training is alive; check the
    provider before treating it as job death.
    """

    failure_reason = FailureReason.REMOTE_UNREACHABLE

    def __init__(self, message: str, attempts: int = 0, job_id: str = None):
        super().__init__(message, job_id=job_id)
        self.attempts = attempts


class RemoteCommandError(WorkflowError):
    """A remote command ran and exited non-zero."""

    def __init__(self, message: str, return_code: Optional[int] = None, stderr: str = "", job_id: str = None):
        super().__init__(message, job_id=job_id)
        self.return_code = return_code
        self.stderr = stderr


class RemoteCommandTimeout(WorkflowError):
    """A remote command outlived its per-call timeout."""


class InstanceLostError(WorkflowError):
    """The provider reports the instance is no longer running."""

    failure_reason = FailureReason.INSTANCE_LOST

    def __init__(self, message: str, provider_status: Optional[str] = None, job_id: str = None):
        super().__init__(message, job_id=job_id)
        self.provider_status = provider_status


class StallTimeoutError(WorkflowError):
    failure_reason = FailureReason.STALL_TIMEOUT


class HardTimeoutError(WorkflowError):
    failure_reason = FailureReason.HARD_TIMEOUT


class TerminationFailedError(WorkflowError):
    """Critical: the instance could not be destroyed and is still billing."""

    def __init__(self, message: str, instance_id: str, attempts: int, job_id: str = None):
        super().__init__(message, job_id=job_id)
        self.instance_id = instance_id
        self.attempts = attempts
