"""
Tortoise ORM models for TrainKeeper database.
Exports all models for easy import.
"""

from models.training_job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    FailureReason,
    InvalidTransitionError,
    TrainingJob,
    TrainingJobStatus,
)

__all__ = [
    # Models
    "TrainingJob",
    # Enums
    "TrainingJobStatus",
    "FailureReason",
    # State machine
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "InvalidTransitionError",
]
