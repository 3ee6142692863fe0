"""
Service layer: job store, cost model, remote execution, monitoring,
termination and the worker/sweeper loops.
"""

from .job_store import JobStore
from .cost_estimator import CostEstimator, CostEstimate
from .stall_detector import StallDetector, StallVerdict
from .termination_manager import TerminationManager
from .training_job_processor import TrainingJobProcessor
from .training_orchestrator import TrainingOrchestrator
from .instance_sweeper import InstanceSweeper, SweepReport

__all__ = [
    "JobStore",
    "CostEstimator",
    "CostEstimate",
    "StallDetector",
    "StallVerdict",
    "TerminationManager",
    "TrainingJobProcessor",
    "TrainingOrchestrator",
    "InstanceSweeper",
    "SweepReport",
]
