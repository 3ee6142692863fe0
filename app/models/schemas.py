from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from models.training_job import TrainingJob


class JobCreateRequest(BaseModel):
    """Submission payload. Status is not accepted; new jobs are always queued."""

    user_id: str = Field(..., min_length=1)
    model_name: str = Field(..., min_length=1, max_length=255)
    base_model: str = Field("FLUX", description="Model family: FLUX, SDXL or SD1.5")
    steps: int = Field(..., gt=0, le=100_000)
    dataset_url: str = Field(..., min_length=1)
    dataset_size: int = Field(0, ge=0, description="Number of items in the dataset")
    environment: Optional[str] = None
    training_config: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None

    class Config:
        extra = "forbid"
        json_schema_extra = {
            "example": {
                "user_id": "user-123",
                "model_name": "my-style-lora",
                "base_model": "FLUX",
                "steps": 2000,
                "dataset_url": "https://example.com/datasets/my-style.zip",
                "dataset_size": 24,
            }
        }


class JobResponse(BaseModel):
    id: str
    environment: str
    user_id: str
    model_name: str
    base_model: str
    steps: int
    status: str
    estimated_cost_points: Optional[int] = None
    actual_cost_points: Optional[int] = None
    cost_reconciled: bool = False
    instance_id: Optional[str] = None
    gpu_type: Optional[str] = None
    current_step: Optional[int] = None
    total_steps: Optional[int] = None
    current_loss: Optional[float] = None
    progress: int = 0
    failure_reason: Optional[str] = None
    failure_detail: Optional[str] = None
    partial_result: bool = False
    artifact_path: Optional[str] = None
    termination_attempts: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    soft_timeout_at: Optional[datetime] = None
    hard_timeout_at: Optional[datetime] = None
    instance_terminated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: TrainingJob) -> "JobResponse":
        return cls(
            id=str(job.id),
            environment=job.environment,
            user_id=job.user_id,
            model_name=job.model_name,
            base_model=job.base_model,
            steps=job.steps,
            status=job.status.value,
            estimated_cost_points=job.estimated_cost_points,
            actual_cost_points=job.actual_cost_points,
            cost_reconciled=job.cost_reconciled,
            instance_id=job.instance_id,
            gpu_type=job.gpu_type,
            current_step=job.current_step,
            total_steps=job.total_steps,
            current_loss=job.current_loss,
            progress=job.progress,
            failure_reason=job.failure_reason.value if job.failure_reason else None,
            failure_detail=job.failure_detail,
            partial_result=job.partial_result,
            artifact_path=job.artifact_path,
            termination_attempts=job.termination_attempts,
            created_at=job.created_at,
            updated_at=job.updated_at,
            soft_timeout_at=job.soft_timeout_at,
            hard_timeout_at=job.hard_timeout_at,
            instance_terminated_at=job.instance_terminated_at,
            completed_at=job.completed_at,
        )


class JobListResponse(BaseModel):
    jobs: List[JobResponse]
    count: int


class EstimateRequest(BaseModel):
    base_model: str = "FLUX"
    steps: int = Field(..., gt=0, le=100_000)
    dataset_size: int = Field(0, ge=0)
    gpu_class: Optional[str] = None


class EstimateResponse(BaseModel):
    estimated_points: int
    estimated_hours: float
    buffered_hours: float
    gpu_rate: float
    total_cost_usd: float
    buffered_cost_usd: float
    source: str
