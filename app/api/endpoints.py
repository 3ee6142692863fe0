import logging
import uuid
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from app.config import settings
from app.models.schemas import (
    EstimateRequest,
    EstimateResponse,
    JobCreateRequest,
    JobListResponse,
    JobResponse,
)
from app.services.cost_estimator import CostEstimator
from app.services.job_store import JobStore
from models.training_job import TrainingJobStatus

router = APIRouter()


def setup_logger(name: str) -> logging.Logger:
    """
    Configure and return a logger with the given name.

    Args:
        name: Name of the logger

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.setLevel(logging.INFO)
        logger.propagate = False

        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


logger = setup_logger("APIEndpoints")

job_store = JobStore()
cost_estimator = CostEstimator(job_store)


@router.post("/jobs", response_model=JobResponse, status_code=201)
async def create_job(request: JobCreateRequest) -> JobResponse:
    """Enqueue a training job. It starts in QUEUED and the worker takes it from there."""
    job = await job_store.create_job(
        user_id=request.user_id,
        environment=request.environment or settings.training_environment,
        model_name=request.model_name,
        base_model=request.base_model,
        steps=request.steps,
        dataset_url=request.dataset_url,
        dataset_size=request.dataset_size,
        training_config=request.training_config,
        metadata=request.metadata,
    )
    logger.info(f"📥 Job {job.id} submitted by {request.user_id}")
    return JobResponse.from_job(job)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str) -> JobResponse:
    try:
        parsed = uuid.UUID(job_id)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

    job = await job_store.get_job(parsed)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return JobResponse.from_job(job)


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    status: Optional[TrainingJobStatus] = None,
    environment: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
) -> JobListResponse:
    jobs = await job_store.list_jobs(status=status, environment=environment, limit=limit)
    return JobListResponse(jobs=[JobResponse.from_job(j) for j in jobs], count=len(jobs))


@router.post("/estimate", response_model=EstimateResponse)
async def estimate_cost(request: EstimateRequest) -> EstimateResponse:
    estimate = await cost_estimator.estimate(
        request.base_model, request.steps, request.dataset_size, request.gpu_class
    )
    return EstimateResponse(
        estimated_points=estimate.estimated_points,
        estimated_hours=estimate.estimated_hours,
        buffered_hours=estimate.buffered_hours,
        gpu_rate=estimate.gpu_rate,
        total_cost_usd=estimate.total_cost_usd,
        buffered_cost_usd=estimate.buffered_cost_usd,
        source=estimate.source,
    )


@router.get("/audit/orphans", response_model=JobListResponse)
async def audit_orphans() -> JobListResponse:
    """Terminal jobs whose instance has not been confirmed destroyed."""
    jobs = await job_store.find_orphan_candidates()
    return JobListResponse(jobs=[JobResponse.from_job(j) for j in jobs], count=len(jobs))


@router.get("/audit/stuck", response_model=JobListResponse)
async def audit_stuck(
    threshold_seconds: Optional[int] = Query(None, ge=60),
) -> JobListResponse:
    """Active jobs without a heartbeat within the threshold."""
    threshold = timedelta(seconds=threshold_seconds or settings.stuck_job_threshold_seconds)
    jobs = await job_store.find_stuck_jobs(threshold)
    return JobListResponse(jobs=[JobResponse.from_job(j) for j in jobs], count=len(jobs))
