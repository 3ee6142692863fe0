"""
Pydantic request/response schemas for the TrainKeeper API.
"""

from .schemas import (
    EstimateRequest,
    EstimateResponse,
    JobCreateRequest,
    JobListResponse,
    JobResponse,
)

__all__ = [
    "EstimateRequest",
    "EstimateResponse",
    "JobCreateRequest",
    "JobListResponse",
    "JobResponse",
]
