"""
Phase 11: API Endpoints

Tests for the submission and audit API, calling the route handlers directly
against an in-memory database:
1. Submitted jobs are always QUEUED; status cannot be supplied
2. Lookup / listing / 404s
3. Cost estimate endpoint
4. Orphan and stuck audits

Run: pytest tests/test_11_api_endpoints.py
"""

import asyncio
import os
import sys
from datetime import timedelta

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.api import api_router
from app.api import endpoints
from app.models.schemas import EstimateRequest, JobCreateRequest
from models.database import close_db, init_db
from models.training_job import TrainingJob, TrainingJobStatus
from scripts.utils import utc_now

DB_URL = "sqlite://:memory:"


def run_db_test(test_fn):
    async def runner():
        await init_db(DB_URL)
        try:
            await test_fn()
        finally:
            await close_db()

    asyncio.run(runner())


def job_request(**overrides) -> JobCreateRequest:
    payload = dict(
        user_id="user-1",
        model_name="style-lora",
        base_model="FLUX",
        steps=2000,
        dataset_url="https://example.com/ds.zip",
        dataset_size=20,
        environment="test",
    )
    payload.update(overrides)
    return JobCreateRequest(**payload)


def test_routes_are_mounted_under_v1():
    paths = {route.path for route in api_router.routes}
    assert "/api/v1/jobs" in paths
    assert "/api/v1/jobs/{job_id}" in paths
    assert "/api/v1/estimate" in paths
    assert "/api/v1/audit/orphans" in paths
    assert "/api/v1/audit/stuck" in paths


def test_status_cannot_be_submitted():
    with pytest.raises(ValidationError):
        job_request(status="completed")


def test_invalid_steps_rejected():
    with pytest.raises(ValidationError):
        job_request(steps=0)


def test_create_and_get_job():
    async def body():
        created = await endpoints.create_job(job_request())
        assert created.status == "queued"
        assert created.environment == "test"

        fetched = await endpoints.get_job(created.id)
        assert fetched.id == created.id
        assert fetched.model_name == "style-lora"
        assert fetched.instance_id is None

    run_db_test(body)


def test_get_job_not_found():
    async def body():
        with pytest.raises(HTTPException) as exc_info:
            await endpoints.get_job("not-a-uuid")
        assert exc_info.value.status_code == 404

        with pytest.raises(HTTPException) as exc_info:
            await endpoints.get_job("00000000-0000-0000-0000-000000000000")
        assert exc_info.value.status_code == 404

    run_db_test(body)


def test_list_jobs_filters():
    async def body():
        await endpoints.create_job(job_request(environment="prod"))
        await endpoints.create_job(job_request(environment="prod"))
        other = await endpoints.create_job(job_request(environment="staging"))
        await TrainingJob.filter(id=other.id).update(status=TrainingJobStatus.FAILED)

        everything = await endpoints.list_jobs(status=None, environment=None, limit=50)
        assert everything.count == 3

        prod = await endpoints.list_jobs(status=None, environment="prod", limit=50)
        assert prod.count == 2

        failed = await endpoints.list_jobs(status=TrainingJobStatus.FAILED, environment=None, limit=50)
        assert [j.id for j in failed.jobs] == [other.id]

        limited = await endpoints.list_jobs(status=None, environment=None, limit=1)
        assert limited.count == 1

    run_db_test(body)


def test_estimate_endpoint():
    async def body():
        response = await endpoints.estimate_cost(EstimateRequest(base_model="FLUX", steps=2000, dataset_size=20))
        assert response.estimated_points == 15120
        assert response.source == "default"
        assert response.gpu_rate == pytest.approx(0.35)

    run_db_test(body)


def test_audit_endpoints():
    async def body():
        orphan = await endpoints.create_job(job_request())
        await TrainingJob.filter(id=orphan.id).update(
            status=TrainingJobStatus.COMPLETED, instance_id="inst-1"
        )
        stuck = await endpoints.create_job(job_request())
        await TrainingJob.filter(id=stuck.id).update(
            status=TrainingJobStatus.TRAINING, updated_at=utc_now() - timedelta(hours=3)
        )

        orphans = await endpoints.audit_orphans()
        assert [j.id for j in orphans.jobs] == [orphan.id]

        stuck_default = await endpoints.audit_stuck(threshold_seconds=None)
        assert [j.id for j in stuck_default.jobs] == [stuck.id]

        stuck_strict = await endpoints.audit_stuck(threshold_seconds=4 * 3600)
        assert stuck_strict.count == 0

    run_db_test(body)
