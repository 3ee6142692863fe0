"""
Phase 6: Termination Manager

Tests for TerminationManager:
1. Retries until the provider confirms, recording attempts on the job
2. Exhausted retries raise and alert ops exactly once
3. A 404 (already gone) counts as success
4. Works without a job record (untracked instances)

Run: pytest tests/test_06_termination_manager.py
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, Mock

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.services.exceptions import TerminationFailedError
from app.services.job_store import JobStore
from app.services.termination_manager import TerminationManager
from models.database import close_db, init_db
from scripts.vast_client import VastAIError

DB_URL = "sqlite://:memory:"
BACKOFF = [5, 15, 30, 60, 120]


def make_manager(provider, store=None, notifier=None):
    sleep = AsyncMock()
    store = store or Mock(
        mark_instance_terminated=AsyncMock(), increment_termination_attempts=AsyncMock()
    )
    notifier = notifier or Mock()
    manager = TerminationManager(
        provider, store, notifier, backoff=BACKOFF, max_attempts=5, sleep=sleep
    )
    return manager, store, notifier, sleep


def test_succeeds_on_fifth_attempt_without_alert():
    provider = Mock()
    provider.terminate_instance.side_effect = [VastAIError("boom", status_code=500)] * 4 + [True]
    manager, store, notifier, sleep = make_manager(provider)

    attempts = asyncio.run(manager.terminate("job-1", "inst-1"))

    assert attempts == 5
    assert provider.terminate_instance.call_count == 5
    assert store.increment_termination_attempts.await_count == 4
    store.mark_instance_terminated.assert_awaited_once_with("job-1", count_attempt=True)
    assert [c.args[0] for c in sleep.await_args_list] == [5, 15, 30, 60]
    notifier.notify_ops.assert_not_called()


def test_all_attempts_fail_alerts_once_and_raises():
    provider = Mock()
    provider.terminate_instance.side_effect = VastAIError("boom", status_code=500)
    manager, store, notifier, sleep = make_manager(provider)

    with pytest.raises(TerminationFailedError) as exc_info:
        asyncio.run(manager.terminate("job-1", "inst-1"))

    assert exc_info.value.attempts == 5
    assert exc_info.value.instance_id == "inst-1"
    assert store.increment_termination_attempts.await_count == 5
    store.mark_instance_terminated.assert_not_called()
    assert sleep.await_count == 4

    notifier.notify_ops.assert_called_once()
    kwargs = notifier.notify_ops.call_args.kwargs
    assert kwargs["severity"] == "critical"
    assert kwargs["data"]["instance_id"] == "inst-1"
    assert kwargs["data"]["attempts"] == 5


def test_already_gone_counts_as_terminated():
    provider = Mock()
    provider.terminate_instance.return_value = False
    manager, store, notifier, _ = make_manager(provider)

    assert asyncio.run(manager.terminate("job-1", "inst-1")) == 1
    store.mark_instance_terminated.assert_awaited_once_with("job-1", count_attempt=True)


def test_nothing_to_terminate():
    provider = Mock()
    manager, store, _, _ = make_manager(provider)

    assert asyncio.run(manager.terminate("job-1", None)) == 0
    provider.terminate_instance.assert_not_called()


def test_untracked_instance_without_job():
    provider = Mock()
    provider.terminate_instance.side_effect = [VastAIError("busy"), True]
    manager, store, _, _ = make_manager(provider)

    assert asyncio.run(manager.terminate(None, "inst-stray")) == 2
    store.mark_instance_terminated.assert_not_called()
    store.increment_termination_attempts.assert_not_called()


def test_attempts_accumulate_across_managers():
    """A worker gives up after 5 tries, a second manager (the sweeper)
    then succeeds; the record keeps all 6 attempts."""
    async def body():
        store = JobStore()
        job = await store.create_job(
            user_id="user-1",
            environment="test",
            model_name="lora",
            base_model="FLUX",
            steps=1000,
            dataset_url="https://example.com/ds.zip",
        )
        await store.set_instance_info(job.id, "inst-9")

        provider = Mock()
        provider.terminate_instance.side_effect = VastAIError("boom", status_code=500)
        manager, _, notifier, _ = make_manager(provider, store=store)

        with pytest.raises(TerminationFailedError):
            await manager.terminate(job.id, "inst-9")

        fetched = await store.get_job(job.id)
        assert fetched.termination_attempts == 5
        assert fetched.instance_terminated_at is None

        provider.terminate_instance.side_effect = None
        provider.terminate_instance.return_value = True
        backstop, _, _, _ = make_manager(provider, store=store)
        assert await backstop.terminate(job.id, "inst-9") == 1
        fetched = await store.get_job(job.id)
        assert fetched.instance_terminated_at is not None
        assert fetched.termination_attempts == 6

    async def runner():
        await init_db(DB_URL)
        try:
            await body()
        finally:
            await close_db()

    asyncio.run(runner())
