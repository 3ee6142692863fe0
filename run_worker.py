#!/usr/bin/env python3
"""
Start the training worker: poll the queue and process one job at a time.

SIGINT/SIGTERM stop polling and wait (bounded) for the in-flight job; a
second signal, or running out of patience, cancels it and exits. The
sweeper cleans up whatever is left behind.
"""

import argparse
import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

from app.config import settings
from app.services.job_store import JobStore
from app.services.notifier import TrainingNotifier
from app.services.training_job_processor import TrainingJobProcessor
from app.services.training_orchestrator import TrainingOrchestrator
from models.database import close_db, init_db
from scripts.file_logger import configure_logging
from scripts.ledger_client import LedgerClient
from scripts.vast_client import VastAIClient

logger = logging.getLogger("run_worker")


def build_orchestrator(environment: str = None) -> TrainingOrchestrator:
    job_store = JobStore()
    notifier = TrainingNotifier()
    processor = TrainingJobProcessor(
        job_store=job_store,
        provider=VastAIClient(),
        ledger=LedgerClient(),
        notifier=notifier,
    )
    return TrainingOrchestrator(job_store, processor, notifier, environment=environment)


async def main(args) -> int:
    load_dotenv()
    await init_db(args.db_url)
    logger.info("✅ Database connected successfully")

    orchestrator = build_orchestrator(args.environment)
    worker = asyncio.create_task(orchestrator.run())
    shutdown_requested = asyncio.Event()

    def _on_signal(signame: str):
        if shutdown_requested.is_set():
            logger.warning(f"Second {signame}, cancelling in-flight work")
            worker.cancel()
            return
        logger.info(f"Received {signame}, shutting down")
        shutdown_requested.set()
        orchestrator.request_stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal, sig.name)

    exit_code = 0
    try:
        stop_waiter = asyncio.create_task(shutdown_requested.wait())
        await asyncio.wait({worker, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        stop_waiter.cancel()
        graceful = await orchestrator.shutdown(args.max_wait)
        if not graceful:
            logger.error("⚠️ In-flight job did not finish in time, cancelling")
            worker.cancel()
            exit_code = 1
        try:
            await worker
        except asyncio.CancelledError:
            pass
    finally:
        await orchestrator.notifier.drain(timeout=10)
        await close_db()
        logger.info("✅ Database connection closed")
    return exit_code


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="TrainKeeper training worker")
    parser.add_argument("--environment", default=settings.training_environment,
                        help="Only claim jobs tagged with this environment")
    parser.add_argument("--db-url", default=None, help="Override DB_URL")
    parser.add_argument("--max-wait", type=float, default=settings.shutdown_max_wait_seconds,
                        help="Seconds to wait for the in-flight job on shutdown")
    return parser.parse_args(argv)


if __name__ == "__main__":
    configure_logging("worker", settings.log_dir)
    sys.exit(asyncio.run(main(parse_args())))
