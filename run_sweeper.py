#!/usr/bin/env python3
"""
Start the orphan/stuck-job sweeper.

    python run_sweeper.py            # loop every SWEEPER_INTERVAL_SECONDS
    python run_sweeper.py --once     # single cycle, for cron
"""

import argparse
import asyncio
import json
import logging
import signal
import sys

from dotenv import load_dotenv

from app.config import settings
from app.services.instance_sweeper import InstanceSweeper
from app.services.job_store import JobStore
from app.services.notifier import TrainingNotifier
from models.database import close_db, init_db
from scripts.file_logger import configure_logging
from scripts.ledger_client import LedgerClient
from scripts.vast_client import VastAIClient

logger = logging.getLogger("run_sweeper")


async def main(args) -> int:
    load_dotenv()
    await init_db(args.db_url)

    notifier = TrainingNotifier()
    sweeper = InstanceSweeper(
        job_store=JobStore(),
        provider=VastAIClient(),
        notifier=notifier,
        ledger=LedgerClient(),
        interval=args.interval,
    )

    try:
        if args.once:
            report = await sweeper.sweep()
            print(json.dumps(report.as_dict(), indent=2))
            return 1 if report.errors else 0

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        await sweeper.run_forever(stop_event)
        return 0
    finally:
        await notifier.drain(timeout=10)
        await close_db()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="TrainKeeper instance sweeper")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument("--interval", type=float, default=settings.sweeper_interval_seconds)
    parser.add_argument("--db-url", default=None, help="Override DB_URL")
    return parser.parse_args(argv)


if __name__ == "__main__":
    configure_logging("sweeper", settings.log_dir)
    sys.exit(asyncio.run(main(parse_args())))
