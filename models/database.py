"""
Database configuration for Tortoise ORM
"""

import logging
from typing import Optional

from tortoise import Tortoise
from app.config import settings

logger = logging.getLogger(__name__)

MODEL_MODULES = ["models.training_job"]


def build_tortoise_config(db_url: Optional[str] = None) -> dict:
    """Tortoise ORM configuration. SQLite by default, PostgreSQL via DB_URL."""
    db_url = db_url or settings.db_url
    if db_url.startswith("sqlite://") and ":memory:" not in db_url:
        connection = {
            "engine": "tortoise.backends.sqlite",
            "credentials": {
                "file_path": db_url[len("sqlite://"):],
                "journal_mode": "WAL",
                "synchronous": "NORMAL",
            },
        }
    else:
        connection = db_url

    return {
        "connections": {"default": connection},
        "apps": {
            "models": {
                "models": MODEL_MODULES,
                "default_connection": "default",
            }
        },
        "use_tz": True,
        "timezone": "UTC",
    }


async def init_db(db_url: Optional[str] = None) -> None:
    """Initialize database connection and create missing tables"""
    await Tortoise.init(config=build_tortoise_config(db_url))
    await Tortoise.generate_schemas(safe=True)
    logger.info("Database initialized")


async def close_db() -> None:
    """Close database connections"""
    await Tortoise.close_connections()
