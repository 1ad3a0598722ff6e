"""
Bank Reconciliation Core - Application Runtime

Startup and shutdown for processes embedding the reconciliation engine:
structured logging, Sentry, configuration checks, database connectivity and
the shared bank feed cache.

Run a one-off bank feed sync with: python app.py sync
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from config import Settings, get_settings
from database import dispose_engine, init_db
from logging_config import setup_logging
from reconciliation import BankFeedCache
from sentry_integration import init_sentry

logger = logging.getLogger(__name__)


def configure_observability(settings: Optional[Settings] = None) -> bool:
    """
    Configure logging and error tracking.
    JSON logs in production, plain text elsewhere.

    Returns:
        True if Sentry was initialized
    """
    settings = settings or get_settings()

    setup_logging(
        level=settings.LOG_LEVEL,
        json_format=settings.is_production,
        service_name="bank-reconciliation"
    )

    if not settings.SENTRY_DSN:
        return False
    return init_sentry(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
    )


@asynccontextmanager
async def lifespan(settings: Optional[Settings] = None) -> AsyncIterator[BankFeedCache]:
    """Application lifespan: yields the bank feed cache shared by every request."""
    settings = settings or get_settings()

    logger.info("=" * 60)
    logger.info("Starting bank reconciliation core...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug Mode: {settings.debug_enabled}")
    logger.info("=" * 60)

    errors = settings.validate_production_config()
    for error in errors:
        logger.error(f"Configuration Error: {error}")
    if errors and settings.is_production:
        raise RuntimeError("Cannot start in production with invalid configuration")

    try:
        await init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    try:
        yield BankFeedCache.from_settings(settings)
    finally:
        logger.info("Shutting down bank reconciliation core...")
        await dispose_engine()


async def run_sync(force: bool = False) -> dict:
    """Sync the bank feed once and return the cache statistics."""
    async with lifespan() as cache:
        result = await cache.sync(force=force)
        logger.info(f"Synced {result.synced} bank transactions ({result.total} cached)")
        return await cache.get_cache_stats()


if __name__ == "__main__":
    configure_observability()
    if sys.argv[1:] and sys.argv[1] == "sync":
        stats = asyncio.run(run_sync(force="--force" in sys.argv))
        print(stats)
    else:
        print("usage: python app.py sync [--force]")
        sys.exit(2)
