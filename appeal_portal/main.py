from __future__ import annotations

import asyncio
import logging

import uvicorn

from appeal_portal.config import settings
from appeal_portal.db.session import dispose_database, ping_database
from appeal_portal.infra.redis_client import close_redis, ping_redis
from appeal_portal.logging_setup import configure_logging

logger = logging.getLogger(__name__)


async def startup_checks() -> None:
    await ping_database()
    if settings.feed_enabled:
        await ping_redis()
        logger.info("Startup checks passed: database and redis are available")
    else:
        logger.info("Startup checks passed: database is available (live feed bus disabled)")


async def run() -> None:
    configure_logging(settings.log_level)
    settings.resolved_session_secret()
    if settings.normalized_admin_email() is None:
        logger.warning("ADMIN_EMAIL is empty; nobody can open the staff dashboard")

    await startup_checks()
    config = uvicorn.Config(
        "appeal_portal.web.main:app",
        host=settings.web_host,
        port=settings.web_port,
        log_config=None,
    )
    server = uvicorn.Server(config)
    try:
        await server.serve()
    finally:
        await close_redis()
        await dispose_database()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
