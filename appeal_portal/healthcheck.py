from __future__ import annotations

import asyncio

from appeal_portal.config import settings
from appeal_portal.db.session import ping_database
from appeal_portal.infra.redis_client import close_redis, ping_redis


async def check() -> int:
    try:
        await ping_database()
        if settings.feed_enabled:
            await ping_redis()
        await close_redis()
        return 0
    except Exception:
        return 1


def main() -> None:
    raise SystemExit(asyncio.run(check()))


if __name__ == "__main__":
    main()
