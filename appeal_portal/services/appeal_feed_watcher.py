from __future__ import annotations

import asyncio
import contextlib
import logging

from appeal_portal.config import settings
from appeal_portal.services.appeal_feed import AppealFeed, RedisChangeBus

logger = logging.getLogger(__name__)


async def run_appeal_feed_listener(feed: AppealFeed, bus: RedisChangeBus) -> None:
    interval = max(settings.feed_listener_retry_seconds, 1)
    while True:
        try:
            async for _ in bus.listen():
                refreshed = await feed.refresh()
                if refreshed:
                    logger.debug("Appeal feed pushed snapshots to %s subscriber(s)", refreshed)
            logger.warning("Appeal feed listener lost its channel subscription; reconnecting")
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Appeal feed listener failed: %s", exc)
            await asyncio.sleep(interval)


async def cancel_watcher(task: asyncio.Task[None] | None) -> None:
    if task is None:
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
