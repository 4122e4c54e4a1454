from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appeal_portal.db.models import Appeal
from appeal_portal.services.appeal_service import list_appeals

logger = logging.getLogger(__name__)

CHANGE_MESSAGE = "changed"


@dataclass(slots=True)
class AppealSnapshot:
    version: int
    appeals: list[Appeal]


class AppealSubscription:
    """Ordered stream of snapshots for one viewer.

    Only the most recent undelivered snapshot is kept; a slow consumer skips
    intermediate states but never sees them out of order.
    """

    def __init__(self, feed: AppealFeed, *, uid: str | None) -> None:
        self._feed = feed
        self.uid = uid
        self._queue: asyncio.Queue[AppealSnapshot | None] = asyncio.Queue(maxsize=1)
        self._version = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _replace_pending(self, item: AppealSnapshot | None) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(item)

    def push(self, appeals: list[Appeal]) -> None:
        if self._closed:
            return
        self._version += 1
        self._replace_pending(AppealSnapshot(version=self._version, appeals=appeals))

    def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed.discard(self)
        self._replace_pending(None)

    def __aiter__(self) -> AppealSubscription:
        return self

    async def __anext__(self) -> AppealSnapshot:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item


class RedisChangeBus:
    def __init__(self, redis: Redis, channel: str) -> None:
        self._redis = redis
        self._channel = channel

    async def publish(self) -> None:
        await self._redis.publish(self._channel, CHANGE_MESSAGE)

    async def listen(self) -> AsyncIterator[None]:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") == "message":
                    yield None
        finally:
            await pubsub.unsubscribe(self._channel)
            await pubsub.aclose()


class AppealFeed:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        bus: RedisChangeBus | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._session_factory = session_factory
        self._bus = bus
        self._timeout_seconds = timeout_seconds
        self._subscriptions: set[AppealSubscription] = set()
        self._lock = asyncio.Lock()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def discard(self, subscription: AppealSubscription) -> None:
        self._subscriptions.discard(subscription)

    async def _query(self, uid: str | None) -> list[Appeal]:
        async with asyncio.timeout(self._timeout_seconds):
            async with self._session_factory() as session:
                return await list_appeals(session, uid=uid)

    async def subscribe(self, *, uid: str | None) -> AppealSubscription:
        subscription = AppealSubscription(self, uid=uid)
        async with self._lock:
            appeals = await self._query(uid)
            self._subscriptions.add(subscription)
            subscription.push(appeals)
        return subscription

    async def refresh(self) -> int:
        async with self._lock:
            active = [item for item in self._subscriptions if not item.closed]
            if not active:
                return 0

            results: dict[str | None, list[Appeal]] = {}
            for uid in {item.uid for item in active}:
                results[uid] = await self._query(uid)
            for item in active:
                item.push(results[item.uid])
            return len(active)

    async def notify_changed(self) -> None:
        if self._bus is not None:
            try:
                async with asyncio.timeout(self._timeout_seconds):
                    await self._bus.publish()
                return
            except (RedisError, TimeoutError):
                logger.exception("appeal_feed_publish_failed; refreshing local subscribers only")
        try:
            async with asyncio.timeout(self._timeout_seconds):
                await self.refresh()
        except TimeoutError:
            logger.warning("appeal_feed_refresh_timeout timeout=%s", self._timeout_seconds)
        except Exception:
            logger.exception("appeal_feed_refresh_failed")

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()
