from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appeal_portal.db.enums import AppealScope, AppealStatus
from appeal_portal.db.models import Appeal
from appeal_portal.services.appeal_errors import (
    AppealNotFoundError,
    AuthorizationError,
    InvalidStateError,
    PersistenceError,
    ValidationError,
)
from appeal_portal.services.appeal_feed import AppealFeed, AppealSubscription
from appeal_portal.services.appeal_service import (
    AppealDraft,
    DraftLimits,
    apply_verdict,
    create_appeal,
    list_appeals,
    load_appeal,
    normalize_draft,
    parse_verdict,
    record_ai_flag,
)
from appeal_portal.services.identity_service import AdminPredicate, PortalIdentity
from appeal_portal.services.insight_service import (
    INSIGHT_UNAVAILABLE_TEXT,
    AppealInsight,
    AppealInsightService,
)

logger = logging.getLogger(__name__)


def epoch_millis() -> int:
    return int(time.time() * 1000)


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class AppealManagerConfig:
    session_factory: async_sessionmaker[AsyncSession]
    is_admin: AdminPredicate
    feed: AppealFeed | None = None
    insight: AppealInsightService | None = None
    clock: Callable[[], int] = epoch_millis
    now: Callable[[], datetime] = utc_now
    timeout_seconds: float = 5.0
    draft_limits: DraftLimits = field(default_factory=DraftLimits)


@dataclass(slots=True)
class _TimestampSequence:
    last: int = field(default=0)

    def next(self, candidate: int) -> int:
        self.last = max(self.last, candidate)
        return self.last


def parse_scope(raw: str | AppealScope) -> AppealScope:
    normalized = str(raw).strip().lower()
    if normalized == AppealScope.ALL:
        return AppealScope.ALL
    if normalized == AppealScope.MINE:
        return AppealScope.MINE
    raise ValidationError({"scope": "must be 'mine' or 'all'"})


class AppealLifecycleManager:
    """Mediates the two write paths of an appeal: creation and the admin verdict.

    Transitions are pending -> approved and pending -> denied, each at most once.
    The store enforces the same rule through a conditional update, so a lost
    race surfaces here as InvalidStateError rather than a second transition.
    """

    def __init__(self, config: AppealManagerConfig) -> None:
        self._config = config
        self._timestamps = _TimestampSequence()

    def is_admin(self, actor: PortalIdentity) -> bool:
        return self._config.is_admin(actor)

    def _require_admin(self, actor: PortalIdentity, action: str) -> None:
        if not self._config.is_admin(actor):
            logger.warning("appeal_%s_denied uid=%s auth_type=%s", action, actor.uid, actor.auth_type)
            raise AuthorizationError(f"Only the administrator can {action} appeals")

    @asynccontextmanager
    async def _store_call(self, operation: str) -> AsyncIterator[None]:
        try:
            async with asyncio.timeout(self._config.timeout_seconds):
                yield
        except TimeoutError as exc:
            logger.error("appeal_store_timeout operation=%s timeout=%s", operation, self._config.timeout_seconds)
            raise PersistenceError("The appeal store did not respond in time. Please try again.") from exc
        except (SQLAlchemyError, OSError) as exc:
            logger.error("appeal_store_failed operation=%s error=%s", operation, exc)
            raise PersistenceError("The appeal store is unavailable. Please try again.") from exc

    async def _notify(self) -> None:
        if self._config.feed is not None:
            await self._config.feed.notify_changed()

    async def submit(self, actor: PortalIdentity, draft: AppealDraft) -> Appeal:
        normalized = normalize_draft(
            draft,
            auth_type=actor.auth_type,
            identity_email=actor.email,
            limits=self._config.draft_limits,
        )
        timestamp = self._timestamps.next(self._config.clock())

        async with self._store_call("submit"):
            async with self._config.session_factory() as session:
                async with session.begin():
                    appeal = await create_appeal(
                        session,
                        draft=normalized,
                        uid=actor.uid,
                        auth_type=actor.auth_type,
                        timestamp=timestamp,
                    )

        logger.info(
            "appeal_submitted appeal_id=%s uid=%s auth_type=%s",
            appeal.id,
            appeal.uid,
            appeal.auth_type,
        )
        await self._notify()
        return appeal

    async def decide(
        self,
        actor: PortalIdentity,
        appeal_id: str,
        verdict: str | AppealStatus,
        note: str | None = None,
    ) -> Appeal:
        self._require_admin(actor, "decide")
        resolved_verdict = parse_verdict(verdict)

        try:
            async with self._store_call("decide"):
                async with self._config.session_factory() as session:
                    async with session.begin():
                        appeal = await apply_verdict(
                            session,
                            appeal_id=appeal_id,
                            verdict=resolved_verdict,
                            note=note,
                            decided_by=actor.email or actor.uid,
                            now=self._config.now(),
                        )
        except InvalidStateError:
            logger.warning("appeal_transition_rejected appeal_id=%s verdict=%s", appeal_id, resolved_verdict)
            raise

        logger.info(
            "appeal_decided appeal_id=%s status=%s decided_by=%s",
            appeal.id,
            resolved_verdict,
            appeal.decided_by,
        )
        await self._notify()
        return appeal

    async def list(self, actor: PortalIdentity, scope: str | AppealScope) -> list[Appeal]:
        uid = self._scope_uid(actor, parse_scope(scope))
        async with self._store_call("list"):
            async with self._config.session_factory() as session:
                return await list_appeals(session, uid=uid)

    async def watch(self, actor: PortalIdentity, scope: str | AppealScope) -> AppealSubscription:
        if self._config.feed is None:
            raise RuntimeError("Live appeal feed is not configured")
        uid = self._scope_uid(actor, parse_scope(scope))
        async with self._store_call("watch"):
            return await self._config.feed.subscribe(uid=uid)

    def _scope_uid(self, actor: PortalIdentity, scope: AppealScope) -> str | None:
        if scope == AppealScope.ALL:
            self._require_admin(actor, "list all")
            return None
        return actor.uid

    async def get(self, actor: PortalIdentity, appeal_id: str) -> Appeal:
        async with self._store_call("get"):
            async with self._config.session_factory() as session:
                appeal = await load_appeal(session, appeal_id)

        if appeal is None:
            raise AppealNotFoundError(f"Appeal {appeal_id} not found")
        if appeal.uid != actor.uid and not self._config.is_admin(actor):
            raise AuthorizationError("This appeal belongs to another submitter")
        return appeal

    async def request_insight(self, actor: PortalIdentity, appeal_id: str) -> AppealInsight:
        self._require_admin(actor, "analyze")
        appeal = await self.get(actor, appeal_id)
        if self._config.insight is None:
            return AppealInsight(text=INSIGHT_UNAVAILABLE_TEXT, available=False)
        return await self._config.insight.assess(appeal)

    async def classify(self, actor: PortalIdentity, appeal_id: str) -> Appeal:
        self._require_admin(actor, "classify")
        appeal = await self.get(actor, appeal_id)
        if self._config.insight is None:
            return appeal

        flag = await self._config.insight.classify(appeal)
        if flag is None:
            return appeal

        async with self._store_call("classify"):
            async with self._config.session_factory() as session:
                async with session.begin():
                    appeal = await record_ai_flag(
                        session,
                        appeal_id=appeal_id,
                        flag=flag,
                        now=self._config.now(),
                    )

        logger.info("appeal_classified appeal_id=%s ai_flag=%s", appeal.id, flag)
        await self._notify()
        return appeal
