from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from appeal_portal.db.enums import AppealStatus, AuthType
from appeal_portal.db.models import Appeal
from appeal_portal.services.appeal_errors import (
    AppealNotFoundError,
    AuthorizationError,
    InvalidStateError,
    PersistenceError,
    ValidationError,
)
from appeal_portal.services.appeal_lifecycle import AppealLifecycleManager, AppealManagerConfig
from appeal_portal.services.appeal_service import AppealDraft, DraftLimits
from appeal_portal.services.identity_service import PortalIdentity, admin_email_predicate

ADMIN_EMAIL = "admin@example.com"


def _dream_draft() -> AppealDraft:
    return AppealDraft(username="Dream", reason="x-ray", explanation="it was a mistake")


@pytest.mark.asyncio
async def test_submit_creates_pending_appeal_without_note(manager, google_user) -> None:
    appeal = await manager.submit(google_user, _dream_draft())

    assert appeal.id
    assert appeal.status == AppealStatus.PENDING
    assert appeal.admin_note is None
    assert appeal.username == "Dream"
    assert appeal.reason == "x-ray"
    assert appeal.explanation == "it was a mistake"
    assert appeal.user_email == "dream@example.com"
    assert appeal.uid == google_user.uid
    assert appeal.auth_type == AuthType.GOOGLE
    assert appeal.ai_flag is None
    assert appeal.ai_verified is None


@pytest.mark.asyncio
async def test_submit_trims_text_fields(manager, google_user) -> None:
    appeal = await manager.submit(
        google_user,
        AppealDraft(username="  Dream ", reason=" x-ray\n", explanation="\tsorry  "),
    )

    assert appeal.username == "Dream"
    assert appeal.reason == "x-ray"
    assert appeal.explanation == "sorry"


@pytest.mark.asyncio
async def test_guest_submission_requires_contact_email(manager, guest) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await manager.submit(guest, _dream_draft())

    assert "contact_email" in exc_info.value.errors

    appeal = await manager.submit(
        guest,
        AppealDraft(
            username="Dream",
            reason="x-ray",
            explanation="it was a mistake",
            contact_email=" dream.guest@example.com ",
        ),
    )
    assert appeal.user_email == "dream.guest@example.com"
    assert appeal.auth_type == AuthType.GUEST
    assert appeal.uid == guest.uid


@pytest.mark.asyncio
async def test_submit_rejects_blank_fields_and_writes_nothing(manager, google_user, session_factory) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await manager.submit(google_user, AppealDraft(username="   ", reason="", explanation="ok"))

    assert set(exc_info.value.errors) == {"username", "reason"}

    async with session_factory() as session:
        rows = (await session.execute(select(Appeal))).scalars().all()
    assert rows == []


@pytest.mark.asyncio
async def test_submit_timestamps_never_decrease(session_factory, google_user) -> None:
    ticks = iter([5_000, 4_000, 4_000, 6_000])
    manager = AppealLifecycleManager(
        AppealManagerConfig(
            session_factory=session_factory,
            is_admin=admin_email_predicate(ADMIN_EMAIL),
            clock=lambda: next(ticks),
        )
    )

    stamps = [(await manager.submit(google_user, _dream_draft())).timestamp for _ in range(4)]

    assert stamps == [5_000, 5_000, 5_000, 6_000]


@pytest.mark.asyncio
async def test_approve_without_note_uses_default(manager, google_user, admin) -> None:
    appeal = await manager.submit(google_user, _dream_draft())

    decided = await manager.decide(admin, appeal.id, "approved")

    assert decided.status == AppealStatus.APPROVED
    assert decided.admin_note == "Redemption granted."
    assert decided.decided_by == ADMIN_EMAIL
    assert decided.decided_at is not None


@pytest.mark.asyncio
async def test_deny_with_note_then_second_decide_is_rejected(manager, google_user, admin) -> None:
    appeal = await manager.submit(google_user, _dream_draft())

    denied = await manager.decide(admin, appeal.id, "denied", "Repeat offender")
    assert denied.status == AppealStatus.DENIED
    assert denied.admin_note == "Repeat offender"

    with pytest.raises(InvalidStateError):
        await manager.decide(admin, appeal.id, "approved")

    current = await manager.get(admin, appeal.id)
    assert current.status == AppealStatus.DENIED
    assert current.admin_note == "Repeat offender"


@pytest.mark.asyncio
async def test_blank_note_falls_back_to_default(manager, google_user, admin) -> None:
    appeal = await manager.submit(google_user, _dream_draft())

    denied = await manager.decide(admin, appeal.id, AppealStatus.DENIED, "   ")

    assert denied.admin_note == "Appeal rejected."


@pytest.mark.asyncio
async def test_decide_requires_admin(manager, google_user, guest) -> None:
    appeal = await manager.submit(google_user, _dream_draft())

    with pytest.raises(AuthorizationError):
        await manager.decide(google_user, appeal.id, "approved")

    impostor = PortalIdentity(uid=guest.uid, auth_type=AuthType.GUEST, email=ADMIN_EMAIL)
    with pytest.raises(AuthorizationError):
        await manager.decide(impostor, appeal.id, "approved")

    current = await manager.get(google_user, appeal.id)
    assert current.status == AppealStatus.PENDING
    assert current.admin_note is None


@pytest.mark.asyncio
async def test_decide_rejects_unknown_verdict_and_unknown_id(manager, google_user, admin) -> None:
    appeal = await manager.submit(google_user, _dream_draft())

    with pytest.raises(ValidationError):
        await manager.decide(admin, appeal.id, "pending")

    with pytest.raises(AppealNotFoundError):
        await manager.decide(admin, "missing-appeal", "approved")


@pytest.mark.asyncio
async def test_list_mine_only_returns_own_appeals(manager, google_user, guest, admin) -> None:
    await manager.submit(google_user, _dream_draft())
    await manager.submit(
        guest,
        AppealDraft(username="Other", reason="spam", explanation="sorry", contact_email="g@example.com"),
    )
    await manager.submit(google_user, AppealDraft(username="Dream", reason="fly", explanation="lag"))

    mine = await manager.list(google_user, "mine")
    guest_mine = await manager.list(guest, "mine")
    admin_mine = await manager.list(admin, "mine")

    assert len(mine) == 2
    assert all(item.uid == google_user.uid for item in mine)
    assert [item.uid for item in guest_mine] == [guest.uid]
    assert admin_mine == []


@pytest.mark.asyncio
async def test_list_all_is_admin_only_and_newest_first(session_factory, google_user, guest, admin) -> None:
    ticks = iter([1_000, 2_000, 3_000])
    manager = AppealLifecycleManager(
        AppealManagerConfig(
            session_factory=session_factory,
            is_admin=admin_email_predicate(ADMIN_EMAIL),
            clock=lambda: next(ticks),
        )
    )
    first = await manager.submit(google_user, _dream_draft())
    second = await manager.submit(
        guest,
        AppealDraft(username="Other", reason="spam", explanation="sorry", contact_email="g@example.com"),
    )
    third = await manager.submit(google_user, AppealDraft(username="Dream", reason="fly", explanation="lag"))

    with pytest.raises(AuthorizationError):
        await manager.list(google_user, "all")
    with pytest.raises(AuthorizationError):
        await manager.list(guest, "all")

    everything = await manager.list(admin, "all")
    assert [item.id for item in everything] == [third.id, second.id, first.id]


@pytest.mark.asyncio
async def test_list_rejects_unknown_scope(manager, google_user) -> None:
    with pytest.raises(ValidationError):
        await manager.list(google_user, "everyone")


@pytest.mark.asyncio
async def test_get_hides_other_submitters_appeals(manager, google_user, guest, admin) -> None:
    appeal = await manager.submit(google_user, _dream_draft())

    assert (await manager.get(google_user, appeal.id)).id == appeal.id
    assert (await manager.get(admin, appeal.id)).id == appeal.id
    with pytest.raises(AuthorizationError):
        await manager.get(guest, appeal.id)
    with pytest.raises(AppealNotFoundError):
        await manager.get(admin, "missing-appeal")


class _FailingSessionFactory:
    def __init__(self, exc: BaseException) -> None:
        self._exc = exc

    @asynccontextmanager
    async def _session(self):
        raise self._exc
        yield  # pragma: no cover

    def __call__(self):
        return self._session()


@pytest.mark.asyncio
async def test_store_failure_surfaces_as_persistence_error(google_user) -> None:
    manager = AppealLifecycleManager(
        AppealManagerConfig(
            session_factory=_FailingSessionFactory(OperationalError("INSERT", {}, Exception("down"))),
            is_admin=admin_email_predicate(ADMIN_EMAIL),
        )
    )

    with pytest.raises(PersistenceError):
        await manager.submit(google_user, _dream_draft())


class _SlowSessionFactory:
    @asynccontextmanager
    async def _session(self):
        await asyncio.sleep(10)
        yield  # pragma: no cover

    def __call__(self):
        return self._session()


@pytest.mark.asyncio
async def test_store_timeout_surfaces_as_persistence_error(google_user) -> None:
    manager = AppealLifecycleManager(
        AppealManagerConfig(
            session_factory=_SlowSessionFactory(),
            is_admin=admin_email_predicate(ADMIN_EMAIL),
            timeout_seconds=0.05,
        )
    )

    with pytest.raises(PersistenceError) as exc_info:
        await manager.list(google_user, "mine")

    assert "in time" in exc_info.value.message


@pytest.mark.asyncio
async def test_list_returns_every_appeal_past_two_hundred(manager, google_user, admin) -> None:
    for index in range(205):
        await manager.submit(google_user, AppealDraft(username=f"Dream{index}", reason="x-ray", explanation="sorry"))

    mine = await manager.list(google_user, "mine")
    everything = await manager.list(admin, "all")

    assert len(mine) == 205
    assert len(everything) == 205


@pytest.mark.asyncio
async def test_submit_applies_configured_length_limits(session_factory, google_user) -> None:
    manager = AppealLifecycleManager(
        AppealManagerConfig(
            session_factory=session_factory,
            is_admin=admin_email_predicate(ADMIN_EMAIL),
            draft_limits=DraftLimits(username=4),
        )
    )

    with pytest.raises(ValidationError) as exc_info:
        await manager.submit(google_user, _dream_draft())

    assert exc_info.value.errors == {"username": "must be at most 4 characters"}
