from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from appeal_portal.db.enums import TERMINAL_STATUSES, AiFlag, AppealStatus, AuthType
from appeal_portal.db.models import Appeal
from appeal_portal.services.appeal_errors import (
    AppealNotFoundError,
    InvalidStateError,
    ValidationError,
)

DEFAULT_APPROVED_NOTE = "Redemption granted."
DEFAULT_DENIED_NOTE = "Appeal rejected."

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(slots=True)
class AppealDraft:
    username: str
    reason: str
    explanation: str
    contact_email: str = ""


@dataclass(slots=True, frozen=True)
class DraftLimits:
    username: int = 64
    reason: int = 200
    explanation: int = 4000


@dataclass(slots=True)
class NormalizedDraft:
    username: str
    reason: str
    explanation: str
    user_email: str


def default_note_for(verdict: AppealStatus) -> str:
    if verdict == AppealStatus.APPROVED:
        return DEFAULT_APPROVED_NOTE
    if verdict == AppealStatus.DENIED:
        return DEFAULT_DENIED_NOTE
    raise ValueError(f"No default note for status {verdict}")


def parse_verdict(raw: str | AppealStatus) -> AppealStatus:
    normalized = str(raw).strip().lower()
    if normalized == AppealStatus.APPROVED:
        return AppealStatus.APPROVED
    if normalized == AppealStatus.DENIED:
        return AppealStatus.DENIED
    raise ValidationError({"verdict": "must be 'approved' or 'denied'"})


def _check_text(errors: dict[str, str], field: str, value: str, max_length: int) -> str:
    normalized = value.strip()
    if not normalized:
        errors[field] = "is required"
    elif len(normalized) > max(max_length, 1):
        errors[field] = f"must be at most {max_length} characters"
    return normalized


def normalize_draft(
    draft: AppealDraft,
    *,
    auth_type: AuthType,
    identity_email: str | None,
    limits: DraftLimits | None = None,
) -> NormalizedDraft:
    limits = limits or DraftLimits()
    errors: dict[str, str] = {}
    username = _check_text(errors, "username", draft.username, limits.username)
    reason = _check_text(errors, "reason", draft.reason, limits.reason)
    explanation = _check_text(errors, "explanation", draft.explanation, limits.explanation)

    if auth_type == AuthType.GUEST:
        user_email = draft.contact_email.strip()
        if not user_email:
            errors["contact_email"] = "is required for guest submissions"
        elif not _EMAIL_RE.match(user_email):
            errors["contact_email"] = "is not a valid email address"
    else:
        user_email = (identity_email or "").strip()
        if not user_email:
            errors["contact_email"] = "signed-in identity has no email address"

    if errors:
        raise ValidationError(errors)
    return NormalizedDraft(
        username=username,
        reason=reason,
        explanation=explanation,
        user_email=user_email,
    )


async def create_appeal(
    session: AsyncSession,
    *,
    draft: NormalizedDraft,
    uid: str,
    auth_type: AuthType,
    timestamp: int,
) -> Appeal:
    appeal = Appeal(
        username=draft.username,
        reason=draft.reason,
        explanation=draft.explanation,
        user_email=draft.user_email,
        uid=uid,
        auth_type=auth_type,
        timestamp=timestamp,
        status=AppealStatus.PENDING,
    )
    session.add(appeal)
    await session.flush()
    return appeal


async def load_appeal(session: AsyncSession, appeal_id: str) -> Appeal | None:
    stmt = (
        select(Appeal)
        .where(Appeal.id == appeal_id)
        .execution_options(populate_existing=True)
    )
    return await session.scalar(stmt)


async def list_appeals(
    session: AsyncSession,
    *,
    uid: str | None = None,
) -> list[Appeal]:
    stmt = select(Appeal).order_by(Appeal.timestamp.desc())
    if uid is not None:
        stmt = stmt.where(Appeal.uid == uid)
    return list((await session.execute(stmt)).scalars().all())


async def apply_verdict(
    session: AsyncSession,
    *,
    appeal_id: str,
    verdict: AppealStatus,
    note: str | None,
    decided_by: str,
    now: datetime,
) -> Appeal:
    if verdict not in TERMINAL_STATUSES:
        raise ValueError("Appeal can only be decided as approved or denied")

    admin_note = (note or "").strip() or default_note_for(verdict)
    result = await session.execute(
        update(Appeal)
        .where(Appeal.id == appeal_id, Appeal.status == AppealStatus.PENDING)
        .values(
            status=verdict,
            admin_note=admin_note,
            decided_by=decided_by,
            decided_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    appeal = await load_appeal(session, appeal_id)
    if appeal is None:
        raise AppealNotFoundError(f"Appeal {appeal_id} not found")
    if result.rowcount == 0:
        raise InvalidStateError(f"Appeal {appeal_id} is already {AppealStatus(appeal.status)}")
    return appeal


async def record_ai_flag(
    session: AsyncSession,
    *,
    appeal_id: str,
    flag: AiFlag,
    now: datetime,
) -> Appeal:
    appeal = await load_appeal(session, appeal_id)
    if appeal is None:
        raise AppealNotFoundError(f"Appeal {appeal_id} not found")

    appeal.ai_flag = flag
    appeal.ai_verified = True
    appeal.updated_at = now
    await session.flush()
    return appeal
