from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from appeal_portal.db.base import Base, TimestampMixin
from appeal_portal.db.enums import AiFlag, AppealStatus, AuthType


def _new_appeal_id() -> str:
    return uuid.uuid4().hex


class Appeal(Base, TimestampMixin):
    __tablename__ = "appeals"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'denied')",
            name="appeals_status_values",
        ),
        CheckConstraint(
            "auth_type IN ('guest', 'google')",
            name="appeals_auth_type_values",
        ),
        CheckConstraint(
            "ai_flag IS NULL OR ai_flag IN ('spam', 'clean')",
            name="appeals_ai_flag_values",
        ),
        CheckConstraint(
            "((status = 'pending' AND admin_note IS NULL AND decided_by IS NULL) "
            "OR (status IN ('approved', 'denied') AND admin_note IS NOT NULL AND decided_by IS NOT NULL))",
            name="appeals_decision_consistency",
        ),
        Index("ix_appeals_uid_timestamp", "uid", "timestamp"),
        Index("ix_appeals_status_timestamp", "status", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_appeal_id)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    explanation: Mapped[str] = mapped_column(Text, nullable=False)
    user_email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    uid: Mapped[str] = mapped_column(String(128), nullable=False)
    auth_type: Mapped[AuthType] = mapped_column(String(16), nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    status: Mapped[AppealStatus] = mapped_column(
        String(16),
        nullable=False,
        default=AppealStatus.PENDING,
    )
    admin_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    decided_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ai_flag: Mapped[AiFlag | None] = mapped_column(String(16), nullable=True)
    ai_verified: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "username": self.username,
            "reason": self.reason,
            "explanation": self.explanation,
            "userEmail": self.user_email,
            "uid": self.uid,
            "authType": str(self.auth_type),
            "timestamp": self.timestamp,
            "status": str(self.status),
            "adminNote": self.admin_note,
            "ai_flag": str(self.ai_flag) if self.ai_flag is not None else None,
            "aiVerified": self.ai_verified,
        }
