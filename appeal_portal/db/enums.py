from __future__ import annotations

from enum import StrEnum


class AppealStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class AuthType(StrEnum):
    GUEST = "guest"
    GOOGLE = "google"


class AiFlag(StrEnum):
    SPAM = "spam"
    CLEAN = "clean"


class AppealScope(StrEnum):
    MINE = "mine"
    ALL = "all"


TERMINAL_STATUSES = frozenset({AppealStatus.APPROVED, AppealStatus.DENIED})
