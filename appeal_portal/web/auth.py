from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import UTC, datetime

from fastapi import Request

from appeal_portal.config import settings
from appeal_portal.db.enums import AuthType
from appeal_portal.services.identity_service import AdminPredicate, PortalIdentity, is_guest_uid

SESSION_COOKIE_NAME = "ap_session"


@dataclass(slots=True)
class PortalAuthContext:
    authenticated: bool
    via: str
    identity: PortalIdentity | None = None
    is_admin: bool = False

    @property
    def label(self) -> str:
        if self.identity is None:
            return "anonymous"
        name = self.identity.display_name or self.identity.email or self.identity.uid
        role = "admin" if self.is_admin else str(self.identity.auth_type)
        return f"{name} ({role})"


def _session_secret() -> bytes:
    return settings.resolved_session_secret().encode("utf-8")


def _sign(payload: str) -> str:
    return hmac.new(_session_secret(), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def _encode_payload(data: dict[str, object]) -> str:
    raw = json.dumps(data, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _decode_payload(payload: str) -> dict[str, object] | None:
    padded = payload + "=" * (-len(payload) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        data = json.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeError):
        return None
    if not isinstance(data, dict):
        return None
    return data


def build_session_cookie(identity: PortalIdentity, *, now: datetime | None = None) -> str:
    issued_at = int((now or datetime.now(UTC)).timestamp())
    expires_at = issued_at + max(settings.session_max_age_seconds, 60)
    payload = _encode_payload(
        {
            "uid": identity.uid,
            "typ": str(identity.auth_type),
            "email": identity.email,
            "name": identity.display_name,
            "exp": expires_at,
        }
    )
    return f"{payload}.{_sign(payload)}"


def parse_session_cookie(value: str, *, now: datetime | None = None) -> PortalIdentity | None:
    payload, sep, signature = value.rpartition(".")
    if not sep or not payload or not signature:
        return None
    if not hmac.compare_digest(signature, _sign(payload)):
        return None

    data = _decode_payload(payload)
    if data is None:
        return None

    expires_at = data.get("exp")
    now_ts = int((now or datetime.now(UTC)).timestamp())
    if not isinstance(expires_at, int) or expires_at < now_ts:
        return None

    uid = data.get("uid")
    auth_type_raw = data.get("typ")
    if not isinstance(uid, str) or not uid:
        return None
    try:
        auth_type = AuthType(str(auth_type_raw))
    except ValueError:
        return None
    if auth_type == AuthType.GUEST and not is_guest_uid(uid):
        return None

    email = data.get("email")
    name = data.get("name")
    return PortalIdentity(
        uid=uid,
        auth_type=auth_type,
        email=email if isinstance(email, str) and email else None,
        display_name=name if isinstance(name, str) and name else None,
    )


def get_portal_auth_context(request: Request, is_admin: AdminPredicate) -> PortalAuthContext:
    raw_cookie = request.cookies.get(SESSION_COOKIE_NAME, "")
    if raw_cookie:
        identity = parse_session_cookie(raw_cookie)
        if identity is not None:
            return PortalAuthContext(
                authenticated=True,
                via=str(identity.auth_type),
                identity=identity,
                is_admin=is_admin(identity),
            )

    return PortalAuthContext(authenticated=False, via="none")
