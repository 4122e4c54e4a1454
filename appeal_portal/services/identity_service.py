from __future__ import annotations

import asyncio
import logging
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass

from google.auth.exceptions import GoogleAuthError
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from appeal_portal.config import settings
from appeal_portal.db.enums import AuthType

logger = logging.getLogger(__name__)

GUEST_UID_PREFIX = "guest-"
GUEST_DISPLAY_NAME = "Guest User"
_GUEST_ALPHABET = string.ascii_lowercase + string.digits
_GOOGLE_ISSUERS = frozenset({"accounts.google.com", "https://accounts.google.com"})


@dataclass(slots=True, frozen=True)
class PortalIdentity:
    uid: str
    auth_type: AuthType
    email: str | None = None
    display_name: str | None = None

    @property
    def is_guest(self) -> bool:
        return self.auth_type == AuthType.GUEST


AdminPredicate = Callable[[PortalIdentity], bool]


def admin_email_predicate(admin_email: str | None) -> AdminPredicate:
    expected = (admin_email or "").strip()

    def _is_admin(identity: PortalIdentity) -> bool:
        if not expected or identity.auth_type != AuthType.GOOGLE:
            return False
        return (identity.email or "").strip() == expected

    return _is_admin


def default_admin_predicate() -> AdminPredicate:
    return admin_email_predicate(settings.normalized_admin_email())


def new_guest_identity() -> PortalIdentity:
    suffix = "".join(secrets.choice(_GUEST_ALPHABET) for _ in range(9))
    return PortalIdentity(
        uid=f"{GUEST_UID_PREFIX}{suffix}",
        auth_type=AuthType.GUEST,
        email=None,
        display_name=GUEST_DISPLAY_NAME,
    )


def is_guest_uid(uid: str) -> bool:
    return uid.startswith(GUEST_UID_PREFIX) and len(uid) > len(GUEST_UID_PREFIX)


class GoogleSignInError(Exception):
    pass


def identity_from_google_claims(claims: dict[str, object]) -> PortalIdentity:
    issuer = claims.get("iss")
    if issuer not in _GOOGLE_ISSUERS:
        raise GoogleSignInError("unexpected token issuer")

    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        raise GoogleSignInError("token has no subject")

    email = claims.get("email")
    if not isinstance(email, str) or not email:
        raise GoogleSignInError("token has no email")
    if claims.get("email_verified") is False:
        raise GoogleSignInError("email is not verified")

    name = claims.get("name")
    return PortalIdentity(
        uid=subject,
        auth_type=AuthType.GOOGLE,
        email=email,
        display_name=name if isinstance(name, str) and name else email,
    )


async def verify_google_credential(credential: str, *, client_id: str | None = None) -> PortalIdentity:
    audience = (client_id if client_id is not None else settings.google_client_id).strip()
    if not audience:
        raise GoogleSignInError("Google sign-in is not configured")
    token = credential.strip()
    if not token:
        raise GoogleSignInError("missing credential")

    def _verify() -> dict[str, object]:
        return id_token.verify_oauth2_token(token, google_requests.Request(), audience)

    try:
        claims = await asyncio.to_thread(_verify)
    except (ValueError, GoogleAuthError) as exc:
        logger.warning("google_sign_in_rejected reason=%s", exc)
        raise GoogleSignInError("credential could not be verified") from exc
    return identity_from_google_claims(claims)
