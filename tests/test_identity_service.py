from __future__ import annotations

import pytest
from google.auth.exceptions import GoogleAuthError

from appeal_portal.config import settings
from appeal_portal.db.enums import AuthType
from appeal_portal.services import identity_service
from appeal_portal.services.identity_service import (
    GoogleSignInError,
    PortalIdentity,
    admin_email_predicate,
    default_admin_predicate,
    identity_from_google_claims,
    is_guest_uid,
    new_guest_identity,
    verify_google_credential,
)


def _claims(**overrides) -> dict[str, object]:
    claims: dict[str, object] = {
        "iss": "https://accounts.google.com",
        "sub": "1098765",
        "email": "dream@example.com",
        "email_verified": True,
        "name": "Dream",
    }
    claims.update(overrides)
    return claims


def test_admin_predicate_matches_google_email_only() -> None:
    is_admin = admin_email_predicate(" admin@example.com ")

    assert is_admin(PortalIdentity(uid="g-1", auth_type=AuthType.GOOGLE, email="admin@example.com"))
    assert not is_admin(PortalIdentity(uid="g-2", auth_type=AuthType.GOOGLE, email="other@example.com"))
    assert not is_admin(PortalIdentity(uid="guest-abc", auth_type=AuthType.GUEST, email="admin@example.com"))
    assert not is_admin(PortalIdentity(uid="g-3", auth_type=AuthType.GOOGLE, email=None))


def test_admin_predicate_without_configured_email_admits_nobody() -> None:
    is_admin = admin_email_predicate("")

    assert not is_admin(PortalIdentity(uid="g-1", auth_type=AuthType.GOOGLE, email=""))


def test_default_admin_predicate_reads_settings(monkeypatch) -> None:
    monkeypatch.setattr(settings, "admin_email", "boss@example.com")
    is_admin = default_admin_predicate()

    assert is_admin(PortalIdentity(uid="g-1", auth_type=AuthType.GOOGLE, email="boss@example.com"))


def test_guest_identities_are_unique_and_recognizable() -> None:
    first = new_guest_identity()
    second = new_guest_identity()

    assert first.uid != second.uid
    assert first.is_guest
    assert first.email is None
    assert is_guest_uid(first.uid)
    assert len(first.uid) == len("guest-") + 9
    assert not is_guest_uid("guest-")
    assert not is_guest_uid("google-123")


def test_identity_from_google_claims() -> None:
    identity = identity_from_google_claims(_claims())

    assert identity.uid == "1098765"
    assert identity.auth_type == AuthType.GOOGLE
    assert identity.email == "dream@example.com"
    assert identity.display_name == "Dream"
    assert not identity.is_guest


@pytest.mark.parametrize(
    "overrides",
    [
        {"iss": "https://evil.example.com"},
        {"sub": ""},
        {"email": None},
        {"email_verified": False},
    ],
)
def test_identity_from_google_claims_rejects_bad_tokens(overrides) -> None:
    with pytest.raises(GoogleSignInError):
        identity_from_google_claims(_claims(**overrides))


@pytest.mark.asyncio
async def test_verify_google_credential_uses_configured_audience(monkeypatch) -> None:
    seen: dict[str, object] = {}

    def _fake_verify(token, request, audience):
        seen["token"] = token
        seen["audience"] = audience
        return _claims()

    monkeypatch.setattr(identity_service.id_token, "verify_oauth2_token", _fake_verify)

    identity = await verify_google_credential(" jwt-token ", client_id="client-123")

    assert seen == {"token": "jwt-token", "audience": "client-123"}
    assert identity.email == "dream@example.com"


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [ValueError("bad signature"), GoogleAuthError("expired")])
async def test_verify_google_credential_maps_library_errors(monkeypatch, error) -> None:
    def _fake_verify(token, request, audience):
        raise error

    monkeypatch.setattr(identity_service.id_token, "verify_oauth2_token", _fake_verify)

    with pytest.raises(GoogleSignInError):
        await verify_google_credential("jwt-token", client_id="client-123")


@pytest.mark.asyncio
async def test_verify_google_credential_requires_client_id(monkeypatch) -> None:
    monkeypatch.setattr(settings, "google_client_id", "")

    with pytest.raises(GoogleSignInError):
        await verify_google_credential("jwt-token")
