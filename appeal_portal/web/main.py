from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from html import escape
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import uvicorn
from fastapi import FastAPI, Form, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response, StreamingResponse

from appeal_portal.config import settings
from appeal_portal.db.enums import AiFlag, AppealStatus
from appeal_portal.db.models import Appeal
from appeal_portal.db.session import SessionFactory, ping_database
from appeal_portal.infra.redis_client import redis_client
from appeal_portal.services.appeal_errors import (
    AppealError,
    AppealNotFoundError,
    AuthorizationError,
    InvalidStateError,
    PersistenceError,
    ValidationError,
)
from appeal_portal.services.appeal_feed import AppealFeed, RedisChangeBus
from appeal_portal.services.appeal_feed_watcher import cancel_watcher, run_appeal_feed_listener
from appeal_portal.services.appeal_lifecycle import (
    AppealLifecycleManager,
    AppealManagerConfig,
)
from appeal_portal.services.appeal_service import AppealDraft, DraftLimits
from appeal_portal.services.identity_service import (
    AdminPredicate,
    GoogleSignInError,
    default_admin_predicate,
    new_guest_identity,
    verify_google_credential,
)
from appeal_portal.services.insight_service import AppealInsight, AppealInsightService
from appeal_portal.web.auth import (
    SESSION_COOKIE_NAME,
    PortalAuthContext,
    build_session_cookie,
    get_portal_auth_context,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PortalServices:
    manager: AppealLifecycleManager
    is_admin: AdminPredicate
    feed: AppealFeed
    bus: RedisChangeBus | None = None


def build_portal_services() -> PortalServices:
    bus = None
    if settings.feed_enabled:
        bus = RedisChangeBus(redis_client, settings.feed_channel)

    feed = AppealFeed(
        SessionFactory,
        bus=bus,
        timeout_seconds=settings.store_timeout_seconds,
    )
    is_admin = default_admin_predicate()
    manager = AppealLifecycleManager(
        AppealManagerConfig(
            session_factory=SessionFactory,
            is_admin=is_admin,
            feed=feed,
            insight=AppealInsightService.from_settings(),
            timeout_seconds=settings.store_timeout_seconds,
            draft_limits=DraftLimits(
                username=settings.appeal_username_max_length,
                reason=settings.appeal_reason_max_length,
                explanation=settings.appeal_explanation_max_length,
            ),
        )
    )
    return PortalServices(manager=manager, is_admin=is_admin, feed=feed, bus=bus)


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    services: PortalServices | None = getattr(application.state, "services", None)
    if services is None:
        services = build_portal_services()
        application.state.services = services

    listener_task: asyncio.Task[None] | None = None
    if services.bus is not None:
        listener_task = asyncio.create_task(run_appeal_feed_listener(services.feed, services.bus))
    try:
        yield
    finally:
        await cancel_watcher(listener_task)
        services.feed.close()


app = FastAPI(title="Ban Appeal Portal", version="0.1.0", lifespan=lifespan)


def _services(request: Request) -> PortalServices:
    services: PortalServices | None = getattr(request.app.state, "services", None)
    if services is None:
        services = build_portal_services()
        request.app.state.services = services
    return services


def _auth(request: Request) -> PortalAuthContext:
    return get_portal_auth_context(request, _services(request).is_admin)


def _timezone() -> ZoneInfo:
    try:
        return ZoneInfo(settings.tz)
    except ZoneInfoNotFoundError:
        return ZoneInfo("UTC")


def _fmt_millis(value: int | None) -> str:
    if value is None:
        return "-"
    moment = datetime.fromtimestamp(value / 1000, tz=UTC)
    return moment.astimezone(_timezone()).strftime("%Y-%m-%d %H:%M:%S")


def _csrf_secret() -> bytes:
    return settings.resolved_session_secret().encode("utf-8")


def _csrf_subject(auth: PortalAuthContext) -> str | None:
    if auth.identity is None:
        return None
    return f"uid:{auth.identity.uid}"


def _build_csrf_token(auth: PortalAuthContext) -> str:
    subject = _csrf_subject(auth)
    if subject is None:
        return ""

    issued_at = int(datetime.now(UTC).timestamp())
    nonce = secrets.token_hex(8)
    payload = f"{subject}|{issued_at}|{nonce}"
    signature = hmac.new(_csrf_secret(), payload.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"{payload}|{signature}"


def _csrf_hidden_input(auth: PortalAuthContext) -> str:
    return f"<input type='hidden' name='csrf_token' value='{escape(_build_csrf_token(auth))}'>"


def _validate_csrf_token(auth: PortalAuthContext, csrf_token: str) -> bool:
    payload, sep, signature = csrf_token.rpartition("|")
    if not sep:
        return False
    parts = payload.split("|")
    if len(parts) != 3:
        return False

    subject_raw, issued_raw, nonce_raw = parts
    if not issued_raw.isdigit() or not nonce_raw:
        return False

    expected_subject = _csrf_subject(auth)
    if expected_subject is None or subject_raw != expected_subject:
        return False

    expected_signature = hmac.new(_csrf_secret(), payload.encode("utf-8"), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(signature, expected_signature):
        return False

    now_ts = int(datetime.now(UTC).timestamp())
    issued_ts = int(issued_raw)
    if issued_ts > now_ts + 30:
        return False
    return now_ts - issued_ts <= max(settings.csrf_ttl_seconds, 60)


def _render_page(title: str, body: str, *, head: str = "") -> str:
    styles = (
        ":root{--bg:#0f1412;--panel:#17201c;--ink:#e7efe9;--muted:#8fa39a;--line:#2a3a33;"
        "--accent:#10b981;--warn:#eab308;--bad:#ef4444;}"
        "*{box-sizing:border-box;}"
        "body{margin:0;font-family:'IBM Plex Sans','Segoe UI',sans-serif;line-height:1.45;"
        "color:var(--ink);background:linear-gradient(180deg,#0b100e,var(--bg));}"
        ".page-shell{max-width:1080px;margin:24px auto;padding:20px 24px;border:1px solid var(--line);"
        "border-radius:16px;background:var(--panel);}"
        "h1{margin:0 0 12px;font-size:28px;}h2{margin:20px 0 10px;}"
        "table{border-collapse:collapse;width:100%;margin-top:12px;}"
        "th,td{border-bottom:1px solid var(--line);padding:8px 10px;text-align:left;font-size:14px;vertical-align:top;}"
        "th{color:var(--muted);font-weight:600;}"
        "a{color:var(--accent);text-decoration:none;font-weight:600;}a:hover{text-decoration:underline;}"
        ".chip{display:inline-block;padding:3px 9px;border-radius:999px;font-size:12px;font-weight:700;"
        "text-transform:uppercase;border:1px solid var(--line);}"
        ".chip-pending{color:var(--warn);border-color:var(--warn);}"
        ".chip-approved{color:var(--accent);border-color:var(--accent);}"
        ".chip-denied{color:var(--bad);border-color:var(--bad);}"
        ".notice{border:1px solid var(--line);border-radius:10px;padding:10px 12px;margin:10px 0;}"
        ".notice p{margin:0;}"
        ".notice-error{border-color:var(--bad);color:#fecaca;}"
        ".notice-info{border-color:var(--accent);color:#a7f3d0;}"
        ".empty-state{color:var(--muted);font-style:italic;}"
        ".card{border:1px solid var(--line);border-radius:12px;padding:14px;margin:12px 0;}"
        "pre{white-space:pre-wrap;margin:0;}"
        "label{display:block;margin:10px 0 4px;color:var(--muted);font-size:13px;}"
        "input,textarea{width:100%;font:inherit;border:1px solid var(--line);border-radius:8px;padding:8px;"
        "background:#0b100e;color:var(--ink);}"
        "button{font:inherit;border:1px solid var(--accent);background:var(--accent);color:#06281d;"
        "font-weight:700;border-radius:8px;padding:7px 14px;margin-top:10px;cursor:pointer;}"
        "button.danger{border-color:var(--bad);background:var(--bad);color:#fff;}"
        ".field-error{color:#fecaca;font-size:13px;}"
    )
    return (
        "<!doctype html><html><head><meta charset='utf-8'>"
        f"<title>{escape(title)}</title>"
        f"<style>{styles}</style>{head}"
        "</head><body><div class='page-shell'>"
        f"{body}</div></body></html>"
    )


def _status_chip(status: str) -> str:
    value = str(status)
    return f"<span class='chip chip-{escape(value)}'>{escape(value)}</span>"


def _notice_page(title: str, message: str, *, back_to: str, status_code: int) -> HTMLResponse:
    body = (
        f"<h1>{escape(title)}</h1>"
        f"<div class='notice notice-error'><p>{escape(message)}</p></div>"
        f"<p><a href='{escape(back_to)}'>Back</a></p>"
    )
    return HTMLResponse(_render_page(title, body), status_code=status_code)


def _csrf_failed_response(*, back_to: str) -> HTMLResponse:
    return _notice_page(
        "CSRF check failed",
        "Reload the page and try again.",
        back_to=back_to,
        status_code=403,
    )


def _error_status(exc: AppealError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, AuthorizationError):
        return 403
    if isinstance(exc, AppealNotFoundError):
        return 404
    if isinstance(exc, InvalidStateError):
        return 409
    if isinstance(exc, PersistenceError):
        return 503
    return 400


def _appeal_error_page(exc: AppealError, *, back_to: str) -> HTMLResponse:
    titles = {
        400: "Invalid input",
        403: "Not allowed",
        404: "Appeal not found",
        409: "Appeal already decided",
        503: "Service unavailable",
    }
    status_code = _error_status(exc)
    return _notice_page(titles.get(status_code, "Action failed"), exc.message, back_to=back_to, status_code=status_code)


def _appeal_error_json(exc: AppealError) -> JSONResponse:
    content: dict[str, object] = {"detail": exc.message}
    if isinstance(exc, ValidationError):
        content["errors"] = exc.errors
    return JSONResponse(content, status_code=_error_status(exc))


def _auth_or_redirect(request: Request) -> tuple[Response | None, PortalAuthContext]:
    auth = _auth(request)
    if auth.authenticated:
        return None, auth
    return RedirectResponse(url="/login", status_code=303), auth


def _require_admin_page(request: Request) -> tuple[Response | None, PortalAuthContext]:
    response, auth = _auth_or_redirect(request)
    if response is not None:
        return response, auth
    if auth.is_admin:
        return None, auth

    body = (
        "<h1>Not allowed</h1>"
        "<div class='notice notice-error'><p>Only the administrator can open the staff dashboard.</p></div>"
        "<p><a href='/'>Back to my appeals</a></p>"
    )
    return HTMLResponse(_render_page("Forbidden", body), status_code=403), auth


def _set_session_cookie(response: Response, value: str) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=value,
        max_age=max(settings.session_max_age_seconds, 60),
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )


def _header(auth: PortalAuthContext) -> str:
    links = ["<a href='/'>My appeals</a>"]
    if auth.is_admin:
        links.append("<a href='/admin'>Staff dashboard</a>")
    links.append("<a href='/logout'>Sign out</a>")
    return f"<p>Signed in as <b>{escape(auth.label)}</b> | {' | '.join(links)}</p>"


@app.get("/health")
async def health() -> JSONResponse:
    try:
        await asyncio.wait_for(ping_database(), timeout=settings.store_timeout_seconds)
    except Exception as exc:
        logger.warning("health_check_failed error=%s", exc)
        return JSONResponse(
            {"status": "unhealthy", "database": "disconnected", "error": str(exc)},
            status_code=503,
        )
    return JSONResponse({"status": "healthy", "database": "connected"})


@app.get("/login", response_class=HTMLResponse)
async def login_page(request: Request) -> Response:
    auth = _auth(request)
    if auth.authenticated:
        return RedirectResponse(url="/", status_code=303)

    client_id = settings.google_client_id.strip()
    if client_id:
        login_uri = f"{str(request.base_url).rstrip('/')}/auth/google"
        google_html = (
            "<script src='https://accounts.google.com/gsi/client' async></script>"
            f"<div id='g_id_onload' data-client_id='{escape(client_id)}' "
            f"data-login_uri='{escape(login_uri)}' data-ux_mode='redirect' data-auto_prompt='false'></div>"
            "<div class='g_id_signin' data-type='standard' data-size='large'></div>"
        )
    else:
        google_html = (
            "<p><b>Google sign-in is not configured.</b> "
            "Set <code>GOOGLE_CLIENT_ID</code> to enable it.</p>"
        )

    body = (
        "<h1>Ban Appeals</h1>"
        "<div class='card'>"
        "<p>Sign in with Google to track your appeals across devices.</p>"
        f"{google_html}"
        "</div>"
        "<div class='card'>"
        "<p>No Google account? Continue as a guest; you will need to leave a contact email.</p>"
        "<form method='post' action='/auth/guest'><button type='submit'>Continue as guest</button></form>"
        "</div>"
    )
    return HTMLResponse(_render_page("Sign in", body))


@app.post("/auth/google")
async def google_auth_callback(
    request: Request,
    credential: str = Form(...),
    g_csrf_token: str | None = Form(None),
) -> Response:
    cookie_token = request.cookies.get("g_csrf_token")
    if cookie_token is not None and not hmac.compare_digest(cookie_token, g_csrf_token or ""):
        return _csrf_failed_response(back_to="/login")

    try:
        identity = await verify_google_credential(credential)
    except GoogleSignInError as exc:
        return _notice_page("Sign-in failed", str(exc), back_to="/login", status_code=403)

    logger.info("portal_sign_in uid=%s auth_type=%s", identity.uid, identity.auth_type)
    response = RedirectResponse(url="/", status_code=303)
    _set_session_cookie(response, build_session_cookie(identity))
    return response


@app.post("/auth/guest")
async def guest_auth(request: Request) -> Response:
    auth = _auth(request)
    if auth.authenticated:
        return RedirectResponse(url="/", status_code=303)

    identity = new_guest_identity()
    logger.info("portal_guest_session uid=%s", identity.uid)
    response = RedirectResponse(url="/", status_code=303)
    _set_session_cookie(response, build_session_cookie(identity))
    return response


@app.get("/logout")
async def logout(request: Request) -> RedirectResponse:
    response = RedirectResponse(url="/login", status_code=303)
    response.delete_cookie(SESSION_COOKIE_NAME)
    return response


def _render_submit_form(
    auth: PortalAuthContext,
    *,
    values: dict[str, str] | None = None,
    errors: dict[str, str] | None = None,
) -> str:
    values = values or {}
    errors = errors or {}

    def _error(field: str) -> str:
        if field not in errors:
            return ""
        return f"<div class='field-error'>{escape(errors[field])}</div>"

    email_field = ""
    if auth.identity is not None and auth.identity.is_guest:
        email_field = (
            "<label for='contact_email'>Contact email</label>"
            f"<input id='contact_email' name='contact_email' type='email' value='{escape(values.get('contact_email', ''))}'>"
            f"{_error('contact_email')}"
        )

    return (
        "<div class='card'><h2>Submit an appeal</h2>"
        "<form method='post' action='/appeals'>"
        "<label for='username'>In-game username</label>"
        f"<input id='username' name='username' value='{escape(values.get('username', ''))}'>"
        f"{_error('username')}"
        "<label for='reason'>Ban reason</label>"
        f"<input id='reason' name='reason' value='{escape(values.get('reason', ''))}'>"
        f"{_error('reason')}"
        "<label for='explanation'>Why should we unban you?</label>"
        f"<textarea id='explanation' name='explanation' rows='6'>{escape(values.get('explanation', ''))}</textarea>"
        f"{_error('explanation')}"
        f"{email_field}"
        f"{_csrf_hidden_input(auth)}"
        "<button type='submit'>Send appeal</button>"
        "</form></div>"
    )


def _render_my_appeals(appeals: list[Appeal]) -> str:
    if not appeals:
        return "<p class='empty-state'>You have not submitted any appeals yet.</p>"

    rows = ""
    for appeal in appeals:
        note = escape(appeal.admin_note) if appeal.admin_note else "-"
        rows += (
            "<tr>"
            f"<td>{escape(_fmt_millis(appeal.timestamp))}</td>"
            f"<td>{escape(appeal.username)}</td>"
            f"<td>{escape(appeal.reason)}</td>"
            f"<td>{_status_chip(appeal.status)}</td>"
            f"<td>{note}</td>"
            "</tr>"
        )
    return (
        "<table><thead><tr><th>Submitted</th><th>Username</th><th>Reason</th><th>Status</th><th>Staff note</th></tr></thead>"
        f"<tbody>{rows}</tbody></table>"
    )


def _live_reload_script(scope: str) -> str:
    return (
        "<script>"
        f"const feed=new EventSource('/api/appeals/stream?scope={quote(scope)}');"
        "feed.addEventListener('snapshot',e=>{if(JSON.parse(e.data).version>1){location.reload();}});"
        "</script>"
    )


async def _render_home(
    request: Request,
    auth: PortalAuthContext,
    *,
    values: dict[str, str] | None = None,
    errors: dict[str, str] | None = None,
    notice: str = "",
    status_code: int = 200,
) -> Response:
    if auth.identity is None:
        return RedirectResponse(url="/login", status_code=303)
    manager = _services(request).manager
    try:
        appeals = await manager.list(auth.identity, "mine")
        history = _render_my_appeals(appeals)
    except PersistenceError as exc:
        history = f"<div class='notice notice-error'><p>{escape(exc.message)}</p></div>"

    body = (
        "<h1>Ban Appeals</h1>"
        f"{_header(auth)}"
        f"{notice}"
        f"{_render_submit_form(auth, values=values, errors=errors)}"
        "<h2>My appeals</h2>"
        f"{history}"
    )
    return HTMLResponse(
        _render_page("Ban Appeals", body, head=_live_reload_script("mine")),
        status_code=status_code,
    )


@app.get("/", response_class=HTMLResponse)
async def home(request: Request, submitted: str | None = None) -> Response:
    response, auth = _auth_or_redirect(request)
    if response is not None:
        return response

    notice = ""
    if submitted:
        notice = "<div class='notice notice-info'><p>Appeal received. We will review it soon.</p></div>"
    return await _render_home(request, auth, notice=notice)


@app.post("/appeals")
async def submit_appeal(
    request: Request,
    username: str = Form(""),
    reason: str = Form(""),
    explanation: str = Form(""),
    contact_email: str = Form(""),
    csrf_token: str = Form(...),
) -> Response:
    response, auth = _auth_or_redirect(request)
    if response is not None:
        return response
    if not _validate_csrf_token(auth, csrf_token):
        return _csrf_failed_response(back_to="/")

    if auth.identity is None:
        return RedirectResponse(url="/login", status_code=303)
    values = {
        "username": username,
        "reason": reason,
        "explanation": explanation,
        "contact_email": contact_email,
    }
    draft = AppealDraft(
        username=username,
        reason=reason,
        explanation=explanation,
        contact_email=contact_email,
    )
    try:
        appeal = await _services(request).manager.submit(auth.identity, draft)
    except ValidationError as exc:
        return await _render_home(request, auth, values=values, errors=exc.errors, status_code=400)
    except PersistenceError as exc:
        notice = (
            f"<div class='notice notice-error'><p>{escape(exc.message)} "
            "Your appeal was not saved; please submit it again.</p></div>"
        )
        return await _render_home(request, auth, values=values, notice=notice, status_code=503)

    return RedirectResponse(url=f"/?submitted={quote(appeal.id)}", status_code=303)


def _render_admin_rows(appeals: list[Appeal]) -> str:
    rows = ""
    for appeal in appeals:
        flag = escape(str(appeal.ai_flag)) if appeal.ai_flag else "-"
        rows += (
            "<tr>"
            f"<td>{escape(_fmt_millis(appeal.timestamp))}</td>"
            f"<td><a href='/admin/appeals/{quote(appeal.id)}'>{escape(appeal.username)}</a></td>"
            f"<td>{escape(appeal.reason)}</td>"
            f"<td>{escape(appeal.user_email)}<br><small>{escape(str(appeal.auth_type))}</small></td>"
            f"<td>{_status_chip(appeal.status)}</td>"
            f"<td>{flag}</td>"
            "</tr>"
        )
    return rows


@app.get("/admin", response_class=HTMLResponse)
async def admin_dashboard(request: Request) -> Response:
    response, auth = _require_admin_page(request)
    if response is not None:
        return response

    if auth.identity is None:
        return RedirectResponse(url="/login", status_code=303)
    try:
        appeals = await _services(request).manager.list(auth.identity, "all")
    except AppealError as exc:
        return _appeal_error_page(exc, back_to="/")

    pending = sum(1 for item in appeals if item.status == AppealStatus.PENDING)
    if appeals:
        table = (
            "<table><thead><tr><th>Submitted</th><th>Username</th><th>Reason</th>"
            "<th>Contact</th><th>Status</th><th>AI flag</th></tr></thead>"
            f"<tbody>{_render_admin_rows(appeals)}</tbody></table>"
        )
    else:
        table = "<p class='empty-state'>No entries yet.</p>"

    body = (
        "<h1>Staff Dashboard</h1>"
        f"{_header(auth)}"
        f"<p>Managing {len(appeals)} case(s), {pending} pending.</p>"
        f"{table}"
    )
    return HTMLResponse(_render_page("Staff Dashboard", body, head=_live_reload_script("all")))


def _render_appeal_detail(
    auth: PortalAuthContext,
    appeal: Appeal,
    *,
    insight: AppealInsight | None = None,
) -> str:
    base_path = f"/admin/appeals/{quote(appeal.id)}"
    flag_label = "-"
    if appeal.ai_flag is not None:
        flag_label = "spam" if appeal.ai_flag == AiFlag.SPAM else "clean"

    insight_block = ""
    if insight is not None:
        css = "notice-info" if insight.available else "notice-error"
        insight_block = f"<div class='notice {css}'><p><b>AI insight:</b> {escape(insight.text)}</p></div>"

    if appeal.status == AppealStatus.PENDING:
        decision_block = (
            "<div class='card'><h2>Verdict</h2>"
            f"<form method='post' action='{base_path}/decide'>"
            "<label for='note'>Note to the submitter (optional)</label>"
            "<textarea id='note' name='note' rows='3'></textarea>"
            f"{_csrf_hidden_input(auth)}"
            "<button type='submit' name='verdict' value='approved'>Approve</button> "
            "<button type='submit' name='verdict' value='denied' class='danger'>Deny</button>"
            "</form></div>"
        )
    else:
        decision_block = (
            "<div class='card'><h2>Verdict</h2>"
            f"<p>{_status_chip(appeal.status)} by {escape(appeal.decided_by or '-')}</p>"
            f"<pre>{escape(appeal.admin_note or '')}</pre></div>"
        )

    return (
        f"<h1>Appeal: {escape(appeal.username)}</h1>"
        f"{_header(auth)}"
        "<p><a href='/admin'>Back to dashboard</a></p>"
        "<div class='card'>"
        f"<p><b>Status:</b> {_status_chip(appeal.status)}</p>"
        f"<p><b>Submitted:</b> {escape(_fmt_millis(appeal.timestamp))}</p>"
        f"<p><b>Contact:</b> {escape(appeal.user_email)} ({escape(str(appeal.auth_type))})</p>"
        f"<p><b>Reason:</b> {escape(appeal.reason)}</p>"
        f"<p><b>Explanation:</b></p><pre>{escape(appeal.explanation)}</pre>"
        f"<p><b>AI flag:</b> {escape(flag_label)}</p>"
        "</div>"
        f"{insight_block}"
        f"<form method='post' action='{base_path}/insight' style='display:inline'>{_csrf_hidden_input(auth)}"
        "<button type='submit'>Ask AI for insight</button></form> "
        f"<form method='post' action='{base_path}/classify' style='display:inline'>{_csrf_hidden_input(auth)}"
        "<button type='submit'>Run spam check</button></form>"
        f"{decision_block}"
    )


@app.get("/admin/appeals/{appeal_id}", response_class=HTMLResponse)
async def admin_appeal_detail(request: Request, appeal_id: str) -> Response:
    response, auth = _require_admin_page(request)
    if response is not None:
        return response

    if auth.identity is None:
        return RedirectResponse(url="/login", status_code=303)
    try:
        appeal = await _services(request).manager.get(auth.identity, appeal_id)
    except AppealError as exc:
        return _appeal_error_page(exc, back_to="/admin")
    return HTMLResponse(_render_page("Appeal", _render_appeal_detail(auth, appeal)))


@app.post("/admin/appeals/{appeal_id}/insight", response_class=HTMLResponse)
async def action_request_insight(request: Request, appeal_id: str, csrf_token: str = Form(...)) -> Response:
    response, auth = _require_admin_page(request)
    if response is not None:
        return response
    back_to = f"/admin/appeals/{quote(appeal_id)}"
    if not _validate_csrf_token(auth, csrf_token):
        return _csrf_failed_response(back_to=back_to)

    if auth.identity is None:
        return RedirectResponse(url="/login", status_code=303)
    manager = _services(request).manager
    try:
        insight = await manager.request_insight(auth.identity, appeal_id)
        appeal = await manager.get(auth.identity, appeal_id)
    except AppealError as exc:
        return _appeal_error_page(exc, back_to=back_to)
    return HTMLResponse(_render_page("Appeal", _render_appeal_detail(auth, appeal, insight=insight)))


@app.post("/admin/appeals/{appeal_id}/classify")
async def action_classify_appeal(request: Request, appeal_id: str, csrf_token: str = Form(...)) -> Response:
    response, auth = _require_admin_page(request)
    if response is not None:
        return response
    back_to = f"/admin/appeals/{quote(appeal_id)}"
    if not _validate_csrf_token(auth, csrf_token):
        return _csrf_failed_response(back_to=back_to)

    if auth.identity is None:
        return RedirectResponse(url="/login", status_code=303)
    try:
        await _services(request).manager.classify(auth.identity, appeal_id)
    except AppealError as exc:
        return _appeal_error_page(exc, back_to=back_to)
    return RedirectResponse(url=back_to, status_code=303)


@app.post("/admin/appeals/{appeal_id}/decide")
async def action_decide_appeal(
    request: Request,
    appeal_id: str,
    verdict: str = Form(...),
    note: str = Form(""),
    csrf_token: str = Form(...),
) -> Response:
    response, auth = _require_admin_page(request)
    if response is not None:
        return response
    back_to = f"/admin/appeals/{quote(appeal_id)}"
    if not _validate_csrf_token(auth, csrf_token):
        return _csrf_failed_response(back_to=back_to)

    if auth.identity is None:
        return RedirectResponse(url="/login", status_code=303)
    try:
        await _services(request).manager.decide(auth.identity, appeal_id, verdict, note or None)
    except AppealError as exc:
        return _appeal_error_page(exc, back_to=back_to)
    return RedirectResponse(url="/admin", status_code=303)


@app.get("/api/appeals")
async def api_list_appeals(request: Request, scope: str = "mine") -> JSONResponse:
    auth = _auth(request)
    if auth.identity is None:
        return JSONResponse({"detail": "Sign in first"}, status_code=401)

    try:
        appeals = await _services(request).manager.list(auth.identity, scope)
    except AppealError as exc:
        return _appeal_error_json(exc)
    return JSONResponse({"appeals": [item.to_payload() for item in appeals]})


def _sse_event(event: str, data: dict[str, object]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, separators=(',', ':'))}\n\n"


@app.get("/api/appeals/stream", response_model=None)
async def api_stream_appeals(request: Request, scope: str = "mine") -> Response:
    auth = _auth(request)
    if auth.identity is None:
        return JSONResponse({"detail": "Sign in first"}, status_code=401)

    try:
        subscription = await _services(request).manager.watch(auth.identity, scope)
    except AppealError as exc:
        return _appeal_error_json(exc)

    async def _events() -> AsyncIterator[str]:
        try:
            async for snapshot in subscription:
                if await request.is_disconnected():
                    break
                yield _sse_event(
                    "snapshot",
                    {
                        "version": snapshot.version,
                        "appeals": [item.to_payload() for item in snapshot.appeals],
                    },
                )
        finally:
            subscription.unsubscribe()

    return StreamingResponse(
        _events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def main() -> None:
    uvicorn.run("appeal_portal.web.main:app", host=settings.web_host, port=settings.web_port, log_level="info")


if __name__ == "__main__":
    main()
