from flask import Blueprint, request, jsonify, current_app, g

from errors import RateLimitExceeded
from security.csrf import CSRF_COOKIE, issue_csrf_token
from security.rbac import is_admin_identity
from security.session import ACTIVITY_EVENTS
from services import get_services
from utils.audit import log_event
from utils.auth_context import login_required, session_cookie_name


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

LOCKOUT_REASONS = {"LOCKED", "MAX_ATTEMPTS_EXCEEDED"}


def _is_valid_email(email: str) -> bool:
    return isinstance(email, str) and "@" in email and len(email) <= 255


def _client_ip():
    return request.headers.get("X-Forwarded-For", request.remote_addr)


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    if not _is_valid_email(email) or not password:
        return jsonify(error="Email and password are required"), 400

    result = get_services().auth.sign_in(
        email, password, ip=_client_ip(), user_agent=request.headers.get("User-Agent")
    )

    if not result.success:
        if result.reason in LOCKOUT_REASONS:
            raise RateLimitExceeded(result.error, reason=result.reason, retry_after=result.retry_after)
        return jsonify(result.to_dict()), 401

    resp = jsonify(message="Login OK", **result.to_dict())
    resp.set_cookie(
        session_cookie_name(),
        result.session_token,
        httponly=True,
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        max_age=current_app.config.get("SESSION_LIFETIME_SECONDS", 8 * 60 * 60),
        path="/",
    )
    resp = issue_csrf_token(resp, str(result.session_id), token=result.csrf_token)

    log_event("LOGIN_SUCCESS", user_id=result.user["id"], entity="session", entity_id=result.session_id)
    return resp, 200


@auth_bp.get("/me")
@login_required
def me():
    services = get_services()
    return jsonify(
        id=g.user.id,
        email=g.user.email,
        full_name=g.user.full_name,
        roles=sorted(g.user.role_names),
        is_admin=is_admin_identity(g.user, current_app.config.get("ADMIN_EMAILS", [])),
        session_expires_at=g.session.expires_at.isoformat(),
        idle=services.auth.is_idle(g.session.id),
    ), 200


@auth_bp.post("/logout")
@login_required
def logout():
    raw_token = request.cookies.get(session_cookie_name())
    user_id = g.user.id

    get_services().auth.sign_out(raw_token, session_id=g.session.id)
    # no replacement token for a session that is gone
    g.csrf_next_token = None
    log_event("LOGOUT", user_id=user_id)

    resp = jsonify(message="Logged out")
    resp.delete_cookie(session_cookie_name(), path="/")
    resp.delete_cookie(CSRF_COOKIE, path="/")
    return resp, 200


@auth_bp.get("/csrf")
@login_required
def csrf_token():
    resp = jsonify(message="CSRF token issued")
    return issue_csrf_token(resp, str(g.session.id)), 200


@auth_bp.post("/activity")
@login_required
def activity():
    data = request.get_json(silent=True) or {}
    event_type = data.get("event") or "pointerdown"
    if event_type not in ACTIVITY_EVENTS:
        return jsonify(error="Unknown activity event", allowed=list(ACTIVITY_EVENTS)), 400

    recorded = get_services().auth.record_activity(g.session.id, event_type)
    return jsonify(recorded=recorded), 200
