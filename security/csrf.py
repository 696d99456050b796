"""
CSRF protection for state-changing requests.

Each session holds one current single-use token. A mutating request must
echo it in the X-CSRF-Token header; the token is consumed on success and a
replacement is handed back for the next submission.
"""
import hmac
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from flask import current_app, g, request

from errors import AuthenticationError, CSRFValidationFailed
from utils.logger import get_logger, token_prefix
from utils.scheduler import PeriodicTask

log = get_logger(__name__)

CSRF_COOKIE = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"

NOT_FOUND = "NOT_FOUND"
EXPIRED = "EXPIRED"
ALREADY_USED = "ALREADY_USED"
MISMATCH = "MISMATCH"
VALIDATION_ERROR = "VALIDATION_ERROR"

_MESSAGES = {
    NOT_FOUND: "CSRF token is missing. Refresh the page and try again.",
    EXPIRED: "Your form has expired. Refresh the page and try again.",
    ALREADY_USED: "This form was already submitted. Refresh the page to submit again.",
    MISMATCH: "CSRF token is invalid. Refresh the page and try again.",
    VALIDATION_ERROR: "CSRF token could not be validated. Refresh the page and try again.",
}


def _default_token() -> str:
    return secrets.token_hex(32)


@dataclass
class CSRFToken:
    value: str
    session_id: str
    created_at: float
    expires_at: float
    used: bool = False
    used_at: Optional[float] = None


@dataclass
class CSRFValidation:
    valid: bool
    reason: Optional[str] = None
    next_token: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        return _MESSAGES.get(self.reason)

    def to_dict(self) -> dict:
        out = {"valid": self.valid}
        if self.reason:
            out["reason"] = self.reason
            out["message"] = self.message
        return out


class CSRFTokenService:
    def __init__(
        self,
        ttl_seconds: float = 60 * 60,
        max_tokens_per_session: int = 10,
        clock: Callable[[], float] = time.time,
        token_factory: Callable[[], str] = _default_token,
        events=None,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_tokens_per_session = max_tokens_per_session
        self.clock = clock
        self.token_factory = token_factory
        self.events = events
        # newest token last; only the newest unused one is current
        self.tokens: Dict[str, List[CSRFToken]] = {}
        self._lock = threading.RLock()
        self._cleanup_task: Optional[PeriodicTask] = None

    def generate_token(self, session_id: str = "default") -> str:
        now = self.clock()
        token = CSRFToken(
            value=self.token_factory(),
            session_id=session_id,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        with self._lock:
            # consumed tokens stay around so a replay reports ALREADY_USED
            kept = [t for t in self.tokens.get(session_id, []) if t.used and now < t.expires_at]
            kept = kept[-(self.max_tokens_per_session - 1):] if self.max_tokens_per_session > 1 else []
            kept.append(token)
            self.tokens[session_id] = kept

        log.debug("csrf_token_generated", session_id=session_id)
        return token.value

    def current_token(self, session_id: str = "default") -> Optional[str]:
        with self._lock:
            tokens = self.tokens.get(session_id) or []
            if tokens and not tokens[-1].used and self.clock() < tokens[-1].expires_at:
                return tokens[-1].value
        return None

    def _find(self, token: str, session_id: str) -> Optional[CSRFToken]:
        match = None
        # compare against every candidate so timing does not reveal position
        for candidate in self.tokens.get(session_id, []):
            if hmac.compare_digest(candidate.value.encode(), token.encode()):
                match = candidate
        return match

    def _check(self, token, session_id: str) -> CSRFValidation:
        if token is not None and not isinstance(token, str):
            return CSRFValidation(False, VALIDATION_ERROR)
        if not token or not self.tokens.get(session_id):
            return CSRFValidation(False, NOT_FOUND)

        stored = self._find(token, session_id)
        if stored is None:
            return CSRFValidation(False, MISMATCH)
        if self.clock() >= stored.expires_at:
            return CSRFValidation(False, EXPIRED)
        if stored.used:
            return CSRFValidation(False, ALREADY_USED)
        if stored is not self.tokens[session_id][-1]:
            # superseded by a newer token for this session
            return CSRFValidation(False, MISMATCH)
        return CSRFValidation(True)

    def _report(self, result: CSRFValidation, token, session_id: str, source: str) -> None:
        log.warning("csrf_validation_failed", reason=result.reason, session_id=session_id, source=source)
        if self.events is not None:
            self.events.add_event(
                "CSRF_ATTEMPT",
                reason=result.reason,
                session_id=session_id,
                token_prefix=token_prefix(token) if isinstance(token, str) else None,
                source=source,
            )

    def validate_token(self, token, session_id: str = "default", source: str = "validate") -> CSRFValidation:
        with self._lock:
            result = self._check(token, session_id)
        if not result.valid:
            self._report(result, token, session_id, source)
        return result

    def use_token(self, token: str, session_id: Optional[str] = None) -> bool:
        """Mark ``token`` consumed. One-way; False if unknown, used or expired."""
        if not isinstance(token, str) or not token:
            return False
        with self._lock:
            sessions = [session_id] if session_id is not None else list(self.tokens)
            for sid in sessions:
                stored = self._find(token, sid)
                if stored is None:
                    continue
                now = self.clock()
                if stored.used or now >= stored.expires_at:
                    return False
                stored.used = True
                stored.used_at = now
                return True
        return False

    def validate_and_use_token(self, token, session_id: str = "default", source: str = "submission") -> CSRFValidation:
        """
        Validate, consume and rotate in one step.

        The whole sequence runs under the service lock, so of two concurrent
        submissions carrying the same token exactly one succeeds and the
        other sees ALREADY_USED.
        """
        with self._lock:
            result = self._check(token, session_id)
            if result.valid:
                self.use_token(token, session_id)
                result.next_token = self.generate_token(session_id)
                return result
        self._report(result, token, session_id, source)
        return result

    def cleanup(self) -> int:
        now = self.clock()
        removed = 0
        with self._lock:
            for sid in list(self.tokens):
                alive = [t for t in self.tokens[sid] if now < t.expires_at]
                removed += len(self.tokens[sid]) - len(alive)
                if alive:
                    self.tokens[sid] = alive
                else:
                    del self.tokens[sid]
        if removed:
            log.debug("csrf_cleanup", removed=removed)
        return removed

    def clear_session(self, session_id: str) -> int:
        with self._lock:
            removed = len(self.tokens.pop(session_id, []))
        if removed:
            log.debug("csrf_session_cleared", session_id=session_id, removed=removed)
        return removed

    def clear_all(self) -> None:
        with self._lock:
            self.tokens.clear()

    def get_stats(self) -> dict:
        now = self.clock()
        with self._lock:
            all_tokens = [t for tokens in self.tokens.values() for t in tokens]
        return {
            "total_tokens": len(all_tokens),
            "active_tokens": sum(1 for t in all_tokens if now < t.expires_at),
            "expired_tokens": sum(1 for t in all_tokens if now >= t.expires_at),
            "used_tokens": sum(1 for t in all_tokens if t.used),
            "session_count": len({t.session_id for t in all_tokens}),
        }

    def start_periodic_cleanup(self, interval: float = 5 * 60) -> PeriodicTask:
        self.stop_periodic_cleanup()
        self._cleanup_task = PeriodicTask(self.cleanup, interval, name="csrf-cleanup").start()
        return self._cleanup_task

    def stop_periodic_cleanup(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.stop()
            self._cleanup_task = None


# ---------- Flask integration ----------

def _service() -> CSRFTokenService:
    return current_app.extensions["carrental"].csrf


def _session_key() -> Optional[str]:
    sess = getattr(g, "session", None)
    return str(sess.id) if sess is not None else None


def issue_csrf_token(resp, session_id: str, token: Optional[str] = None):
    token = token or _service().generate_token(session_id)
    resp.set_cookie(
        CSRF_COOKIE,
        token,
        httponly=False,  # must be readable by client JS
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        path="/",
    )
    resp.headers[CSRF_HEADER] = token
    return resp


def require_csrf():
    """
    Validate and consume the header token for the current session.

    The rotated token is parked on ``g`` for the after_request hook; a
    rejected token raises CSRFValidationFailed (403).
    """
    session_id = _session_key()
    if session_id is None:
        raise AuthenticationError("Authentication required")

    result = _service().validate_and_use_token(
        request.headers.get(CSRF_HEADER), session_id, source=request.path
    )
    if not result.valid:
        raise CSRFValidationFailed(result.reason, result.message)

    g.csrf_next_token = result.next_token
