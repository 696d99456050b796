"""
Sign-in / sign-out orchestration.

A login attempt passes the rate limiter first (a locked key never reaches the
identity provider), waits out any progressive delay, then asks the identity
provider. Success resets the limiter and hands out a CSRF token for the new
session; failure is counted and reported to the security monitor.
"""
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from security.identity import SIGNED_OUT, InvalidCredentials
from security.session import SessionWatchdog
from security.rbac import is_admin_identity
from utils.logger import get_logger
from utils.scheduler import PeriodicTask

log = get_logger(__name__)


def normalize_key(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def _minutes(seconds: float) -> int:
    return max(1, math.ceil(seconds / 60))


@dataclass
class SignInResult:
    success: bool
    error: Optional[str] = None
    reason: Optional[str] = None
    retry_after: float = 0
    remaining_attempts: Optional[int] = None
    user: Optional[dict] = None
    session_token: Optional[str] = None
    session_id: Optional[int] = None
    csrf_token: Optional[str] = None
    is_admin: bool = False

    def to_dict(self) -> dict:
        if self.success:
            return {"success": True, "user": self.user, "is_admin": self.is_admin}
        out = {"success": False, "error": self.error, "reason": self.reason}
        if self.retry_after:
            out["retry_after_seconds"] = int(math.ceil(self.retry_after))
        if self.remaining_attempts is not None:
            out["remaining_attempts"] = self.remaining_attempts
        return out


class AuthService:
    def __init__(
        self,
        identity,
        rate_limiter,
        csrf,
        events=None,
        admin_emails: Iterable[str] = (),
        idle_timeout_seconds: float = 30 * 60,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.identity = identity
        self.rate_limiter = rate_limiter
        self.csrf = csrf
        self.events = events
        self.admin_emails = [e.lower() for e in admin_emails]
        self.idle_timeout_seconds = idle_timeout_seconds
        self.sleep = sleep
        self.clock = clock
        # one idle watchdog per live session, keyed by session id
        self.watchdogs: Dict[str, SessionWatchdog] = {}
        self._watch_task: Optional[PeriodicTask] = None
        self._unsubscribe = identity.on_auth_state_change(self._on_auth_state_change)

    def _on_auth_state_change(self, event: str, identity) -> None:
        # a session revoked through any path loses its watchdog and CSRF token
        if event == SIGNED_OUT and identity is not None:
            self._forget(str(identity.session_id))

    def _event(self, event_type: str, **data) -> None:
        if self.events is not None:
            self.events.add_event(event_type, **data)

    def sign_in(self, email: str, password: str, ip=None, user_agent=None) -> SignInResult:
        key = normalize_key(email)
        limit = self.rate_limiter.check_rate_limit(key)

        if not limit.allowed:
            wait = max(0.0, limit.reset_time - self.clock())
            self._event("RATE_LIMIT_EXCEEDED", email=key, reason=limit.reason, retry_after=round(wait))
            return SignInResult(
                success=False,
                error=f"Too many failed login attempts. Try again in {_minutes(wait)} minutes.",
                reason=limit.reason,
                retry_after=wait,
                remaining_attempts=0,
            )

        if limit.delay > 0:
            log.info("login_progressive_delay", email=key, delay=limit.delay)
            self.sleep(limit.delay)

        try:
            identity = self.identity.sign_in_with_password(key, password, ip=ip, user_agent=user_agent)
        except InvalidCredentials as e:
            return self._failed(key, e.message)

        self.rate_limiter.record_successful_attempt(key)
        session_key = str(identity.session_id)
        self._watch(session_key)
        csrf_token = self.csrf.generate_token(session_key)
        user = identity.user_dict()
        log.info("login_success", user_id=identity.user_id)

        return SignInResult(
            success=True,
            user=user,
            session_token=identity.token,
            session_id=identity.session_id,
            csrf_token=csrf_token,
            is_admin=is_admin_identity(user, self.admin_emails),
        )

    def _failed(self, key: str, message: str) -> SignInResult:
        attempts = self.rate_limiter.record_failed_attempt(key)
        max_attempts = self.rate_limiter.config.max_attempts
        remaining = max(0, max_attempts - attempts)
        self._event("LOGIN_FAIL", email=key, attempts=attempts)

        if remaining == 0:
            # this failure exhausts the budget; lock now so the next check reports it
            status = self.rate_limiter.check_rate_limit(key)
            self._event("ACCOUNT_LOCKED", email=key, attempts=attempts, lockout_seconds=status.lockout_duration)
            return SignInResult(
                success=False,
                error=f"Too many failed login attempts. Try again in {_minutes(status.delay)} minutes.",
                reason=status.reason,
                retry_after=status.delay,
                remaining_attempts=0,
            )

        return SignInResult(
            success=False,
            error=message,
            reason="INVALID_CREDENTIALS",
            remaining_attempts=remaining,
        )

    def sign_out(self, session_token: str, session_id=None) -> None:
        """
        Revoke the session. Local state (activity stamp, CSRF tokens) is
        cleared even when the identity provider fails; that failure
        is then re-raised.
        """
        try:
            self.identity.sign_out(session_token)
        except Exception:
            log.exception("logout_identity_failed", session_id=session_id)
            raise
        finally:
            if session_id is not None:
                self._forget(str(session_id))

    # ---------- session activity ----------

    def _watch(self, session_id: str) -> SessionWatchdog:
        watchdog = SessionWatchdog(
            self.idle_timeout_seconds,
            on_expired=lambda idle: self._expired(session_id, idle),
            clock=self.clock,
        )
        watchdog.mark_active()
        self.watchdogs[session_id] = watchdog
        return watchdog

    def _forget(self, session_id: str) -> None:
        self.watchdogs.pop(session_id, None)
        self.csrf.clear_session(session_id)

    def _expired(self, session_id: str, idle: float) -> None:
        self._forget(session_id)
        self._event("SESSION_EXPIRED", session_id=session_id, idle_seconds=round(idle))

    def record_activity(self, session_id, event_type: str = "pointerdown") -> bool:
        """Refresh the idle clock for an interaction event. False for unknown sessions or events."""
        sid = str(session_id)
        watchdog = self.watchdogs.get(sid)
        if watchdog is None:
            # sessions restored after a restart start watching on first activity
            watchdog = self._watch(sid)
        return watchdog.record_activity(event_type)

    def is_idle(self, session_id) -> bool:
        watchdog = self.watchdogs.get(str(session_id))
        return watchdog is not None and watchdog.idle_for() > self.idle_timeout_seconds

    def check_sessions(self) -> list:
        """Run every watchdog once; returns the ids of sessions that just expired."""
        return [sid for sid, watchdog in list(self.watchdogs.items()) if watchdog.check()]

    def start_session_watch(self, interval: float = 60) -> PeriodicTask:
        self.stop_session_watch()
        self._watch_task = PeriodicTask(self.check_sessions, interval, name="session-watch").start()
        return self._watch_task

    def stop_session_watch(self) -> None:
        if self._watch_task is not None:
            self._watch_task.stop()
            self._watch_task = None

    def close(self) -> None:
        self.stop_session_watch()
        self._unsubscribe()
