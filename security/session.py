import hashlib
import secrets
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from flask import current_app

from models import db
from models.session import Session
from utils.logger import get_logger

log = get_logger(__name__)

ACTIVITY_EVENTS = ("pointerdown", "pointermove", "keydown", "scroll", "touchstart")

def _hash_token(token: str) -> str:
    # SHA-256 is fine for hashing random session tokens
    return hashlib.sha256(token.encode("utf-8")).hexdigest()

def create_session(user_id: int, ip: Optional[str] = None, user_agent: Optional[str] = None) -> tuple:
    """
    Creates a server-side session and returns (row, RAW token).
    Only the hash is stored in DB.
    """
    raw_token = secrets.token_urlsafe(32)

    lifetime = current_app.config.get("SESSION_LIFETIME_SECONDS", 28800)
    row = Session(
        user_id=user_id,
        token_hash=_hash_token(raw_token),
        expires_at=datetime.utcnow() + timedelta(seconds=lifetime),
        ip=ip,
        user_agent=(user_agent or "")[:255] or None,
    )
    db.session.add(row)
    db.session.commit()
    return row, raw_token

def find_session(raw_token: str, touch: bool = True) -> Optional[Session]:
    """
    Look up a live session by raw token, enforcing absolute expiry and idle
    timeout. Sessions that went idle are revoked on the spot.
    """
    if not raw_token:
        return None

    now = datetime.utcnow()
    sess = Session.query.filter_by(token_hash=_hash_token(raw_token), revoked=False).first()
    if not sess:
        return None

    # Absolute expiry
    if sess.expires_at <= now:
        return None

    # Idle timeout
    idle_seconds = current_app.config.get("IDLE_TIMEOUT_SECONDS", 1800)
    last_seen = sess.last_seen_at or sess.created_at
    if (last_seen + timedelta(seconds=idle_seconds)) <= now:
        sess.revoked = True
        sess.revoked_reason = "IDLE_TIMEOUT"
        db.session.commit()
        return None

    if touch:
        sess.last_seen_at = now
        db.session.commit()

    return sess

def revoke_session(raw_token: str, reason: str = "LOGOUT") -> Optional[Session]:
    if not raw_token:
        return None
    sess = Session.query.filter_by(token_hash=_hash_token(raw_token)).first()
    if not sess:
        return None
    sess.revoked = True
    sess.revoked_reason = reason
    db.session.commit()
    return sess

def revoke_all_sessions(user_id: int, reason: str = "ROTATED") -> list:
    sessions = Session.query.filter_by(user_id=user_id, revoked=False).all()
    for s in sessions:
        s.revoked = True
        s.revoked_reason = reason
    db.session.commit()
    return sessions


class SessionWatchdog:
    """
    Idle-session watchdog.

    Interaction events refresh ``last_activity``; ``check()`` compares it
    against the idle timeout and fires ``on_expired`` once per expiry.
    """

    def __init__(
        self,
        idle_timeout: float,
        on_expired: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.time,
        activity_events: Iterable[str] = ACTIVITY_EVENTS,
    ):
        self.idle_timeout = idle_timeout
        self.on_expired = on_expired
        self.clock = clock
        self.activity_events = frozenset(activity_events)
        self.last_activity: Optional[float] = None
        self.expired = False
        self._lock = threading.Lock()

    def mark_active(self) -> None:
        with self._lock:
            self.last_activity = self.clock()
            self.expired = False

    def record_activity(self, event_type: str) -> bool:
        if event_type not in self.activity_events:
            return False
        if self.last_activity is None:
            # no session to keep alive
            return False
        self.mark_active()
        return True

    def idle_for(self) -> float:
        if self.last_activity is None:
            return 0.0
        return self.clock() - self.last_activity

    def check(self) -> bool:
        with self._lock:
            if self.last_activity is None or self.expired:
                return self.expired
            idle = self.clock() - self.last_activity
            if idle <= self.idle_timeout:
                return False
            self.expired = True

        log.info("session_idle_expired", idle_seconds=round(idle, 1), timeout=self.idle_timeout)
        if self.on_expired is not None:
            self.on_expired(idle)
        return True
