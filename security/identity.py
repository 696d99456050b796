"""
Local identity provider backed by the users/sessions tables.

Password checks go through bcrypt, sessions are server-side rows holding only
a token hash. Subscribers registered with ``on_auth_state_change`` hear about
every sign-in and sign-out.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from errors import BackendUnavailable
from models import db
from models.user import User
from security.password import burn_verification, verify_password
from security.session import create_session, find_session, revoke_all_sessions, revoke_session
from utils.logger import get_logger

log = get_logger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"


class InvalidCredentials(Exception):
    """Unknown email, wrong password or disabled account."""

    def __init__(self, message: str = "Invalid email or password"):
        super().__init__(message)
        self.message = message


@dataclass
class IdentitySession:
    session_id: int
    token: Optional[str]
    user_id: int
    email: str
    roles: List[str] = field(default_factory=list)
    full_name: Optional[str] = None
    expires_at: Optional[datetime] = None

    def user_dict(self) -> dict:
        return {
            "id": self.user_id,
            "email": self.email,
            "full_name": self.full_name,
            "roles": sorted(self.roles),
        }


def _to_identity(sess, token: Optional[str] = None) -> IdentitySession:
    user = sess.user
    return IdentitySession(
        session_id=sess.id,
        token=token,
        user_id=user.id,
        email=user.email,
        roles=sorted(user.role_names),
        full_name=user.full_name,
        expires_at=sess.expires_at,
    )


class LocalIdentityProvider:
    def __init__(self):
        self._listeners: List[Callable] = []

    def on_auth_state_change(self, callback: Callable[[str, Optional[IdentitySession]], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, event: str, identity: Optional[IdentitySession]) -> None:
        for callback in list(self._listeners):
            try:
                callback(event, identity)
            except Exception:
                log.warning("auth_listener_failed", auth_event=event, exc_info=True)

    def sign_in_with_password(self, email: str, password: str, ip=None, user_agent=None) -> IdentitySession:
        try:
            user = User.query.filter_by(email=email).first()
            if user is None:
                burn_verification(password)
                raise InvalidCredentials()
            if not verify_password(password, user.password_hash) or not user.is_active:
                raise InvalidCredentials()

            # Rotate: one live session per user
            rotated = [_to_identity(s) for s in revoke_all_sessions(user.id, reason="ROTATED")]
            sess, raw_token = create_session(user.id, ip=ip, user_agent=user_agent)
            user.last_login_at = datetime.utcnow()
            db.session.commit()
            identity = _to_identity(sess, raw_token)
        except SQLAlchemyError as e:
            db.session.rollback()
            log.error("identity_backend_error", operation="sign_in", error=str(e))
            raise BackendUnavailable("Sign-in is temporarily unavailable") from e

        for old in rotated:
            self._notify(SIGNED_OUT, old)
        self._notify(SIGNED_IN, identity)
        return identity

    def get_session(self, token: str) -> Optional[IdentitySession]:
        try:
            sess = find_session(token)
        except SQLAlchemyError as e:
            db.session.rollback()
            raise BackendUnavailable("Session lookup failed") from e
        if sess is None:
            return None
        return _to_identity(sess, token)

    def sign_out(self, token: str) -> bool:
        try:
            sess = revoke_session(token, reason="LOGOUT")
        except SQLAlchemyError as e:
            db.session.rollback()
            raise BackendUnavailable("Sign-out failed") from e
        self._notify(SIGNED_OUT, _to_identity(sess, token) if sess is not None else None)
        return sess is not None

    def revoke_user_sessions(self, user_id: int, reason: str = "REVOKED") -> List[int]:
        try:
            revoked = [_to_identity(s) for s in revoke_all_sessions(user_id, reason=reason)]
        except SQLAlchemyError as e:
            db.session.rollback()
            raise BackendUnavailable("Session revocation failed") from e
        for identity in revoked:
            self._notify(SIGNED_OUT, identity)
        return [i.session_id for i in revoked]
