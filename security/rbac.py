from functools import wraps
from typing import Iterable
from flask import current_app, g, jsonify

ADMIN_ROLES = {"ADMIN", "SUPER_ADMIN"}

def _email_and_roles(user):
    if user is None:
        return None, set()
    if isinstance(user, dict):
        return user.get("email"), set(user.get("roles") or [])
    roles = getattr(user, "roles", None) or []
    return getattr(user, "email", None), {r if isinstance(r, str) else r.name for r in roles}

def is_admin_identity(user, admin_emails: Iterable[str] = ()) -> bool:
    """
    Admin when the identity carries an admin role or its email is listed in
    ADMIN_EMAILS. Works on User rows, IdentitySession objects and dicts.
    """
    email, roles = _email_and_roles(user)
    if roles & ADMIN_ROLES:
        return True
    if not email:
        return False
    allowed = {e.strip().lower() for e in admin_emails if e and e.strip()}
    return email.strip().lower() in allowed

def has_role(role_name: str) -> bool:
    user = getattr(g, "user", None)
    if not user:
        return False
    return any(r.name == role_name for r in user.roles)

def require_roles(*role_names: str):
    """
    Usage: @require_roles("ADMIN")

    ADMIN also admits users listed in ADMIN_EMAILS.
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if user is None:
                return jsonify(error="Authentication required"), 401

            user_roles = {r.name for r in user.roles}
            if "SUPER_ADMIN" in user_roles or user_roles.intersection(set(role_names)):
                return fn(*args, **kwargs)
            if "ADMIN" in role_names and is_admin_identity(user, current_app.config.get("ADMIN_EMAILS", [])):
                return fn(*args, **kwargs)
            return jsonify(error="Forbidden"), 403
        return wrapper
    return decorator
