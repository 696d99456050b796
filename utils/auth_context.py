from functools import wraps
from flask import current_app, g, jsonify, request
from security.session import find_session

def session_cookie_name() -> str:
    return current_app.config.get("AUTH_COOKIE_NAME", "carrental_session")

def load_current_user():
    sess = find_session(request.cookies.get(session_cookie_name()))
    if not sess:
        g.user = None
        g.session = None
        return
    g.session = sess
    g.user = sess.user

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return jsonify(error="Authentication required"), 401
        return fn(*args, **kwargs)
    return wrapper
