from datetime import datetime

from flask import Flask, request, g
from config import Config
from routes import health_bp, auth_bp, admin_bp, booking_bp

from errors import register_error_handlers
from models import db
from flask_migrate import Migrate
from security.csrf import issue_csrf_token, require_csrf
from services import build_services
from utils.auth_context import load_current_user
from utils.logger import get_logger
from utils.logging_config import setup_logging
from utils.seed import seed_roles

log = get_logger(__name__)

CSRF_EXEMPT_PATHS = {
    "/auth/login",
    "/auth/activity",
    "/health",
}


def create_app(config_class=Config):
    setup_logging()

    app = Flask(__name__)
    app.config.from_object(config_class)

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(booking_bp)
    register_error_handlers(app)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    with app.app_context():
        if app.config.get("TESTING"):
            db.create_all()
        # Seed default roles at startup (safe & idempotent)
        seed_roles()

    services = build_services(app)
    app.extensions["carrental"] = services

    @app.before_request
    def _load_user():
        load_current_user()

    @app.before_request
    def _csrf_protect():
        # Only protect state-changing requests
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Exempt auth bootstrap endpoints
            if request.path in CSRF_EXEMPT_PATHS:
                return None

            # Only enforce CSRF if user is already authenticated (cookie session)
            if getattr(g, "user", None) is not None:
                require_csrf()

    @app.after_request
    def _rotate_csrf(resp):
        token = getattr(g, "csrf_next_token", None)
        sess = getattr(g, "session", None)
        if token and sess is not None:
            issue_csrf_token(resp, str(sess.id), token=token)
        return resp

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    if app.config.get("START_BACKGROUND_TASKS"):
        services.start_background_tasks(app.config)

    log.info("app_created", config=config_class.__name__)
    return app

#-------------------------
import click
from models.session import Session
from models.user import User, Role
from security.password import hash_password

def _grant_admin(user):
    admin_role = Role.query.filter_by(name="ADMIN").first()
    if not admin_role:
        admin_role = Role(name="ADMIN")
        db.session.add(admin_role)
        db.session.commit()

    if admin_role not in user.roles:
        user.roles.append(admin_role)
        db.session.commit()

def register_cli(app):
    @app.cli.command("make-admin")
    @click.argument("email")
    def make_admin(email):
        """Promote a user to ADMIN by email (bootstrap)."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            print("User not found")
            return

        _grant_admin(user)
        print(f"{user.email} promoted to ADMIN")

    @app.cli.command("create-user")
    @click.argument("email")
    @click.argument("password")
    @click.option("--admin", is_flag=True, help="Also grant the ADMIN role.")
    @click.option("--name", default=None, help="Full name.")
    def create_user(email, password, admin, name):
        """Create a staff account."""
        email = email.strip().lower()
        if User.query.filter_by(email=email).first():
            print("Email already registered")
            return

        user = User(email=email, password_hash=hash_password(password), full_name=name)
        db.session.add(user)
        db.session.commit()
        if admin:
            _grant_admin(user)
        print(f"Created {user.email}" + (" (ADMIN)" if admin else ""))

    @app.cli.command("purge-security-state")
    def purge_security_state():
        """Delete revoked or expired sessions and reset in-memory lockouts, CSRF tokens and cache."""
        now = datetime.utcnow()
        removed = Session.query.filter(
            (Session.revoked.is_(True)) | (Session.expires_at <= now)
        ).delete(synchronize_session=False)
        db.session.commit()

        services = app.extensions["carrental"]
        services.rate_limiter.clear_all()
        services.csrf.clear_all()
        services.cache.clear()
        print(f"Removed {removed} stale sessions; in-memory security state cleared")

#-------------------------




if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
