import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _env_list(name: str, default: str = "") -> list:
    raw = os.getenv(name, default)
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as carrental.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "carrental.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session cookie name for our auth token
    AUTH_COOKIE_NAME = "carrental_session"

    # 8 hours session lifetime
    SESSION_LIFETIME_SECONDS = 8 * 60 * 60

    # Idle timeout: 30 minutes without interaction
    IDLE_TIMEOUT_SECONDS = int(os.getenv("IDLE_TIMEOUT_SECONDS", str(30 * 60)))
    SESSION_CHECK_INTERVAL_SECONDS = 60

    # Session/cookie security defaults
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").lower() == "true"

    # Login brute-force protection (in-memory, per process)
    LOGIN_MAX_ATTEMPTS = int(os.getenv("LOGIN_MAX_ATTEMPTS", "5"))
    LOGIN_WINDOW_SECONDS = 15 * 60
    LOGIN_LOCKOUT_SECONDS = 30 * 60
    # The delay is slept inside the request worker, so each throttled login
    # holds a worker thread for up to LOGIN_MAX_DELAY_SECONDS. Keep the cap
    # small; the lockout does the real blocking.
    LOGIN_PROGRESSIVE_DELAY = os.getenv("LOGIN_PROGRESSIVE_DELAY", "true").lower() == "true"
    LOGIN_MAX_DELAY_SECONDS = int(os.getenv("LOGIN_MAX_DELAY_SECONDS", "10"))

    # CSRF tokens
    CSRF_TOKEN_TTL_SECONDS = 60 * 60
    CSRF_MAX_TOKENS_PER_SESSION = 10

    # Sweep interval for expired rate-limit / CSRF state
    SECURITY_CLEANUP_INTERVAL_SECONDS = 5 * 60

    # Admin query cache
    BOOKING_CACHE_TTL_SECONDS = int(os.getenv("BOOKING_CACHE_TTL_SECONDS", "60"))
    BOOKING_CACHE_MAX_ENTRIES = 100
    BOOKINGS_MAX_PAGE_SIZE = 100

    # Identities granted admin rights without the ADMIN role (comma-separated)
    ADMIN_EMAILS = _env_list("ADMIN_EMAILS")

    # Periodic cleanup threads and session watchdog
    START_BACKGROUND_TASKS = os.getenv("START_BACKGROUND_TASKS", "true").lower() == "true"

    # Basic app settings
    DEBUG = False


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    START_BACKGROUND_TASKS = False
    ADMIN_EMAILS = ["owner@carrental.test"]
