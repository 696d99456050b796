from dataclasses import dataclass
from typing import List

from flask import current_app

from security.csrf import CSRFTokenService
from security.events import SecurityMonitor
from security.identity import LocalIdentityProvider
from security.rate_limit import LoginRateLimiter, RateLimitConfig
from services.auth_service import AuthService
from services.backend import SqlBookingBackend
from services.booking_service import BookingService
from services.car_service import CarService
from services.cache import QueryCache
from utils.audit import make_audit_sink
from utils.logger import get_logger

log = get_logger(__name__)


@dataclass
class Services:
    """Process-wide service instances, built once per app and kept in app.extensions."""

    events: SecurityMonitor
    rate_limiter: LoginRateLimiter
    csrf: CSRFTokenService
    identity: LocalIdentityProvider
    auth: AuthService
    cache: QueryCache
    bookings: BookingService
    cars: CarService

    def start_background_tasks(self, config) -> List:
        interval = config.get("SECURITY_CLEANUP_INTERVAL_SECONDS", 300)
        tasks = [
            self.rate_limiter.start_periodic_cleanup(interval),
            self.csrf.start_periodic_cleanup(interval),
            self.auth.start_session_watch(config.get("SESSION_CHECK_INTERVAL_SECONDS", 60)),
        ]
        log.info("background_tasks_started", count=len(tasks))
        return tasks

    def stop_background_tasks(self) -> None:
        self.rate_limiter.stop_periodic_cleanup()
        self.csrf.stop_periodic_cleanup()
        self.auth.stop_session_watch()


def build_services(app) -> Services:
    config = app.config
    events = SecurityMonitor(sink=make_audit_sink(app))
    rate_limiter = LoginRateLimiter(RateLimitConfig.from_app_config(config))
    csrf = CSRFTokenService(
        ttl_seconds=config.get("CSRF_TOKEN_TTL_SECONDS", 3600),
        max_tokens_per_session=config.get("CSRF_MAX_TOKENS_PER_SESSION", 10),
        events=events,
    )
    identity = LocalIdentityProvider()
    auth = AuthService(
        identity,
        rate_limiter,
        csrf,
        events=events,
        admin_emails=config.get("ADMIN_EMAILS", []),
        idle_timeout_seconds=config.get("IDLE_TIMEOUT_SECONDS", 1800),
    )
    cache = QueryCache(
        ttl_seconds=config.get("BOOKING_CACHE_TTL_SECONDS", 60),
        max_size=config.get("BOOKING_CACHE_MAX_ENTRIES", 100),
    )
    backend = SqlBookingBackend()
    bookings = BookingService(
        backend,
        cache,
        max_page_size=config.get("BOOKINGS_MAX_PAGE_SIZE", 100),
    )
    return Services(
        events=events,
        rate_limiter=rate_limiter,
        csrf=csrf,
        identity=identity,
        auth=auth,
        cache=cache,
        bookings=bookings,
        cars=CarService(backend, cache),
    )


def get_services(app=None) -> Services:
    return (app or current_app).extensions["carrental"]
