"""
Login brute-force protection.

Per key (normalized email) the limiter walks
CLEAN -> ACCUMULATING -> LOCKED -> CLEAN: failures inside a sliding window
are counted, reaching the maximum locks the key, and a successful login or
lock expiry clears it. State lives in memory for the lifetime of the
process and is owned by one LoginRateLimiter instance.
"""
import threading
import time
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Callable, Dict, Optional

from utils.logger import get_logger
from utils.scheduler import PeriodicTask

log = get_logger(__name__)


class LockReason(str, Enum):
    MAX_ATTEMPTS_EXCEEDED = "MAX_ATTEMPTS_EXCEEDED"
    MANUAL_LOCK = "MANUAL_LOCK"


@dataclass
class RateLimitConfig:
    max_attempts: int = 5
    window_seconds: float = 15 * 60
    lockout_seconds: float = 30 * 60
    progressive_delay: bool = True
    max_delay_seconds: float = 5 * 60

    @classmethod
    def from_app_config(cls, config) -> "RateLimitConfig":
        return cls(
            max_attempts=config.get("LOGIN_MAX_ATTEMPTS", 5),
            window_seconds=config.get("LOGIN_WINDOW_SECONDS", 15 * 60),
            lockout_seconds=config.get("LOGIN_LOCKOUT_SECONDS", 30 * 60),
            progressive_delay=config.get("LOGIN_PROGRESSIVE_DELAY", True),
            max_delay_seconds=config.get("LOGIN_MAX_DELAY_SECONDS", 5 * 60),
        )


@dataclass
class AttemptRecord:
    attempts: int
    window_start: float
    first_attempt: float
    last_attempt: float

    @classmethod
    def fresh(cls, now: float) -> "AttemptRecord":
        return cls(attempts=0, window_start=now, first_attempt=now, last_attempt=now)


@dataclass
class LockRecord:
    until: float
    duration: float
    reason: LockReason


@dataclass
class RateLimitResult:
    allowed: bool
    remaining_attempts: int
    reset_time: float
    delay: float
    reason: str
    lockout_duration: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


class LoginRateLimiter:
    def __init__(self, config: Optional[RateLimitConfig] = None, clock: Callable[[], float] = time.time):
        self.config = config or RateLimitConfig()
        self.clock = clock
        self.attempts: Dict[str, AttemptRecord] = {}
        self.locks: Dict[str, LockRecord] = {}
        # request threads and the cleanup thread share both dicts
        self._lock = threading.RLock()
        self._cleanup_task: Optional[PeriodicTask] = None

    def _config(self, overrides: dict) -> RateLimitConfig:
        return replace(self.config, **overrides) if overrides else self.config

    def _current_record(self, key: str, cfg: RateLimitConfig, now: float) -> AttemptRecord:
        record = self.attempts.get(key)
        if record is None or now - record.window_start > cfg.window_seconds:
            return AttemptRecord.fresh(now)
        return record

    def check_rate_limit(self, key: str, **overrides) -> RateLimitResult:
        """
        Decide whether ``key`` may attempt a login right now.

        Expired locks and windows are evicted as a side effect. Reaching the
        attempt threshold locks the key here, so the denial is reported on
        the attempt after the last permitted failure.
        """
        cfg = self._config(overrides)
        with self._lock:
            return self._check(key, cfg, self.clock())

    def _check(self, key: str, cfg: RateLimitConfig, now: float) -> RateLimitResult:
        lock = self.locks.get(key)
        if lock is not None:
            if now < lock.until:
                return RateLimitResult(
                    allowed=False,
                    remaining_attempts=0,
                    reset_time=lock.until,
                    delay=lock.until - now,
                    reason="LOCKED",
                    lockout_duration=lock.duration,
                )
            self.locks.pop(key, None)
            self.attempts.pop(key, None)
            log.info("rate_limit_lock_expired", key=key)

        record = self._current_record(key, cfg, now)
        if key in self.attempts and record is not self.attempts.get(key):
            # window rolled over
            self.attempts.pop(key, None)

        if record.attempts >= cfg.max_attempts:
            self.locks[key] = LockRecord(
                until=now + cfg.lockout_seconds,
                duration=cfg.lockout_seconds,
                reason=LockReason.MAX_ATTEMPTS_EXCEEDED,
            )
            log.warning("rate_limit_locked", key=key, attempts=record.attempts, lockout_seconds=cfg.lockout_seconds)
            return RateLimitResult(
                allowed=False,
                remaining_attempts=0,
                reset_time=now + cfg.lockout_seconds,
                delay=cfg.lockout_seconds,
                reason=LockReason.MAX_ATTEMPTS_EXCEEDED.value,
                lockout_duration=cfg.lockout_seconds,
            )

        delay = 0.0
        if cfg.progressive_delay and record.attempts > 0:
            # 1s, 2s, 4s, 8s ... capped
            delay = float(min(2 ** (record.attempts - 1), cfg.max_delay_seconds))

        return RateLimitResult(
            allowed=True,
            remaining_attempts=max(0, cfg.max_attempts - record.attempts),
            reset_time=record.window_start + cfg.window_seconds,
            delay=delay,
            reason="ALLOWED",
        )

    def record_failed_attempt(self, key: str, **overrides) -> int:
        cfg = self._config(overrides)
        with self._lock:
            now = self.clock()
            record = self._current_record(key, cfg, now)
            record.attempts += 1
            record.last_attempt = now
            self.attempts[key] = record

        log.info("rate_limit_failed_attempt", key=key, attempts=record.attempts, max_attempts=cfg.max_attempts)
        return record.attempts

    def record_successful_attempt(self, key: str) -> None:
        with self._lock:
            self.attempts.pop(key, None)
            self.locks.pop(key, None)
        log.debug("rate_limit_reset", key=key)

    def get_status(self, key: str, **overrides) -> dict:
        cfg = self._config(overrides)
        with self._lock:
            now = self.clock()
            lock = self.locks.get(key)
            record = self.attempts.get(key)

        if lock is not None:
            return {
                "is_locked": now < lock.until,
                "lock_until": lock.until,
                "lock_duration": lock.duration,
                "lock_reason": lock.reason.value,
                "remaining_lock_time": max(0.0, lock.until - now),
            }

        if record is None:
            return {
                "is_locked": False,
                "attempts": 0,
                "remaining_attempts": cfg.max_attempts,
                "window_start": None,
                "window_end": None,
            }

        window_end = record.window_start + cfg.window_seconds
        expired = now > window_end
        attempts = 0 if expired else record.attempts
        return {
            "is_locked": False,
            "attempts": attempts,
            "remaining_attempts": max(0, cfg.max_attempts - attempts),
            "window_start": record.window_start,
            "window_end": window_end,
            "is_window_expired": expired,
        }

    def lock_key(self, key: str, duration: float, reason: LockReason = LockReason.MANUAL_LOCK) -> LockRecord:
        with self._lock:
            lock = LockRecord(until=self.clock() + duration, duration=duration, reason=LockReason(reason))
            self.locks[key] = lock
        log.warning("rate_limit_manual_lock", key=key, duration=duration, reason=lock.reason.value)
        return lock

    def unlock_key(self, key: str) -> bool:
        with self._lock:
            had_lock = self.locks.pop(key, None) is not None
            had_attempts = self.attempts.pop(key, None) is not None
        log.info("rate_limit_manual_unlock", key=key)
        return had_lock or had_attempts

    def clear_all(self) -> None:
        with self._lock:
            self.attempts.clear()
            self.locks.clear()
        log.info("rate_limit_cleared")

    def get_all_locks(self) -> list:
        with self._lock:
            now = self.clock()
            locks = list(self.locks.items())
        return [
            {
                "key": key,
                "until": lock.until,
                "remaining": lock.until - now,
                "reason": lock.reason.value,
                "duration": lock.duration,
            }
            for key, lock in locks
            if now < lock.until
        ]

    def get_all_attempts(self) -> list:
        with self._lock:
            now = self.clock()
            attempts = list(self.attempts.items())
        return [
            {
                "key": key,
                "attempts": record.attempts,
                "first_attempt": record.first_attempt,
                "last_attempt": record.last_attempt,
                "window_start": record.window_start,
                "is_active": now - record.window_start <= self.config.window_seconds,
            }
            for key, record in attempts
        ]

    def cleanup(self) -> int:
        """Drop expired locks and attempt windows. Returns how many entries went away."""
        with self._lock:
            now = self.clock()
            expired_locks = [k for k, lock in self.locks.items() if now >= lock.until]
            for key in expired_locks:
                self.locks.pop(key, None)

            expired_windows = [
                k for k, record in self.attempts.items()
                if now - record.window_start > self.config.window_seconds
            ]
            for key in expired_windows:
                self.attempts.pop(key, None)

        removed = len(expired_locks) + len(expired_windows)
        if removed:
            log.debug("rate_limit_cleanup", locks=len(expired_locks), windows=len(expired_windows))
        return removed

    def start_periodic_cleanup(self, interval: float = 5 * 60) -> PeriodicTask:
        self.stop_periodic_cleanup()
        self._cleanup_task = PeriodicTask(self.cleanup, interval, name="rate-limit-cleanup").start()
        return self._cleanup_task

    def stop_periodic_cleanup(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.stop()
            self._cleanup_task = None
