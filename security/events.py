"""
Security event monitor.

Collects failed logins, lockouts, CSRF rejections and session expiries,
keeps a bounded recent history for the admin dashboard, flags bursts of the
same event type, and forwards each event to an audit sink.
"""
import itertools
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

from utils.logger import get_logger

log = get_logger(__name__)

SEVERITY = {
    "ACCOUNT_LOCKED": "high",
    "MULTIPLE_FAILED_LOGINS": "high",
    "CSRF_ATTEMPT": "high",
    "SUSPICIOUS_ACTIVITY": "medium",
    "RATE_LIMIT_EXCEEDED": "medium",
    "LOGIN_FAIL": "medium",
    "SESSION_EXPIRED": "low",
}

PATTERN_WINDOW_SECONDS = 60 * 60
PATTERN_THRESHOLD = 5


@dataclass
class SecurityEvent:
    id: int
    type: str
    timestamp: float
    severity: str
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class SecurityMonitor:
    def __init__(
        self,
        sink: Optional[Callable[[SecurityEvent], None]] = None,
        clock: Callable[[], float] = time.time,
        max_events: int = 200,
    ):
        self.sink = sink
        self.clock = clock
        self.events: deque = deque(maxlen=max_events)
        self.suspicious: deque = deque(maxlen=50)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    @staticmethod
    def severity_for(event_type: str) -> str:
        return SEVERITY.get(event_type, "low")

    def add_event(self, event_type: str, **data) -> SecurityEvent:
        event = SecurityEvent(
            id=next(self._ids),
            type=event_type,
            timestamp=self.clock(),
            severity=self.severity_for(event_type),
            data=data,
        )
        with self._lock:
            self.events.append(event)
            burst = self._burst_size(event)

        log_method = log.warning if event.severity == "high" else log.info
        log_method("security_event", type=event_type, severity=event.severity, **data)
        self._forward(event)

        if burst:
            self._flag_pattern(event_type, burst)
        return event

    def _burst_size(self, event: SecurityEvent) -> int:
        # one SUSPICIOUS_ACTIVITY per threshold crossing, never for itself
        if event.type == "SUSPICIOUS_ACTIVITY":
            return 0
        cutoff = event.timestamp - PATTERN_WINDOW_SECONDS
        count = sum(1 for e in self.events if e.type == event.type and e.timestamp >= cutoff)
        return count if count >= PATTERN_THRESHOLD and count % PATTERN_THRESHOLD == 0 else 0

    def _flag_pattern(self, event_type: str, count: int) -> None:
        self.suspicious.append({
            "type": "PATTERN_DETECTED",
            "pattern": event_type,
            "count": count,
            "timestamp": self.clock(),
            "severity": "high",
        })
        self.add_event("SUSPICIOUS_ACTIVITY", pattern=event_type, count=count, timeframe="1 hour")

    def _forward(self, event: SecurityEvent) -> None:
        if self.sink is None:
            return
        try:
            self.sink(event)
        except Exception:
            log.warning("security_event_sink_failed", type=event.type, exc_info=True)

    def recent(self, limit: int = 50, event_type: Optional[str] = None) -> list:
        with self._lock:
            events = list(self.events)
        if event_type:
            events = [e for e in events if e.type == event_type]
        return [e.to_dict() for e in reversed(events[-limit:])] if limit > 0 else []

    def clear(self) -> None:
        with self._lock:
            self.events.clear()
            self.suspicious.clear()
