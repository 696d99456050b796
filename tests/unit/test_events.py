"""Unit tests for the security event monitor."""

import pytest

from security.events import SecurityMonitor


@pytest.fixture
def sink(mocker):
    return mocker.Mock()


@pytest.fixture
def monitor(clock, sink):
    return SecurityMonitor(sink=sink, clock=clock)


def test_event_shape_and_severity(monitor, clock):
    event = monitor.add_event("ACCOUNT_LOCKED", email="a@x.com")
    assert event.id == 1
    assert event.severity == "high"
    assert event.timestamp == clock()
    assert event.data == {"email": "a@x.com"}


def test_unknown_types_are_low(monitor):
    assert monitor.add_event("SOMETHING_NEW").severity == "low"


def test_recent_is_newest_first_and_filterable(monitor):
    monitor.add_event("LOGIN_FAIL", email="a@x.com")
    monitor.add_event("SESSION_EXPIRED", session_id="1")
    monitor.add_event("LOGIN_FAIL", email="b@x.com")

    assert [e["type"] for e in monitor.recent()] == ["LOGIN_FAIL", "SESSION_EXPIRED", "LOGIN_FAIL"]
    assert [e["data"]["email"] for e in monitor.recent(event_type="LOGIN_FAIL")] == ["b@x.com", "a@x.com"]
    assert len(monitor.recent(limit=1)) == 1
    assert monitor.recent(limit=0) == []


def test_history_is_bounded(clock):
    monitor = SecurityMonitor(clock=clock, max_events=3)
    for i in range(5):
        monitor.add_event("LOGIN_FAIL", n=i)
    assert [e["data"]["n"] for e in monitor.recent()] == [4, 3, 2]


def test_burst_flags_suspicious_activity(monitor):
    for _ in range(5):
        monitor.add_event("LOGIN_FAIL", email="a@x.com")

    [flag] = monitor.suspicious
    assert flag["pattern"] == "LOGIN_FAIL"
    assert flag["count"] == 5
    [event] = monitor.recent(event_type="SUSPICIOUS_ACTIVITY")
    assert event["data"]["pattern"] == "LOGIN_FAIL"


def test_events_outside_window_do_not_count(monitor, clock):
    for _ in range(4):
        monitor.add_event("LOGIN_FAIL")
    clock.advance(60 * 60 + 1)
    monitor.add_event("LOGIN_FAIL")
    assert not monitor.suspicious


def test_every_event_reaches_sink(monitor, sink):
    monitor.add_event("LOGIN_FAIL")
    monitor.add_event("CSRF_ATTEMPT")
    assert [c.args[0].type for c in sink.call_args_list] == ["LOGIN_FAIL", "CSRF_ATTEMPT"]


def test_sink_failure_does_not_break_monitor(monitor, sink):
    sink.side_effect = RuntimeError("audit table gone")
    monitor.add_event("LOGIN_FAIL")
    assert len(monitor.recent()) == 1


def test_clear(monitor):
    for _ in range(5):
        monitor.add_event("LOGIN_FAIL")
    monitor.clear()
    assert monitor.recent() == []
    assert not monitor.suspicious
