import pytest

from account_shield.events import SESSION_TERMINATED
from account_shield.session import INACTIVITY_TIMEOUT, SESSION_EXPIRED, SessionMonitor


class FailingSignOutProvider:
    def __init__(self):
        self.calls = 0

    def sign_out(self):
        self.calls += 1
        raise ConnectionError("network unreachable")


@pytest.fixture
def session_monitor(store, identity_provider, config, guard, clock, events):
    monitor = SessionMonitor(store, identity_provider, config, guard=guard, clock=clock, events=events)
    yield monitor
    monitor.stop()


def test_start_session_sets_timestamps(session_monitor, clock):
    session = session_monitor.start_session("user-123")

    assert session.started_at == session.last_activity_at == clock()
    assert session_monitor.get_session().user_id == "user-123"
    assert session_monitor.is_monitoring


def test_start_session_clears_lockout_counter(session_monitor, guard):
    guard.record_failed_attempt("user-123")
    session_monitor.start_session("user-123")
    assert guard.attempts("user-123") == 0


def test_touch_updates_last_activity(session_monitor, clock):
    session_monitor.start_session("user-123")
    clock.advance(120)

    session_monitor.touch()

    session = session_monitor.get_session()
    assert session.last_activity_at == clock()
    assert session.last_activity_at >= session.started_at


def test_touch_without_session_is_noop(session_monitor):
    session_monitor.touch()
    assert session_monitor.get_session() is None


def test_fresh_session_is_valid(session_monitor, clock):
    session_monitor.start_session("user-123")
    clock.advance(60)
    assert session_monitor.check_validity() is None


def test_inactivity_forces_logout(session_monitor, clock, identity_provider):
    session_monitor.start_session("user-123")
    clock.advance(31 * 60)

    assert session_monitor.enforce() == INACTIVITY_TIMEOUT
    assert session_monitor.get_session() is None
    assert identity_provider.sign_out_calls == 1
    assert not session_monitor.is_monitoring


def test_session_timeout_is_checked_before_inactivity(session_monitor, clock):
    session_monitor.start_session("user-123")
    for _ in range(73):
        clock.advance(20 * 60)
        session_monitor.touch()

    assert session_monitor.check_validity() == SESSION_EXPIRED

    clock.advance(31 * 60)
    assert session_monitor.check_validity() == SESSION_EXPIRED


def test_force_logout_is_idempotent(session_monitor):
    session_monitor.start_session("user-123")

    assert session_monitor.force_logout("Security logout") is True
    assert session_monitor.force_logout("Security logout") is False
    assert session_monitor.get_session() is None


def test_sign_out_failure_does_not_block_local_logout(store, config, clock):
    provider = FailingSignOutProvider()
    monitor = SessionMonitor(store, provider, config, clock=clock)
    monitor.start_session("user-123")

    assert monitor.force_logout("Security logout") is True
    assert monitor.get_session() is None
    assert provider.calls == 1


def test_forced_logout_emits_event(session_monitor, events):
    terminated = []
    events.subscribe(SESSION_TERMINATED, lambda **payload: terminated.append(payload))
    session_monitor.start_session("user-123")

    session_monitor.force_logout("Inactivity timeout")

    assert terminated == [{"user_id": "user-123", "reason": "Inactivity timeout"}]


def test_scheduled_check_logs_out_expired_session(session_monitor, clock):
    session_monitor.start_session("user-123")
    clock.advance(31 * 60)

    assert session_monitor.run_check() is True
    assert session_monitor.get_session() is None


def test_scheduled_check_stops_without_session(session_monitor):
    session_monitor.start_monitoring()
    session_monitor.run_check()
    assert not session_monitor.is_monitoring
