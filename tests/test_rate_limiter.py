import pytest

from account_shield.errors import LockedError, RateLimitedError
from account_shield.rate_limiter import CooldownLimiter, LockoutGuard, minutes_until

IDENTIFIER = "user@x.com"


def fail_times(guard, n, identifier=IDENTIFIER):
    result = None
    for _ in range(n):
        result = guard.record_failed_attempt(identifier)
    return result


def test_not_locked_after_max_minus_one_failures(guard):
    result = fail_times(guard, 4)

    assert result.attempts_remaining == 1
    assert result.message == "Invalid credentials. 1 attempts remaining."
    assert guard.is_locked(IDENTIFIER) is None


def test_locked_after_max_failures(guard):
    fail_times(guard, 4)

    with pytest.raises(LockedError) as exc:
        guard.record_failed_attempt(IDENTIFIER)

    assert exc.value.minutes_remaining == 15
    assert "15 minutes" in str(exc.value)
    status = guard.is_locked(IDENTIFIER)
    assert status.locked is True
    assert status.minutes_remaining == 15


def test_attempt_while_locked_does_not_increment(guard):
    fail_times(guard, 4)
    with pytest.raises(LockedError):
        guard.record_failed_attempt(IDENTIFIER)

    with pytest.raises(LockedError):
        guard.record_failed_attempt(IDENTIFIER)

    assert guard.attempts(IDENTIFIER) == 5


def test_expired_lock_self_heals_on_check(guard, clock):
    fail_times(guard, 4)
    with pytest.raises(LockedError):
        guard.record_failed_attempt(IDENTIFIER)

    clock.advance(15 * 60 + 1)

    assert guard.is_locked(IDENTIFIER) is None
    assert guard.attempts(IDENTIFIER) == 0


def test_attempt_after_expired_lock_starts_fresh(guard, clock):
    fail_times(guard, 4)
    with pytest.raises(LockedError):
        guard.record_failed_attempt(IDENTIFIER)
    clock.advance(15 * 60 + 1)

    result = guard.record_failed_attempt(IDENTIFIER)

    assert result.attempts == 1
    assert result.attempts_remaining == 4


def test_minutes_remaining_rounds_up(guard, clock):
    fail_times(guard, 4)
    with pytest.raises(LockedError):
        guard.record_failed_attempt(IDENTIFIER)

    clock.advance(14 * 60 + 30)

    assert guard.is_locked(IDENTIFIER).minutes_remaining == 1


def test_counter_resets_after_attempt_window(guard, clock):
    fail_times(guard, 3)
    clock.advance(16 * 60)

    assert guard.record_failed_attempt(IDENTIFIER).attempts == 1


def test_clear_on_success_removes_counter(guard):
    fail_times(guard, 3)
    guard.clear_on_success(IDENTIFIER)
    assert guard.attempts(IDENTIFIER) == 0


def test_identifiers_are_independent(guard):
    fail_times(guard, 4, "a@x.com")
    assert guard.record_failed_attempt("b@x.com").attempts_remaining == 4


def test_ensure_not_locked_raises_configured_error(store, clock):
    mfa_guard = LockoutGuard(store, max_attempts=2, clock=clock, error_cls=RateLimitedError)
    mfa_guard.record_failed_attempt("mfa_verify:u1")
    with pytest.raises(RateLimitedError):
        mfa_guard.record_failed_attempt("mfa_verify:u1")

    with pytest.raises(RateLimitedError) as exc:
        mfa_guard.ensure_not_locked("mfa_verify:u1")
    assert exc.value.minutes_remaining == 15


def test_exposed_aliases(guard):
    guard.record_failed_login(IDENTIFIER)
    assert guard.is_account_locked(IDENTIFIER) is None
    guard.clear_failed_attempts(IDENTIFIER)
    assert guard.attempts(IDENTIFIER) == 0


def test_minutes_until_is_at_least_one():
    assert minutes_until(100.0, 100.0) == 1
    assert minutes_until(161.0, 100.0) == 2


def test_cooldown_blocks_repeat_requests(store, clock):
    limiter = CooldownLimiter(store, "password_reset", 300, clock=clock)
    limiter.check_and_record(IDENTIFIER)

    with pytest.raises(RateLimitedError) as exc:
        limiter.check_and_record(IDENTIFIER)

    assert exc.value.minutes_remaining == 5
    assert "another password reset" in str(exc.value)


def test_cooldown_allows_request_after_period(store, clock):
    limiter = CooldownLimiter(store, "password_reset", 300, clock=clock)
    limiter.check_and_record(IDENTIFIER)
    clock.advance(301)

    limiter.check_and_record(IDENTIFIER)
