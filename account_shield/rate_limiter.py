"""
Rate Limiting and Brute Force Protection
"""

import logging
import math
import time
from datetime import timedelta
from typing import Callable, Optional

from .config import seconds
from .errors import LockedError, RateLimitedError
from .models import AttemptResult, LockoutCounter, LockStatus, RecordKey
from .store import KeyedExpiringStore
from .utils import Sanitizer

logger = logging.getLogger(__name__)


def minutes_until(deadline: float, now: float) -> int:
    return max(1, math.ceil((deadline - now) / 60))


class LockoutGuard:
    """
    Per-identifier failed-attempt counter with temporary lockout.

    Clear -> Accumulating -> Locked -> Clear. The counter is persisted
    through the store; an accumulating counter expires with its window.
    """

    ENTITY_TYPE = 'lockout'

    def __init__(
        self,
        store: KeyedExpiringStore,
        max_attempts: int = 5,
        lockout_duration=timedelta(minutes=15),
        attempt_window=timedelta(minutes=15),
        clock: Callable[[], float] = time.time,
        error_cls=LockedError,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.lockout_duration = seconds(lockout_duration)
        self.attempt_window = seconds(attempt_window)
        self.clock = clock
        self.error_cls = error_cls

    def _key(self, identifier: str) -> RecordKey:
        return RecordKey(self.store.security_namespace, self.ENTITY_TYPE, identifier)

    def _load(self, identifier: str) -> Optional[LockoutCounter]:
        data = self.store.get(self._key(identifier))
        if not data:
            return None
        try:
            return LockoutCounter.from_dict(data)
        except TypeError:
            logger.warning(f"Malformed lockout counter for {Sanitizer.mask_identifier(identifier)}, resetting")
            self.store.remove(self._key(identifier))
            return None

    def record_failed_attempt(self, identifier: str) -> AttemptResult:
        """
        Count a failed attempt.

        Raises the configured lock error (LockedError by default) when the
        identifier is locked or when this attempt reaches max_attempts.
        Otherwise returns the remaining attempt count and a generic
        invalid-credential message embedding it.
        """
        now = self.clock()
        counter = self._load(identifier)

        if counter and counter.locked_until is not None:
            if counter.locked_until > now:
                raise self.error_cls(minutes_until(counter.locked_until, now))
            # Lockout expired, clear it
            self.store.remove(self._key(identifier))
            counter = None

        if counter is None:
            counter = LockoutCounter(identifier=identifier, attempts=0, first_attempt_at=now)

        counter.attempts += 1
        logger.warning(
            f"Failed attempt {counter.attempts} for identifier: {Sanitizer.mask_identifier(identifier)}"
        )

        if counter.attempts >= self.max_attempts:
            counter.locked_until = now + self.lockout_duration
            self.store.set(self._key(identifier), counter.to_dict(), sensitive=False)
            logger.error(
                f"Identifier locked due to too many failed attempts: {Sanitizer.mask_identifier(identifier)}"
            )
            minutes = minutes_until(counter.locked_until, now)
            raise self.error_cls(
                minutes,
                f"Too many failed attempts. Locked for {minutes} minutes.",
            )

        window_end = (counter.first_attempt_at or now) + self.attempt_window
        self.store.set(self._key(identifier), counter.to_dict(), sensitive=False, expires_at=window_end)

        remaining = self.max_attempts - counter.attempts
        return AttemptResult(
            attempts=counter.attempts,
            attempts_remaining=remaining,
            message=f"Invalid credentials. {remaining} attempts remaining.",
        )

    def is_locked(self, identifier: str) -> Optional[LockStatus]:
        """None when unlocked; an expired lock is cleared as a side effect."""
        counter = self._load(identifier)
        if counter is None or counter.locked_until is None:
            return None

        now = self.clock()
        if counter.locked_until > now:
            return LockStatus(locked=True, minutes_remaining=minutes_until(counter.locked_until, now))

        self.store.remove(self._key(identifier))
        return None

    def ensure_not_locked(self, identifier: str) -> None:
        status = self.is_locked(identifier)
        if status:
            raise self.error_cls(status.minutes_remaining)

    def attempts(self, identifier: str) -> int:
        counter = self._load(identifier)
        return counter.attempts if counter else 0

    def clear_on_success(self, identifier: str) -> None:
        self.store.remove(self._key(identifier))

    # Names used by the UI layer
    record_failed_login = record_failed_attempt
    is_account_locked = is_locked
    clear_failed_attempts = clear_on_success


class CooldownLimiter:
    """Allows one action per identifier per cooldown period."""

    ENTITY_TYPE = 'cooldown'

    def __init__(self, store: KeyedExpiringStore, action: str, cooldown, clock: Callable[[], float] = time.time):
        self.store = store
        self.action = action
        self.cooldown = seconds(cooldown)
        self.clock = clock

    def _key(self, identifier: str) -> RecordKey:
        return RecordKey(self.store.security_namespace, self.ENTITY_TYPE, f"{self.action}:{identifier}")

    def check_and_record(self, identifier: str) -> None:
        now = self.clock()
        last = self.store.get(self._key(identifier))
        if last is not None and now - last < self.cooldown:
            minutes = minutes_until(last + self.cooldown, now)
            raise RateLimitedError(
                minutes,
                f"Please wait {minutes} minutes before requesting another {self.action.replace('_', ' ')}.",
            )
        self.store.set(self._key(identifier), now, expires_in=self.cooldown, sensitive=False)
