"""
Session Monitor

NoSession -> Active -> Expired | Inactive. Both terminal states force a
logout. The session record lives in the store; the periodic check runs
only while a session exists.
"""

import logging
import time
from typing import Callable, Optional

from .config import SecurityConfig, seconds
from .events import SESSION_TERMINATED, EventBus
from .models import RecordKey, SessionRecord
from .rate_limiter import LockoutGuard
from .scheduler import PeriodicTask
from .store import KeyedExpiringStore
from .utils import Sanitizer

logger = logging.getLogger(__name__)

SESSION_EXPIRED = "Session expired"
INACTIVITY_TIMEOUT = "Inactivity timeout"


class SessionMonitor:
    ENTITY_TYPE = 'session'

    def __init__(
        self,
        store: KeyedExpiringStore,
        identity_provider,
        config: SecurityConfig,
        guard: Optional[LockoutGuard] = None,
        clock: Callable[[], float] = time.time,
        events: Optional[EventBus] = None,
    ):
        self.store = store
        self.identity_provider = identity_provider
        self.guard = guard
        self.clock = clock
        self.events = events
        self.session_timeout = seconds(config.SESSION_ABSOLUTE_TIMEOUT)
        self.inactivity_timeout = seconds(config.SESSION_IDLE_TIMEOUT)
        self._task = PeriodicTask('session-check', config.SESSION_CHECK_INTERVAL, self._scheduled_check)

    @property
    def _key(self) -> RecordKey:
        return RecordKey(self.store.security_namespace, self.ENTITY_TYPE, 'current')

    def get_session(self) -> Optional[SessionRecord]:
        data = self.store.get(self._key)
        if not data:
            return None
        try:
            return SessionRecord.from_dict(data)
        except TypeError:
            logger.warning("Malformed session record, discarding")
            self.store.remove(self._key)
            return None

    def start_session(self, user_id: str) -> SessionRecord:
        """
        Begin a session for `user_id`.

        A fresh session implies a successful login, so the identifier's
        lockout counter is cleared as well.
        """
        now = self.clock()
        session = SessionRecord(user_id=user_id, started_at=now, last_activity_at=now)
        self.store.set(self._key, session.to_dict())
        if self.guard is not None:
            self.guard.clear_on_success(user_id)
        self.start_monitoring()
        logger.info(f"Session started for user {Sanitizer.mask_user_id(user_id)}")
        return session

    def touch(self) -> None:
        """Record user activity. No-op without a session."""
        session = self.get_session()
        if session is None:
            return
        session.last_activity_at = max(self.clock(), session.started_at)
        self.store.set(self._key, session.to_dict())

    def check_validity(self) -> Optional[str]:
        """
        Returns the logout reason when the session is no longer valid, else None.
        Session timeout is evaluated before inactivity.
        """
        session = self.get_session()
        if session is None:
            return None

        now = self.clock()
        if now - session.started_at > self.session_timeout:
            return SESSION_EXPIRED
        if now - session.last_activity_at > self.inactivity_timeout:
            return INACTIVITY_TIMEOUT
        return None

    def enforce(self) -> Optional[str]:
        """Run one validity check and force logout when it fails."""
        reason = self.check_validity()
        if reason is not None:
            self.force_logout(reason)
        return reason

    def force_logout(self, reason: str = "Security logout") -> bool:
        """
        Idempotent. Clears the session record, stops the periodic check and
        calls the provider's sign-out. A failing sign-out is logged only.

        Returns whether a session existed.
        """
        session = self.get_session()
        try:
            self.store.remove(self._key)
        finally:
            self.stop()

        try:
            self.identity_provider.sign_out()
        except Exception as e:
            logger.error(f"Sign-out failed during forced logout: {e}")

        if session is None:
            return False

        logger.warning(f"Forced logout for user {Sanitizer.mask_user_id(session.user_id)}: {reason}")
        if self.events is not None:
            self.events.emit(SESSION_TERMINATED, user_id=session.user_id, reason=reason)
        return True

    # ==================== TIMER ====================

    def start_monitoring(self) -> None:
        self._task.start()

    def stop(self) -> None:
        self._task.stop()

    @property
    def is_monitoring(self) -> bool:
        return self._task.is_running

    def run_check(self) -> bool:
        """Run the scheduled check now; skipped while a previous run is in flight."""
        return self._task.run_once()

    def _scheduled_check(self) -> None:
        if self.get_session() is None:
            self.stop()
            return
        self.enforce()
