"""
Authentication Module
Credential sign-in wrapped with lockout, session start and audit events
"""

import logging
import time
from typing import Callable, Optional

from .config import SecurityConfig, seconds
from .errors import InvalidCredentialError, StorageUnavailableError, VerificationFailedError
from .events import AUTH_EVENT, EventBus
from .interfaces import Identity
from .models import LockStatus, RecordKey
from .rate_limiter import CooldownLimiter, LockoutGuard
from .session import SessionMonitor
from .utils import Sanitizer

logger = logging.getLogger(__name__)


class AuthService:
    """Sign-in/sign-out flow on top of an external identity provider"""

    def __init__(
        self,
        identity_provider,
        guard: LockoutGuard,
        session_monitor: SessionMonitor,
        reset_limiter: CooldownLimiter,
        config: SecurityConfig,
        clock: Callable[[], float] = time.time,
        events: Optional[EventBus] = None,
    ):
        self.identity_provider = identity_provider
        self.guard = guard
        self.session_monitor = session_monitor
        self.reset_limiter = reset_limiter
        self.clock = clock
        self.events = events
        self.suspicious_threshold = config.SUSPICIOUS_ACTIVITY_THRESHOLD
        self.suspicious_window = seconds(config.SUSPICIOUS_ACTIVITY_WINDOW)
        self.detections_before_logout = config.SUSPICIOUS_DETECTIONS_BEFORE_LOGOUT

    def sign_in(self, identifier: str, secret: str) -> Identity:
        """
        Authenticate with lockout protection.

        Security Checks:
        - Lock check happens before the identity provider is contacted
        - Failed credential check counts toward the lockout
        - Success clears the counter and starts a session

        Raises:
            LockedError: identifier locked, or this failure locked it
            VerificationFailedError: wrong credentials, with attempts remaining
        """
        identifier = Sanitizer.normalize_identifier(identifier)
        self.guard.ensure_not_locked(identifier)

        try:
            identity = self.identity_provider.sign_in_with_credential(identifier, secret)
        except InvalidCredentialError as e:
            self._emit('login_failed', identifier)
            attempt = self.guard.record_failed_attempt(identifier)
            raise VerificationFailedError(attempt.message, attempts_remaining=attempt.attempts_remaining) from e

        self.guard.clear_on_success(identifier)
        self.session_monitor.start_session(identity.user_id)
        self._emit('login_success', identity.user_id)
        logger.info(f"Secure sign in successful for {Sanitizer.mask_identifier(identifier)}")
        return identity

    def sign_out(self) -> bool:
        session = self.session_monitor.get_session()
        ended = self.session_monitor.force_logout('User logout')
        if session is not None:
            self._emit('logout', session.user_id)
        return ended

    def record_account_created(self, user_id: str) -> None:
        self._emit('account_created', user_id)

    def request_password_reset(self, identifier: str) -> bool:
        """
        Enforces one reset request per identifier per cooldown period.

        Raises:
            RateLimitedError: with the minutes left in the cooldown
        """
        identifier = Sanitizer.normalize_identifier(identifier)
        self.reset_limiter.check_and_record(identifier)
        self._emit('password_reset_requested', identifier)
        logger.info(f"Password reset requested for {Sanitizer.mask_identifier(identifier)}")
        return True

    # ==================== SUSPICIOUS ACTIVITY ====================

    def detect_suspicious_activity(self, user_id: str, activity_type: str, metadata: Optional[dict] = None) -> bool:
        """
        Count an activity; `threshold` of the same type within the window is a
        detection. Repeated detections force a logout.

        Returns True when this activity was a detection.
        """
        metadata = metadata or {}
        store = self.guard.store
        now = self.clock()
        key = RecordKey(store.security_namespace, 'suspicious', f"{user_id}:{activity_type}")
        count_key = RecordKey(store.security_namespace, 'suspicious', user_id, 'detections')

        try:
            activities = store.get(key, [])
            activities.append({
                "timestamp": now,
                "type": activity_type,
                "metadata": {
                    "user_agent": metadata.get('user_agent', 'unknown'),
                    "ip": metadata.get('ip', 'unknown'),
                },
            })
            activities = [a for a in activities if now - a["timestamp"] < self.suspicious_window]
            store.set(key, activities, expires_in=self.suspicious_window)

            if len(activities) < self.suspicious_threshold:
                return False

            logger.warning(
                f"Suspicious activity detected for user {Sanitizer.mask_user_id(user_id)}: "
                f"{activity_type} x{len(activities)}"
            )
            detections = store.get(count_key, 0) + 1
            store.set(count_key, detections, sensitive=False)
        except StorageUnavailableError as e:
            logger.error(f"Suspicious activity detection failed: {e}")
            return False

        if detections >= self.detections_before_logout:
            self.session_monitor.force_logout('Suspicious activity detected')
        return True

    # ==================== GUARD PASSTHROUGH ====================

    def record_failed_login(self, identifier: str):
        return self.guard.record_failed_attempt(Sanitizer.normalize_identifier(identifier))

    def is_account_locked(self, identifier: str) -> Optional[LockStatus]:
        return self.guard.is_locked(Sanitizer.normalize_identifier(identifier))

    def clear_failed_attempts(self, identifier: str) -> None:
        self.guard.clear_on_success(Sanitizer.normalize_identifier(identifier))

    def _emit(self, event: str, user_id: Optional[str], **metadata) -> None:
        if self.events is not None:
            self.events.emit(AUTH_EVENT, event=event, user_id=user_id, metadata=metadata)
