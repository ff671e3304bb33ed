"""
Security Monitoring

Continuous evaluation of device, request, storage and authentication
signals. Detected conditions become graded SecurityAlerts; each alert type
has its own cooldown and an alert arriving during it is dropped, not queued.

Monitoring never blocks the flows it observes: every public entry point
catches and logs its own failures.
"""

import logging
import math
import threading
import time
from collections import Counter, deque
from datetime import datetime
from typing import Callable, Optional

from .config import SecurityConfig, seconds
from .events import AUTH_EVENT, STORAGE_OPERATION, EventBus
from .models import (
    AlertType,
    ApiCall,
    AuthEvent,
    DeviceFingerprint,
    IntegrityReport,
    RecordKey,
    SecurityAlert,
    Severity,
    StorageFailure,
)
from .scheduler import PeriodicTask
from .store import KeyedExpiringStore
from .utils import Sanitizer

logger = logging.getLogger(__name__)

SEVERITY_BY_TYPE = {
    AlertType.DEVICE_INTEGRITY.value: Severity.HIGH,
    AlertType.MULTIPLE_LOGIN_FAILURES.value: Severity.HIGH,
    AlertType.RAPID_ACCOUNT_CREATION.value: Severity.HIGH,
    AlertType.EXCESSIVE_FAILURES.value: Severity.MEDIUM,
    AlertType.UNUSUAL_ACCESS_TIME.value: Severity.MEDIUM,
    AlertType.STORAGE_ERRORS.value: Severity.MEDIUM,
    AlertType.STORAGE_CORRUPTION.value: Severity.MEDIUM,
}


def _local_hour(timestamp: float) -> int:
    return datetime.fromtimestamp(timestamp).hour


class SecurityMonitor:
    ENTITY_TYPE = 'monitor'

    def __init__(
        self,
        store: KeyedExpiringStore,
        config: SecurityConfig,
        clock: Callable[[], float] = time.time,
        session_monitor=None,
        device_source=None,
        events: Optional[EventBus] = None,
        local_hour: Callable[[float], int] = _local_hour,
    ):
        self.store = store
        self.config = config
        self.clock = clock
        self.session_monitor = session_monitor
        self.device_source = device_source
        self.local_hour = local_hour

        self.alert_cooldown = seconds(config.ALERT_COOLDOWN)
        self.alert_retention = seconds(config.ALERT_RETENTION)
        self.request_window = seconds(config.RAPID_REQUEST_WINDOW)
        self.slow_response = seconds(config.SLOW_RESPONSE_THRESHOLD)
        self.storage_error_window = seconds(config.STORAGE_ERROR_WINDOW)
        self.auth_event_retention = seconds(config.AUTH_EVENT_RETENTION)
        self.auth_pattern_window = seconds(config.AUTH_PATTERN_WINDOW)

        self.initialized = False
        self.sensitivity = 1.0
        self.device_fingerprint: Optional[DeviceFingerprint] = None
        self.last_check: Optional[float] = None

        # Disposable working sets, rebuilt empty after a restart
        self._cooldowns: dict[str, float] = {}
        self._requests: deque = deque()
        self._storage_failures: list[StorageFailure] = []
        self._lock = threading.Lock()

        self._task = PeriodicTask('security-check', config.PERIODIC_CHECK_INTERVAL, self.perform_periodic_check)

        if events is not None:
            events.subscribe(STORAGE_OPERATION, self.record_storage_op)
            events.subscribe(AUTH_EVENT, self.record_auth_event)

    def _key(self, name: str) -> RecordKey:
        return RecordKey(self.store.security_namespace, self.ENTITY_TYPE, name)

    def threshold(self, base) -> float:
        """Apply the current sensitivity to a count or duration threshold."""
        return base * self.sensitivity

    def _count_threshold(self, base: int) -> int:
        return max(1, math.ceil(round(self.threshold(base), 6)))

    # ==================== LIFECYCLE ====================

    def initialize(self, start_periodic: bool = True) -> None:
        if self.initialized:
            return
        try:
            current = self.capture_fingerprint()
            if current is not None:
                stored = self.store.get(self._key('device_fingerprint'))
                if stored:
                    self.check_device_integrity(DeviceFingerprint.from_dict(stored), current)
                self.store.set(self._key('device_fingerprint'), current.to_dict())
                self.device_fingerprint = current

            if start_periodic:
                self.start_periodic_checks()
            self.initialized = True
            logger.info("Security monitoring initialized")
        except Exception:
            logger.exception("Security monitoring initialization failed")

    def start_periodic_checks(self) -> None:
        self._task.start()

    def stop(self) -> None:
        self._task.stop()

    def run_periodic_check(self) -> bool:
        """Run the scheduled check now unless one is already in flight."""
        return self._task.run_once()

    # ==================== DEVICE ====================

    def capture_fingerprint(self) -> Optional[DeviceFingerprint]:
        if self.device_source is None:
            return None
        signals = self.device_source.snapshot()
        return DeviceFingerprint(
            platform=signals.platform,
            os_version=signals.os_version,
            screen_width=signals.screen_width,
            screen_height=signals.screen_height,
            captured_at=self.clock(),
        )

    def check_device_integrity(self, stored: DeviceFingerprint, current: DeviceFingerprint) -> int:
        """Weighted diff of two fingerprints. Returns the change score."""
        score = 0
        changes = []

        if stored.platform != current.platform:
            score += self.config.DEVICE_WEIGHT_PLATFORM
            changes.append('platform')
        if stored.os_version != current.os_version:
            score += self.config.DEVICE_WEIGHT_OS_VERSION
            changes.append('os_version')
        if stored.screen_width != current.screen_width or stored.screen_height != current.screen_height:
            score += self.config.DEVICE_WEIGHT_SCREEN
            changes.append('screen_dimensions')

        if score >= self._count_threshold(self.config.DEVICE_CHANGE_THRESHOLD):
            severity = Severity.HIGH if score >= self.config.DEVICE_HIGH_SEVERITY_SCORE else Severity.MEDIUM
            self.handle_alert(
                AlertType.DEVICE_INTEGRITY.value,
                {
                    "changes": changes,
                    "score": score,
                    "stored_fingerprint": stored.to_dict(),
                    "current_fingerprint": current.to_dict(),
                },
                severity=severity,
            )
        return score

    def check_environment(self) -> int:
        """Re-capture the device fingerprint and diff it against the current one."""
        current = self.capture_fingerprint()
        if current is None:
            return 0
        score = 0
        if self.device_fingerprint is not None:
            score = self.check_device_integrity(self.device_fingerprint, current)
        self.device_fingerprint = current
        self.store.set(self._key('device_fingerprint'), current.to_dict())
        return score

    # ==================== SIGNAL STREAMS ====================

    def record_api_call(self, url: str, method: str = 'GET', status: int = 200, duration=0.0) -> None:
        try:
            now = self.clock()
            duration = seconds(duration)
            call = ApiCall(url=Sanitizer.sanitize_url(url), method=method, status=status, duration=duration, timestamp=now)

            with self._lock:
                self._requests.append(call)
                while self._requests and now - self._requests[0].timestamp >= self.request_window:
                    self._requests.popleft()
                buffered = list(self._requests)

            if len(buffered) >= self._count_threshold(self.config.MAX_RAPID_REQUESTS):
                self.handle_alert(AlertType.RAPID_REQUESTS.value, {
                    "count": len(buffered),
                    "time_window": self.request_window,
                    "requests": [vars(r) for r in buffered[-5:]],
                })

            failures = [r for r in buffered if r.status >= self.config.FAILED_REQUEST_STATUS]
            if len(failures) >= self._count_threshold(self.config.MAX_FAILED_REQUESTS):
                self.handle_alert(AlertType.EXCESSIVE_FAILURES.value, {
                    "failed_requests": len(failures),
                    "total_requests": len(buffered),
                    "failure_rate": len(failures) / len(buffered) * 100,
                })

            if duration > self.threshold(self.slow_response):
                self.handle_alert(AlertType.SLOW_RESPONSE.value, {
                    "url": call.url,
                    "duration": duration,
                    "method": method,
                })
        except Exception:
            logger.exception("API request monitoring failed")

    def record_storage_op(self, operation: str, key: str, success: bool = True, error: Optional[str] = None) -> None:
        if success:
            return
        try:
            now = self.clock()
            failure = StorageFailure(
                operation=operation,
                key=Sanitizer.sanitize_key(key),
                error=str(error) if error else 'Unknown error',
                timestamp=now,
            )
            with self._lock:
                self._storage_failures.append(failure)
                self._storage_failures = [
                    f for f in self._storage_failures if now - f.timestamp < self.storage_error_window
                ]
                recent = list(self._storage_failures)

            if len(recent) >= self._count_threshold(self.config.MAX_STORAGE_ERRORS):
                self.handle_alert(AlertType.STORAGE_ERRORS.value, {
                    "error_count": len(recent),
                    "recent_errors": [vars(f) for f in recent[-3:]],
                })
        except Exception:
            logger.exception("Storage operation monitoring failed")

    def record_auth_event(self, event: str, user_id: Optional[str] = None, metadata: Optional[dict] = None) -> None:
        try:
            now = self.clock()
            auth_event = AuthEvent(
                event=event,
                user_id=Sanitizer.mask_user_id(user_id) if user_id else None,
                metadata=Sanitizer.sanitize_metadata(metadata),
                timestamp=now,
                subject=self.store.codec.subject_key(str(user_id)) if user_id else None,
            )
            stored = self.get_auth_events()
            stored.append(auth_event)
            recent = [e for e in stored if now - e.timestamp < self.auth_event_retention]
            self.store.set(self._key('auth_events'), [e.to_dict() for e in recent])

            self.analyze_auth_pattern(recent, auth_event)
        except Exception:
            logger.exception("Auth event monitoring failed")

    def get_auth_events(self) -> list[AuthEvent]:
        return [AuthEvent.from_dict(e) for e in self.store.get(self._key('auth_events'), [])]

    def analyze_auth_pattern(self, events: list[AuthEvent], current: AuthEvent) -> None:
        window_start = current.timestamp - self.auth_pattern_window
        in_window = [e for e in events if e.timestamp > window_start]

        failed = [e for e in in_window if e.event == 'login_failed' and e.subject == current.subject]
        if current.event == 'login_failed' and len(failed) >= self._count_threshold(
            self.config.MAX_LOGIN_FAILURES_IN_WINDOW
        ):
            self.handle_alert(AlertType.MULTIPLE_LOGIN_FAILURES.value, {
                "user_id": current.user_id,
                "attempts": len(failed),
                "time_window": self.auth_pattern_window,
            })

        creations = [e for e in in_window if e.event == 'account_created']
        if current.event == 'account_created' and len(creations) >= self._count_threshold(
            self.config.RAPID_ACCOUNT_CREATION_THRESHOLD
        ):
            self.handle_alert(AlertType.RAPID_ACCOUNT_CREATION.value, {
                "count": len(creations),
                "accounts": [e.user_id for e in creations],
            })

        if current.event == 'login_success':
            start_hour, end_hour = self.config.UNUSUAL_LOGIN_HOURS
            hours = [
                self.local_hour(e.timestamp)
                for e in events
                if e.event == 'login_success' and e.subject == current.subject
            ]
            unusual = [h for h in hours if start_hour <= h <= end_hour]
            if len(unusual) >= self._count_threshold(self.config.UNUSUAL_LOGIN_THRESHOLD):
                self.handle_alert(AlertType.UNUSUAL_ACCESS_TIME.value, {
                    "user_id": current.user_id,
                    "unusual_logins": len(unusual),
                    "hours": unusual,
                })

    # ==================== ALERTS ====================

    def calculate_severity(self, alert_type: str, details: Optional[dict] = None) -> Severity:
        return SEVERITY_BY_TYPE.get(alert_type, Severity.LOW)

    def handle_alert(self, alert_type: str, details: Optional[dict] = None, severity: Optional[Severity] = None) -> Optional[SecurityAlert]:
        """
        Emit an alert unless its type is cooling down.

        Returns the stored alert, or None when it was dropped.
        """
        try:
            now = self.clock()
            with self._lock:
                last = self._cooldowns.get(alert_type)
                if last is not None and now - last < self.alert_cooldown:
                    logger.debug(f"Security alert '{alert_type}' suppressed by cooldown")
                    return None
                self._cooldowns[alert_type] = now

            alert = SecurityAlert(
                type=alert_type,
                severity=severity or self.calculate_severity(alert_type, details),
                details=self.sanitize_alert_details(details or {}),
                timestamp=now,
                device_fingerprint=self.device_fingerprint.to_dict() if self.device_fingerprint else None,
            )
            self._store_alert(alert)
            logger.warning(f"Security alert: {alert_type} (severity={alert.severity.value})")
            self.take_automatic_action(alert)
            return alert
        except Exception:
            logger.exception("Security alert handling failed")
            return None

    def take_automatic_action(self, alert: SecurityAlert) -> None:
        if alert.severity == Severity.HIGH:
            logger.warning(f"High severity security threat ({alert.type}), forcing logout")
            if self.session_monitor is not None:
                self.session_monitor.force_logout(f"Security alert: {alert.type}")
        elif alert.severity == Severity.MEDIUM:
            self.increase_sensitivity()
            logger.info(f"Medium severity threat detected, monitoring sensitivity now {self.sensitivity:.2f}")

    def increase_sensitivity(self) -> float:
        with self._lock:
            self.sensitivity = max(self.config.SENSITIVITY_FLOOR, self.sensitivity * self.config.SENSITIVITY_STEP)
            return self.sensitivity

    def _store_alert(self, alert: SecurityAlert) -> None:
        now = alert.timestamp
        alerts = [a for a in self.get_alerts() if now - a.timestamp < self.alert_retention]
        alerts.append(alert)
        alerts = alerts[-self.config.MAX_STORED_ALERTS:]
        self.store.set(self._key('alerts'), [a.to_dict() for a in alerts])

    def get_alerts(self) -> list[SecurityAlert]:
        return [SecurityAlert.from_dict(a) for a in self.store.get(self._key('alerts'), [])]

    @staticmethod
    def sanitize_alert_details(details: dict) -> dict:
        sanitized = dict(details)
        if sanitized.get('user_id'):
            sanitized['user_id'] = Sanitizer.mask_user_id(sanitized['user_id'])
        if sanitized.get('url'):
            sanitized['url'] = Sanitizer.sanitize_url(sanitized['url'])
        return sanitized

    # ==================== PERIODIC CHECK ====================

    def perform_periodic_check(self) -> Optional[IntegrityReport]:
        """Store integrity scan followed by an environment re-check."""
        try:
            report = self.store.verify_integrity()
            if report.corrupted > 0:
                self.handle_alert(AlertType.STORAGE_CORRUPTION.value, {
                    "corrupted_items": report.corrupted,
                    "total_items": report.total,
                })
            self.check_environment()
            self.last_check = self.clock()
            return report
        except Exception:
            logger.exception("Periodic security check failed")
            return None

    # ==================== DASHBOARD ====================

    def get_dashboard_snapshot(self) -> Optional[dict]:
        try:
            now = self.clock()
            day_ago = now - 24 * 60 * 60
            alerts = self.get_alerts()
            recent_alerts = [a for a in alerts if a.timestamp > day_ago]
            recent_events = [e for e in self.get_auth_events() if e.timestamp > day_ago]
            with self._lock:
                buffered_requests = len(self._requests)
                storage_errors = len(self._storage_failures)

            return {
                "alerts": [a.to_dict() for a in recent_alerts],
                "counts": {
                    "total_alerts": len(alerts),
                    "recent_alerts": len(recent_alerts),
                    "alerts_by_type": dict(Counter(a.type for a in recent_alerts)),
                    "alerts_by_severity": dict(Counter(a.severity.value for a in recent_alerts)),
                    "auth_events": len(recent_events),
                    "auth_events_by_type": dict(Counter(e.event for e in recent_events)),
                    "buffered_requests": buffered_requests,
                    "recent_storage_errors": storage_errors,
                },
                "sensitivity": self.sensitivity,
                "last_check": self.last_check,
                "generated_at": now,
            }
        except Exception:
            logger.exception("Failed to build security dashboard")
            return None
