"""
Wiring for one process-wide set of security components.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .auth import AuthService
from .backends import SQLAlchemyBackend
from .config import SecurityConfig, get_config
from .crypto import BackupCodeHasher, CryptoManager, RecordCodec
from .email_service import ConsoleTransport
from .errors import RateLimitedError
from .events import EventBus
from .interfaces import InMemoryIdentityProvider, LocalDeviceSignalSource
from .mfa import MFAService
from .monitoring import SecurityMonitor
from .rate_limiter import CooldownLimiter, LockoutGuard
from .session import SessionMonitor
from .store import KeyedExpiringStore

logger = logging.getLogger(__name__)


@dataclass
class SecurityCore:
    config: SecurityConfig
    events: EventBus
    store: KeyedExpiringStore
    guard: LockoutGuard
    mfa_guard: LockoutGuard
    session: SessionMonitor
    mfa: MFAService
    monitor: SecurityMonitor
    auth: AuthService

    def start(self, start_periodic: bool = True) -> None:
        self.monitor.initialize(start_periodic=start_periodic)

    def shutdown(self) -> None:
        """Stop every timer. Call on logout of the process and app teardown."""
        self.session.stop()
        self.monitor.stop()
        logger.info("Security core stopped")


def build_security_core(
    config: Optional[SecurityConfig] = None,
    backend=None,
    identity_provider=None,
    transport=None,
    device_source=None,
    clock: Callable[[], float] = time.time,
    events: Optional[EventBus] = None,
) -> SecurityCore:
    """
    Construct and connect all components.

    Defaults: SQL backend from STORAGE_URL, an in-memory identity provider,
    the console transport and local device signals.
    """
    config = config or get_config()
    events = events or EventBus()
    backend = backend if backend is not None else SQLAlchemyBackend(config.STORAGE_URL)
    identity_provider = identity_provider or InMemoryIdentityProvider()
    transport = transport or ConsoleTransport()
    device_source = device_source or LocalDeviceSignalSource(
        config.DEVICE_SCREEN_WIDTH, config.DEVICE_SCREEN_HEIGHT
    )

    codec = RecordCodec(CryptoManager(config))
    store = KeyedExpiringStore(backend, codec, config, clock=clock, events=events)

    guard = LockoutGuard(
        store,
        max_attempts=config.MAX_LOGIN_ATTEMPTS,
        lockout_duration=config.ACCOUNT_LOCKOUT_DURATION,
        attempt_window=config.LOGIN_ATTEMPT_WINDOW,
        clock=clock,
    )
    mfa_guard = LockoutGuard(
        store,
        max_attempts=config.MFA_MAX_VERIFY_ATTEMPTS,
        lockout_duration=config.MFA_VERIFY_LOCKOUT_DURATION,
        attempt_window=config.MFA_VERIFY_LOCKOUT_DURATION,
        clock=clock,
        error_cls=RateLimitedError,
    )

    session = SessionMonitor(store, identity_provider, config, guard=guard, clock=clock, events=events)
    mfa = MFAService(
        store,
        mfa_guard,
        BackupCodeHasher(config),
        config,
        clock=clock,
        transport=transport,
        events=events,
    )
    monitor = SecurityMonitor(
        store,
        config,
        clock=clock,
        session_monitor=session,
        device_source=device_source,
        events=events,
    )
    reset_limiter = CooldownLimiter(store, 'password_reset', config.PASSWORD_RESET_COOLDOWN, clock=clock)
    auth = AuthService(identity_provider, guard, session, reset_limiter, config, clock=clock, events=events)

    return SecurityCore(
        config=config,
        events=events,
        store=store,
        guard=guard,
        mfa_guard=mfa_guard,
        session=session,
        mfa=mfa,
        monitor=monitor,
        auth=auth,
    )
