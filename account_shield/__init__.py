"""
Account Shield: account security and threat monitoring core.

Lockout guard, session monitor, one-time code engine and security
monitor over a keyed, expiring, encoded record store.
"""

from .config import SecurityConfig, get_config
from .core import SecurityCore, build_security_core
from .errors import (
    AccountShieldError,
    ConfigurationError,
    DeliveryError,
    InvalidCredentialError,
    LockedError,
    NotProvisionedError,
    RateLimitedError,
    StorageCorruptionError,
    StorageUnavailableError,
    VerificationFailedError,
)

__version__ = "0.1.0"

__all__ = [
    "SecurityConfig",
    "get_config",
    "SecurityCore",
    "build_security_core",
    "AccountShieldError",
    "ConfigurationError",
    "DeliveryError",
    "InvalidCredentialError",
    "LockedError",
    "NotProvisionedError",
    "RateLimitedError",
    "StorageCorruptionError",
    "StorageUnavailableError",
    "VerificationFailedError",
]
