"""
Exception taxonomy for the security core.

Read paths (store reads, lock checks, code verification) return defaults
for "not found" and "expired". Only policy violations raise.
"""

from typing import Optional


class AccountShieldError(Exception):
    """Base class for every error raised by the security core."""


class LockedError(AccountShieldError):
    """Identifier is temporarily blocked after too many failed attempts."""

    def __init__(self, minutes_remaining: int, message: Optional[str] = None):
        self.minutes_remaining = minutes_remaining
        super().__init__(
            message or f"Account temporarily locked. Try again in {minutes_remaining} minutes."
        )


class RateLimitedError(AccountShieldError):
    """Same shape as LockedError, raised by throttling layers."""

    def __init__(self, minutes_remaining: int, message: Optional[str] = None):
        self.minutes_remaining = minutes_remaining
        super().__init__(
            message or f"Too many attempts. Try again in {minutes_remaining} minutes."
        )


class VerificationFailedError(AccountShieldError):
    """Wrong code or credential. Safe to retry until locked."""

    def __init__(self, message: str = "Verification failed", attempts_remaining: Optional[int] = None):
        self.attempts_remaining = attempts_remaining
        super().__init__(message)


class NotProvisionedError(AccountShieldError):
    """The requested verification method was never set up."""


class StorageCorruptionError(AccountShieldError):
    """Raised only by strict integrity checks."""

    def __init__(self, report):
        self.report = report
        super().__init__(
            f"Storage integrity check found {report.corrupted} corrupted of {report.total} records"
        )


class StorageUnavailableError(AccountShieldError):
    """The persistence backend rejected a write or delete."""


class ConfigurationError(AccountShieldError):
    """Operation attempted without the preconditions it requires."""


class DeliveryError(AccountShieldError):
    """An out-of-band code could not be handed to its transport."""


class InvalidCredentialError(AccountShieldError):
    """Raised by identity providers when a credential check fails."""
