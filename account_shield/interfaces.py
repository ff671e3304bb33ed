"""
Collaborators consumed by the core: identity provider, delivery transport
and device signal source. Only their interfaces live here, plus small
development implementations.
"""

import logging
import platform
import threading
import uuid
from dataclasses import dataclass
from typing import Protocol

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from .errors import InvalidCredentialError

logger = logging.getLogger(__name__)


@dataclass
class Identity:
    user_id: str


class IdentityProvider(Protocol):
    def sign_in_with_credential(self, identifier: str, secret: str) -> Identity:
        """Raises InvalidCredentialError on a failed credential check."""

    def sign_out(self) -> None:
        """Best effort."""


class DeliveryTransport(Protocol):
    def send(self, channel: str, destination: str, code: str) -> None: ...


@dataclass
class DeviceSignals:
    platform: str
    os_version: str
    screen_width: int
    screen_height: int


class DeviceSignalSource(Protocol):
    def snapshot(self) -> DeviceSignals: ...


class InMemoryIdentityProvider:
    """
    Development identity provider.
    Passwords are kept as Argon2id hashes, never in plaintext.
    """

    def __init__(self, hasher: PasswordHasher = None):
        self.ph = hasher or PasswordHasher()
        self._users: dict[str, tuple[str, str]] = {}
        self._lock = threading.Lock()
        self.sign_in_calls = 0
        self.sign_out_calls = 0

    def register(self, identifier: str, password: str) -> str:
        user_id = str(uuid.uuid4())
        with self._lock:
            self._users[identifier.lower().strip()] = (user_id, self.ph.hash(password))
        return user_id

    def sign_in_with_credential(self, identifier: str, secret: str) -> Identity:
        self.sign_in_calls += 1
        entry = self._users.get(identifier.lower().strip())
        if entry is None:
            raise InvalidCredentialError("Invalid email or password")
        user_id, password_hash = entry
        try:
            self.ph.verify(password_hash, secret)
        except (VerificationError, InvalidHashError):
            raise InvalidCredentialError("Invalid email or password")
        return Identity(user_id=user_id)

    def sign_out(self) -> None:
        self.sign_out_calls += 1


class LocalDeviceSignalSource:
    """Reads platform details of the host; screen size comes from config."""

    def __init__(self, screen_width: int = 0, screen_height: int = 0):
        self.screen_width = screen_width
        self.screen_height = screen_height

    def snapshot(self) -> DeviceSignals:
        return DeviceSignals(
            platform=platform.system().lower() or "unknown",
            os_version=platform.release() or "unknown",
            screen_width=self.screen_width,
            screen_height=self.screen_height,
        )
