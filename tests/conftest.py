from dataclasses import replace

import pytest
from argon2 import PasswordHasher

from account_shield.backends import MemoryBackend
from account_shield.config import TestingConfig
from account_shield.core import build_security_core
from account_shield.crypto import CryptoManager, RecordCodec
from account_shield.email_service import ConsoleTransport
from account_shield.events import EventBus
from account_shield.interfaces import DeviceSignals, InMemoryIdentityProvider
from account_shield.rate_limiter import LockoutGuard
from account_shield.store import KeyedExpiringStore

# Aligned to a 30 s TOTP step
START_TIME = 1_800_000_000.0


class FakeClock:
    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubDeviceSource:
    def __init__(self):
        self.signals = DeviceSignals(platform="ios", os_version="17.0", screen_width=390, screen_height=844)

    def snapshot(self) -> DeviceSignals:
        return self.signals

    def change(self, **fields) -> None:
        self.signals = replace(self.signals, **fields)


@pytest.fixture
def config():
    return TestingConfig()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def store(backend, config, clock, events):
    return KeyedExpiringStore(backend, RecordCodec(CryptoManager(config)), config, clock=clock, events=events)


@pytest.fixture
def guard(store, clock):
    return LockoutGuard(store, max_attempts=5, clock=clock)


@pytest.fixture
def identity_provider():
    return InMemoryIdentityProvider(PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1))


@pytest.fixture
def transport():
    return ConsoleTransport()


@pytest.fixture
def device_source():
    return StubDeviceSource()


@pytest.fixture
def core(config, backend, identity_provider, transport, device_source, clock, events):
    security_core = build_security_core(
        config=config,
        backend=backend,
        identity_provider=identity_provider,
        transport=transport,
        device_source=device_source,
        clock=clock,
        events=events,
    )
    yield security_core
    security_core.shutdown()


@pytest.fixture
def registered_user(identity_provider):
    user_id = identity_provider.register("user@x.com", "correct-horse-battery")
    return {"identifier": "user@x.com", "password": "correct-horse-battery", "user_id": user_id}
