import threading

import pytest

from account_shield.backends import MemoryBackend, SQLAlchemyBackend
from account_shield.crypto import CryptoManager, RecordCodec
from account_shield.models import RecordKey
from account_shield.store import KeyedExpiringStore


@pytest.fixture
def sql_backend(tmp_path):
    backend = SQLAlchemyBackend(f"sqlite:///{tmp_path / 'kv.db'}")
    yield backend
    backend.close()


@pytest.fixture(params=["memory", "sql"])
def any_backend(request, tmp_path):
    if request.param == "memory":
        yield MemoryBackend()
        return
    backend = SQLAlchemyBackend(f"sqlite:///{tmp_path / 'kv.db'}")
    yield backend
    backend.close()


def test_set_get_overwrite_remove(any_backend):
    assert any_backend.get("a") is None

    any_backend.set("a", "1")
    any_backend.set("a", "2")
    assert any_backend.get("a") == "2"

    any_backend.remove("a")
    assert any_backend.get("a") is None


def test_removing_missing_key_is_not_an_error(any_backend):
    any_backend.remove("missing")


def test_list_keys_by_prefix(any_backend):
    any_backend.set("_secure/security/lockout/a/value", "x")
    any_backend.set("_secure/security/session/current/value", "y")
    any_backend.set("_secure/cache/item/1/value", "z")

    assert sorted(any_backend.list_keys("_secure/security/")) == [
        "_secure/security/lockout/a/value",
        "_secure/security/session/current/value",
    ]


def test_sql_prefix_wildcards_are_literal(sql_backend):
    sql_backend.set("a_b/1", "x")
    sql_backend.set("axb/1", "y")
    sql_backend.set("a%b/1", "z")

    assert sql_backend.list_keys("a_b/") == ["a_b/1"]
    assert sql_backend.list_keys("a%b/") == ["a%b/1"]


def test_sql_data_survives_reopen(tmp_path):
    url = f"sqlite:///{tmp_path / 'kv.db'}"
    first = SQLAlchemyBackend(url)
    first.set("k", "v")
    first.close()

    second = SQLAlchemyBackend(url)
    try:
        assert second.get("k") == "v"
    finally:
        second.close()


def test_in_memory_sqlite_is_shared_between_threads():
    backend = SQLAlchemyBackend("sqlite://")
    writer = threading.Thread(target=backend.set, args=("k", "from-thread"))
    writer.start()
    writer.join()

    assert backend.get("k") == "from-thread"
    backend.close()


def test_store_over_sql_backend(sql_backend, config, clock):
    store = KeyedExpiringStore(sql_backend, RecordCodec(CryptoManager(config)), config, clock=clock)
    key = RecordKey("security", "totp", "user-123")

    store.set(key, {"secret": "JBSWY3DPEHPK3PXP"}, expires_in=60)

    assert store.get(key) == {"secret": "JBSWY3DPEHPK3PXP"}
    assert store.list_keys("security", "totp") == [key]
    clock.advance(61)
    assert store.get(key) is None
    assert sql_backend.list_keys("_secure/") == []
