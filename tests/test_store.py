import json

import pytest

from account_shield.errors import StorageCorruptionError, StorageUnavailableError
from account_shield.events import STORAGE_OPERATION
from account_shield.models import RecordKey
from account_shield.store import KeyedExpiringStore


class BrokenWriteBackend:
    def get(self, raw_key):
        return None

    def set(self, raw_key, value):
        raise OSError("disk full")

    def remove(self, raw_key):
        raise OSError("disk full")

    def list_keys(self, prefix):
        return []


def test_sensitive_value_is_not_stored_in_plaintext(store, backend):
    key = RecordKey("security", "profile", "u1")
    store.set(key, {"email": "alice@example.com"})

    raw = backend.get(store.format_key(key))
    assert "alice@example.com" not in raw
    assert json.loads(raw)["encoded"] is True
    assert store.get(key) == {"email": "alice@example.com"}


def test_non_sensitive_value_is_stored_as_plain_json(store, backend):
    key = RecordKey("security", "counter", "u1")
    store.set(key, 5, sensitive=False)

    envelope = json.loads(backend.get(store.format_key(key)))
    assert envelope["value"] == 5
    assert envelope["encoded"] is False
    assert store.get(key) == 5


def test_missing_key_returns_default(store):
    assert store.get(RecordKey("security", "nothing", "here"), default="fallback") == "fallback"


def test_expired_record_returns_default_and_is_removed(store, backend, clock):
    key = RecordKey("security", "token", "u1")
    store.set(key, "secret", expires_in=1.0)

    clock.advance(1.1)

    assert store.get(key, "default") == "default"
    assert backend.get(store.format_key(key)) is None


def test_record_is_live_until_its_expiry(store, clock):
    key = RecordKey("security", "token", "u1")
    store.set(key, "secret", expires_in=10)
    clock.advance(10)
    assert store.get(key) == "secret"


def test_unreadable_record_is_treated_as_absent_and_evicted(store, backend):
    key = RecordKey("security", "profile", "u1")
    raw_key = store.format_key(key)
    backend.set(raw_key, "{not json")

    assert store.get(key, "default") == "default"
    assert backend.get(raw_key) is None


def test_tampered_ciphertext_is_treated_as_absent(store, backend):
    key = RecordKey("security", "profile", "u1")
    store.set(key, {"role": "user"})
    raw_key = store.format_key(key)

    envelope = json.loads(backend.get(raw_key))
    iv, ciphertext, tag = envelope["value"].split(":")
    flipped = ("0" if ciphertext[0] != "0" else "1") + ciphertext[1:]
    envelope["value"] = f"{iv}:{flipped}:{tag}"
    backend.set(raw_key, json.dumps(envelope))

    assert store.get(key) is None
    assert backend.get(raw_key) is None


def test_keys_with_separators_round_trip(store):
    key = RecordKey("security", "lockout", "a/b@x.com", "value")
    assert store.parse_key(store.format_key(key)) == key


def test_list_keys_filters_by_entity_type(store):
    store.set(RecordKey("security", "lockout", "a"), 1, sensitive=False)
    store.set(RecordKey("security", "lockout", "b"), 2, sensitive=False)
    store.set(RecordKey("security", "session", "current"), {}, sensitive=False)

    lockouts = store.list_keys("security", "lockout")
    assert sorted(k.entity_id for k in lockouts) == ["a", "b"]
    assert len(store.list_keys("security")) == 3


def test_clear_namespace_leaves_other_namespaces(store):
    store.set(RecordKey("cache", "item", "1"), "x")
    store.set(RecordKey("cache", "item", "2"), "y")
    store.set(RecordKey("security", "item", "1"), "z")

    assert store.clear_namespace("cache") == 2
    assert store.list_keys("cache") == []
    assert store.get(RecordKey("security", "item", "1")) == "z"


def test_verify_integrity_evicts_corrupted_and_expired(store, backend, clock):
    store.set(RecordKey("security", "good", "1"), "a")
    store.set(RecordKey("security", "good", "2"), "b", sensitive=False)
    store.set(RecordKey("security", "short", "1"), "c", expires_in=10)
    corrupted_key = store.format_key(RecordKey("security", "bad", "1"))
    backend.set(corrupted_key, "garbage")
    clock.advance(11)

    report = store.verify_integrity()

    assert (report.total, report.corrupted, report.expired) == (4, 1, 1)
    assert backend.get(corrupted_key) is None
    assert len(store.list_keys("security")) == 2


def test_strict_integrity_check_raises_after_eviction(store, backend):
    corrupted_key = store.format_key(RecordKey("security", "bad", "1"))
    backend.set(corrupted_key, '{"value": "zz", "encoded": true, "created_at": 0}')

    with pytest.raises(StorageCorruptionError) as exc:
        store.verify_integrity(strict=True)

    assert exc.value.report.corrupted == 1
    assert backend.get(corrupted_key) is None


def test_operations_are_reported_to_listeners(store, events):
    seen = []
    events.subscribe(STORAGE_OPERATION, lambda **payload: seen.append(payload))

    store.set(RecordKey("security", "item", "1"), "x")
    store.get(RecordKey("security", "item", "1"))

    assert [(p["operation"], p["success"]) for p in seen] == [("set", True), ("get", True)]


def test_backend_write_failure_raises_and_is_reported(config, clock, events, store):
    seen = []
    events.subscribe(STORAGE_OPERATION, lambda **payload: seen.append(payload))
    broken = KeyedExpiringStore(BrokenWriteBackend(), store.codec, config, clock=clock, events=events)

    with pytest.raises(StorageUnavailableError):
        broken.set(RecordKey("security", "item", "1"), "x")

    failure = seen[-1]
    assert (failure["operation"], failure["success"]) == ("set", False)
    assert "disk full" in failure["error"]
