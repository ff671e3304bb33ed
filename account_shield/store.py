"""
Keyed Expiring Store

Namespaced get/set/remove of JSON-serialisable values. Each record is
independently encodable (AES-GCM via RecordCodec) and independently
expirable. Reads fail closed: unreadable or expired records are evicted
and reported as absent.
"""

import json
import logging
import time
from typing import Any, Callable, Optional
from urllib.parse import quote, unquote

from .config import SecurityConfig, seconds
from .crypto import RecordCodec
from .errors import StorageCorruptionError, StorageUnavailableError
from .events import STORAGE_OPERATION, EventBus
from .models import IntegrityReport, Record, RecordKey
from .utils import Sanitizer

logger = logging.getLogger(__name__)

_SEPARATOR = "/"


class KeyedExpiringStore:

    def __init__(
        self,
        backend,
        codec: RecordCodec,
        config: SecurityConfig,
        clock: Callable[[], float] = time.time,
        events: Optional[EventBus] = None,
    ):
        self.backend = backend
        self.codec = codec
        self.clock = clock
        self.events = events
        self.prefix = config.STORAGE_PREFIX
        self.security_namespace = config.SECURITY_NAMESPACE

    # ==================== KEYS ====================

    def format_key(self, key: RecordKey) -> str:
        parts = (self.prefix, key.namespace, key.entity_type, key.entity_id, key.field)
        return _SEPARATOR.join(quote(str(p), safe="") for p in parts)

    def parse_key(self, raw_key: str) -> Optional[RecordKey]:
        parts = raw_key.split(_SEPARATOR)
        if len(parts) != 5 or unquote(parts[0]) != self.prefix:
            return None
        namespace, entity_type, entity_id, field = (unquote(p) for p in parts[1:])
        return RecordKey(namespace, entity_type, entity_id, field)

    def _prefix_for(self, namespace: str, entity_type: Optional[str] = None) -> str:
        parts = [self.prefix, namespace]
        if entity_type is not None:
            parts.append(entity_type)
        return _SEPARATOR.join(quote(p, safe="") for p in parts) + _SEPARATOR

    # ==================== OPERATIONS ====================

    def set(
        self,
        key: RecordKey,
        value: Any,
        expires_in=None,
        sensitive: bool = True,
        expires_at: Optional[float] = None,
    ) -> Record:
        """
        Store a value. `expires_in` (timedelta or seconds) is relative to now;
        `expires_at` pins an absolute expiry and wins when both are given.
        """
        now = self.clock()
        if expires_at is None and expires_in is not None:
            expires_at = now + seconds(expires_in)
        record = Record(key=key, value=value, encoded=sensitive, created_at=now, expires_at=expires_at)

        raw_key = self.format_key(key)
        try:
            payload = json.dumps({
                "value": self.codec.encode(value) if sensitive else value,
                "encoded": sensitive,
                "created_at": now,
                "expires_at": expires_at,
            })
            self.backend.set(raw_key, payload)
        except Exception as e:
            logger.error(f"Failed to store secure item {Sanitizer.sanitize_key(raw_key)}: {e}")
            self._report("set", raw_key, False, e)
            raise StorageUnavailableError("Secure storage failed") from e

        self._report("set", raw_key, True)
        logger.debug(f"Secure item stored: {Sanitizer.sanitize_key(raw_key)} encoded={sensitive}")
        return record

    def get(self, key: RecordKey, default: Any = None) -> Any:
        record = self.get_record(key)
        if record is None:
            return default
        return record.value

    def get_record(self, key: RecordKey) -> Optional[Record]:
        """Return the live record for `key` or None. Never raises."""
        raw_key = self.format_key(key)
        try:
            raw = self.backend.get(raw_key)
        except Exception as e:
            logger.error(f"Failed to retrieve secure item {Sanitizer.sanitize_key(raw_key)}: {e}")
            self._report("get", raw_key, False, e)
            return None

        if raw is None:
            self._report("get", raw_key, True)
            return None

        try:
            record = self._decode(key, raw)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Unreadable secure item {Sanitizer.sanitize_key(raw_key)}, evicting")
            self._report("get", raw_key, False, e)
            self._evict(raw_key)
            return None

        if record.is_expired(self.clock()):
            logger.debug(f"Secure item expired, removing: {Sanitizer.sanitize_key(raw_key)}")
            self._evict(raw_key)
            self._report("get", raw_key, True)
            return None

        self._report("get", raw_key, True)
        return record

    def remove(self, key: RecordKey) -> None:
        raw_key = self.format_key(key)
        try:
            self.backend.remove(raw_key)
        except Exception as e:
            logger.error(f"Failed to remove secure item {Sanitizer.sanitize_key(raw_key)}: {e}")
            self._report("remove", raw_key, False, e)
            raise StorageUnavailableError("Secure storage removal failed") from e
        self._report("remove", raw_key, True)

    def list_keys(self, namespace: str, entity_type: Optional[str] = None) -> list[RecordKey]:
        """All keys of a namespace, optionally narrowed to one entity type."""
        raw_keys = self.backend.list_keys(self._prefix_for(namespace, entity_type))
        keys = []
        for raw_key in raw_keys:
            parsed = self.parse_key(raw_key)
            if parsed is not None:
                keys.append(parsed)
        return keys

    def clear_namespace(self, namespace: str) -> int:
        keys = self.backend.list_keys(self._prefix_for(namespace))
        for raw_key in keys:
            self._evict(raw_key)
        logger.info(f"Cleared {len(keys)} secure items from namespace '{namespace}'")
        return len(keys)

    def verify_integrity(self, namespace: Optional[str] = None, strict: bool = False) -> IntegrityReport:
        """
        Scan every record of the namespace (default: security namespace),
        evicting records that fail to parse or decode and records that
        have expired.

        Raises StorageCorruptionError after eviction when `strict` is set
        and anything was corrupted.
        """
        namespace = namespace or self.security_namespace
        report = IntegrityReport()
        now = self.clock()

        for raw_key in self.backend.list_keys(self._prefix_for(namespace)):
            report.total += 1
            key = self.parse_key(raw_key)
            try:
                raw = self.backend.get(raw_key)
                if raw is None:
                    # removed concurrently
                    report.total -= 1
                    continue
                if key is None:
                    raise ValueError("unparseable key")
                record = self._decode(key, raw)
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning(f"Corrupted secure storage item detected: {Sanitizer.sanitize_key(raw_key)}")
                self._report("verify", raw_key, False, e)
                self._evict(raw_key)
                report.corrupted += 1
                continue

            if record.is_expired(now):
                self._evict(raw_key)
                report.expired += 1

        logger.info(
            f"Storage integrity check complete: total={report.total} "
            f"corrupted={report.corrupted} expired={report.expired}"
        )
        if strict and report.corrupted:
            raise StorageCorruptionError(report)
        return report

    # ==================== INTERNALS ====================

    def _decode(self, key: RecordKey, raw: str) -> Record:
        envelope = json.loads(raw)
        encoded = bool(envelope["encoded"])
        value = envelope["value"]
        if encoded:
            value = self.codec.decode(value)
        expires_at = envelope.get("expires_at")
        return Record(
            key=key,
            value=value,
            encoded=encoded,
            created_at=float(envelope["created_at"]),
            expires_at=float(expires_at) if expires_at is not None else None,
        )

    def _evict(self, raw_key: str) -> None:
        # Eviction of an already-missing record is not an error
        try:
            self.backend.remove(raw_key)
        except Exception as e:
            logger.error(f"Failed to evict secure item {Sanitizer.sanitize_key(raw_key)}: {e}")
            self._report("remove", raw_key, False, e)

    def _report(self, operation: str, raw_key: str, success: bool, error: Optional[Exception] = None) -> None:
        if self.events is None:
            return
        self.events.emit(
            STORAGE_OPERATION,
            operation=operation,
            key=raw_key,
            success=success,
            error=str(error) if error is not None else None,
        )
