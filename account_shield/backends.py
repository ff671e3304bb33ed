"""
Persistent key-value substrate under the KeyedExpiringStore.

Backends only move opaque strings. Expiry, encoding and key layout
belong to the store.
"""

import threading
from typing import Optional, Protocol

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base, KeyValueEntry


class KeyValueBackend(Protocol):
    def get(self, raw_key: str) -> Optional[str]: ...

    def set(self, raw_key: str, value: str) -> None: ...

    def remove(self, raw_key: str) -> None: ...

    def list_keys(self, prefix: str) -> list[str]: ...


class MemoryBackend:
    """Process-local backend. Used in tests and as a cache-only fallback."""

    def __init__(self):
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, raw_key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(raw_key)

    def set(self, raw_key: str, value: str) -> None:
        with self._lock:
            self._data[raw_key] = value

    def remove(self, raw_key: str) -> None:
        with self._lock:
            self._data.pop(raw_key, None)

    def list_keys(self, prefix: str) -> list[str]:
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]


class SQLAlchemyBackend:
    """
    Stores raw records in a single `secure_kv` table.
    Same-key writes are last-write-wins (merge on primary key).
    """

    def __init__(self, database_url: str = None, engine=None):
        if engine is None:
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection so every thread sees the same in-memory database
                engine = create_engine(
                    database_url,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
            else:
                engine = create_engine(database_url)
        self.engine = engine
        Base.metadata.create_all(engine)
        self.SessionLocal = sessionmaker(bind=engine)

    def get(self, raw_key: str) -> Optional[str]:
        with self.SessionLocal() as db:
            entry = db.get(KeyValueEntry, raw_key)
            return entry.payload if entry else None

    def set(self, raw_key: str, value: str) -> None:
        with self.SessionLocal() as db:
            db.merge(KeyValueEntry(raw_key=raw_key, payload=value))
            db.commit()

    def remove(self, raw_key: str) -> None:
        with self.SessionLocal() as db:
            db.query(KeyValueEntry).filter(KeyValueEntry.raw_key == raw_key).delete()
            db.commit()

    def list_keys(self, prefix: str) -> list[str]:
        with self.SessionLocal() as db:
            rows = db.query(KeyValueEntry.raw_key).filter(
                KeyValueEntry.raw_key.startswith(prefix, autoescape=True)
            ).all()
            return [row[0] for row in rows]

    def close(self):
        self.engine.dispose()
