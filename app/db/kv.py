from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from .models import Base, KeyValueEntry

_LOGGER = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[bytes]:
        ...

    def set(self, key: str, value: bytes) -> None:
        ...


class InMemoryKeyValueStore:
    """Process-local key/value store; contents vanish with the process."""

    def __init__(self, initial: Optional[Dict[str, bytes]] = None) -> None:
        self._data: Dict[str, bytes] = dict(initial or {})

    def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)


class SqlKeyValueStore:
    """Key/value store backed by the ``kv_entries`` table.

    Write failures propagate as ``SQLAlchemyError`` so the caller can decide
    how durable it needs to be.
    """

    def __init__(self, engine: Engine, create_schema: bool = True) -> None:
        self._engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        if create_schema:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlKeyValueStore":
        return cls(create_engine(database_url))

    def get(self, key: str) -> Optional[bytes]:
        with self._sessions() as session:
            entry = session.get(KeyValueEntry, key)
            return entry.value if entry is not None else None

    def set(self, key: str, value: bytes) -> None:
        with self._sessions.begin() as session:
            self._upsert(session, key, value)
        _LOGGER.debug("Stored %d bytes under %s", len(value), key)

    @staticmethod
    def _upsert(session: Session, key: str, value: bytes) -> None:
        entry = session.get(KeyValueEntry, key)
        if entry is None:
            session.add(KeyValueEntry(key=key, value=value))
        else:
            entry.value = value
