"""Document store contract and its two engines.

Every component reads whole collections (``load_collection``) and writes back
only the records it changed (``upsert`` / ``delete``). ``save_collection``
replaces a collection wholesale and is reserved for operator tooling and
tests.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any

from sqlalchemy import delete, select

from steward.schemas import RuntimeSettings
from steward.storage.database import Database
from steward.storage.models import Document

logger = logging.getLogger(__name__)

# Collection names
SCHEDULES = "schedules"
TASKS = "tasks"
QUEUE = "queue"
SESSIONS = "sessions"
AGENTS = "agents"
SETTINGS = "settings"
WEBHOOKS = "webhooks"
WEBHOOK_RETRY_QUEUE = "webhook_retry_queue"
WEBHOOK_LOGS = "webhook_logs"
CONNECTORS = "connectors"
MEMORIES = "memories"


class DocumentStore(ABC):
    """Named collections of JSON documents keyed by id."""

    @abstractmethod
    async def load_collection(self, name: str) -> dict[str, dict[str, Any]]:
        """Return every record of a collection, keyed by id."""

    @abstractmethod
    async def save_collection(self, name: str, records: dict[str, dict[str, Any]]) -> None:
        """Replace a collection with ``records``."""

    @abstractmethod
    async def get(self, name: str, record_id: str) -> dict[str, Any] | None:
        """Return one record or None."""

    @abstractmethod
    async def upsert(self, name: str, record_id: str, record: dict[str, Any]) -> None:
        """Insert or replace one record."""

    @abstractmethod
    async def delete(self, name: str, record_id: str) -> bool:
        """Remove one record. Returns True if it existed."""


class MemoryDocumentStore(DocumentStore):
    """Ephemeral store for tests and ``STEWARD_STORE_BACKEND=memory``.

    Records are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self, initial: dict[str, dict[str, dict[str, Any]]] | None = None) -> None:
        self._data: dict[str, dict[str, dict[str, Any]]] = copy.deepcopy(initial or {})

    async def load_collection(self, name: str) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._data.get(name, {}))

    async def save_collection(self, name: str, records: dict[str, dict[str, Any]]) -> None:
        self._data[name] = copy.deepcopy(records)

    async def get(self, name: str, record_id: str) -> dict[str, Any] | None:
        record = self._data.get(name, {}).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def upsert(self, name: str, record_id: str, record: dict[str, Any]) -> None:
        self._data.setdefault(name, {})[record_id] = copy.deepcopy(record)

    async def delete(self, name: str, record_id: str) -> bool:
        return self._data.get(name, {}).pop(record_id, None) is not None


class SqlDocumentStore(DocumentStore):
    """Store backed by the ``documents`` table through SQLAlchemy async."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def load_collection(self, name: str) -> dict[str, dict[str, Any]]:
        async with self._db.session() as session:
            result = await session.execute(select(Document).where(Document.collection == name))
            return {doc.id: dict(doc.data) for doc in result.scalars()}

    async def save_collection(self, name: str, records: dict[str, dict[str, Any]]) -> None:
        async with self._db.session() as session:
            await session.execute(delete(Document).where(Document.collection == name))
            session.add_all(
                Document(collection=name, id=record_id, data=record)
                for record_id, record in records.items()
            )
            await session.commit()
        logger.debug("Saved collection %s (%d records)", name, len(records))

    async def get(self, name: str, record_id: str) -> dict[str, Any] | None:
        async with self._db.session() as session:
            doc = await session.get(Document, (name, record_id))
            return dict(doc.data) if doc is not None else None

    async def upsert(self, name: str, record_id: str, record: dict[str, Any]) -> None:
        async with self._db.session() as session:
            doc = await session.get(Document, (name, record_id))
            if doc is None:
                session.add(Document(collection=name, id=record_id, data=record))
            else:
                doc.data = record
            await session.commit()

    async def delete(self, name: str, record_id: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                delete(Document).where(Document.collection == name, Document.id == record_id)
            )
            await session.commit()
            return (result.rowcount or 0) > 0


RUNTIME_SETTINGS_ID = "app"


async def load_runtime_settings(store: DocumentStore) -> RuntimeSettings:
    """Return the operator overrides record (empty when never saved)."""
    doc = await store.get(SETTINGS, RUNTIME_SETTINGS_ID)
    return RuntimeSettings.model_validate(doc or {})
