"""Connector lifecycle: start/stop chat-platform bridges and track which run.

Platform specifics live behind ``ConnectorDriver``. The manager only knows
which connectors are running in this process and mirrors that onto the
stored connector record.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from steward.schemas import ConnectorRecord
from steward.storage import CONNECTORS, DocumentStore
from steward.utils import now_ms

logger = logging.getLogger(__name__)


class ConnectorError(RuntimeError):
    pass


class ConnectorDriver(ABC):
    """Starts one platform's bridge and returns a handle used to stop it."""

    @abstractmethod
    async def start(self, connector: ConnectorRecord) -> Any: ...

    @abstractmethod
    async def stop(self, handle: Any) -> None: ...


class ConnectorManager:
    def __init__(
        self,
        store: DocumentStore,
        drivers: dict[str, ConnectorDriver] | None = None,
    ) -> None:
        self._store = store
        self._drivers: dict[str, ConnectorDriver] = dict(drivers or {})
        self._running: dict[str, Any] = {}

    def register_driver(self, platform: str, driver: ConnectorDriver) -> None:
        self._drivers[platform] = driver

    def status(self, connector_id: str) -> str:
        return "running" if connector_id in self._running else "stopped"

    @property
    def running_ids(self) -> list[str]:
        return list(self._running)

    async def _save(self, connector: ConnectorRecord) -> None:
        connector.updated_at = now_ms()
        await self._store.upsert(CONNECTORS, connector.id, connector.to_doc())

    async def start(self, connector_id: str) -> None:
        """Start a connector. Raises ConnectorError on any failure."""
        if connector_id in self._running:
            raise ConnectorError("Connector is already running")
        doc = await self._store.get(CONNECTORS, connector_id)
        if doc is None:
            raise ConnectorError("Connector not found")
        connector = ConnectorRecord.model_validate(doc)
        driver = self._drivers.get(connector.platform)
        if driver is None:
            raise ConnectorError(f"No driver for platform {connector.platform!r}")

        try:
            handle = await driver.start(connector)
        except Exception as exc:
            connector.status = "error"
            connector.last_error = str(exc)
            await self._save(connector)
            raise ConnectorError(str(exc)) from exc

        self._running[connector_id] = handle
        connector.status = "running"
        connector.last_error = None
        await self._save(connector)
        logger.info("Started %s connector %s", connector.platform, connector.name or connector.id)

    async def stop(self, connector_id: str) -> None:
        handle = self._running.pop(connector_id, None)
        doc = await self._store.get(CONNECTORS, connector_id)
        if handle is not None and doc is not None:
            driver = self._drivers.get(doc.get("platform", ""))
            if driver is not None:
                await driver.stop(handle)
        if doc is not None:
            connector = ConnectorRecord.model_validate(doc)
            connector.status = "stopped"
            await self._save(connector)
        logger.info("Stopped connector %s", connector_id)

    async def stop_all(self) -> None:
        for connector_id in list(self._running):
            try:
                await self.stop(connector_id)
            except Exception:
                logger.exception("Failed to stop connector %s", connector_id)

    async def auto_start(self) -> int:
        """Start every enabled connector. Returns how many started."""
        started = 0
        for connector_id, doc in (await self._store.load_collection(CONNECTORS)).items():
            if not doc.get("isEnabled") or connector_id in self._running:
                continue
            try:
                await self.start(connector_id)
                started += 1
            except ConnectorError as exc:
                logger.error("Failed to auto-start connector %s: %s", doc.get("name") or connector_id, exc)
        return started
