"""Health alerts: log, diagnostic event and optional Telegram message.

Alerts are best effort. A failed Telegram post is logged and dropped.
"""

from __future__ import annotations

import logging

import httpx

from steward.config import Settings
from steward.events import EventBus
from steward.handlers import emit_diagnostic

logger = logging.getLogger(__name__)


class HealthAlerter:
    def __init__(
        self,
        settings: Settings,
        bus: EventBus | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._bus = bus
        self._http = http_client

    async def send(self, text: str) -> None:
        logger.warning("Health alert: %s", text)
        await emit_diagnostic(self._bus, "health_alert", text)
        await self._notify_telegram(text)

    async def _notify_telegram(self, text: str) -> None:
        token = self._settings.telegram_bot_token
        chat_id = self._settings.telegram_chat_id
        if not token or not chat_id:
            return

        url = f"https://api.telegram.org/bot{token}/sendMessage"
        try:
            client = self._http or httpx.AsyncClient()
            try:
                resp = await client.post(
                    url,
                    json={"chat_id": chat_id, "text": f"Steward health alert: {text}"},
                    timeout=10,
                )
                resp.raise_for_status()
            finally:
                if self._http is None:
                    await client.aclose()
        except Exception as e:
            logger.warning("Telegram health alert failed: %s", e)
