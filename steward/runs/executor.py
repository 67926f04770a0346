"""Session executors -- perform one session turn and return its reply.

The orchestration core never talks to an LLM. It hands a ``RunRequest`` to
an executor and gets back the reply text plus any tool events. The default
executor posts to an external agent runtime over HTTP.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from steward.config import Settings

if TYPE_CHECKING:
    from steward.runs.manager import RunRequest

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    """Reply of one session turn."""

    text: str
    tool_events: list[dict[str, Any]] = field(default_factory=list)


class SessionExecutor(ABC):
    """Performs a single turn of a session."""

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def run(self, request: RunRequest) -> RunOutcome:
        """Run the session with ``request.message``. Raises on failure."""


class HttpSessionExecutor(SessionExecutor):
    """Executor backed by the agent runtime's HTTP API.

    POST ``/sessions/{id}/runs`` with the message and run flags; the runtime
    answers ``{"text": ..., "toolEvents": [...]}`` once the turn finishes.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http_client
        self._owns_client = http_client is None

    async def start(self) -> None:
        """Create the httpx client with auth and timeouts."""
        if self._http is not None:
            return
        headers = {"content-type": "application/json"}
        if self._settings.runtime_api_key:
            headers["authorization"] = f"Bearer {self._settings.runtime_api_key}"
        timeout = httpx.Timeout(
            connect=self._settings.api_timeout_connect,
            read=float(self._settings.run_timeout),
            write=10.0,
            pool=10.0,
        )
        self._http = httpx.AsyncClient(
            base_url=self._settings.runtime_url,
            headers=headers,
            timeout=timeout,
        )
        logger.info("Agent runtime client initialized (%s)", self._settings.runtime_url)

    async def close(self) -> None:
        if self._http and self._owns_client:
            await self._http.aclose()
        self._http = None

    async def run(self, request: RunRequest) -> RunOutcome:
        if self._http is None:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload: dict[str, Any] = {
            "message": request.message,
            "internal": request.internal,
            "source": request.source,
        }
        if request.model_override:
            payload["model"] = request.model_override

        try:
            response = await self._http.post(f"/sessions/{request.session_id}/runs", json=payload)
        except httpx.TimeoutException as e:
            raise asyncio.TimeoutError(f"Agent runtime timed out: {e}") from e
        except httpx.HTTPError as e:
            raise RuntimeError(f"HTTP error: {e}") from e

        if response.status_code != 200:
            raise RuntimeError(
                f"Agent runtime error ({response.status_code}): {response.text[:500]}"
            )

        data = response.json()
        if data.get("error"):
            raise RuntimeError(str(data["error"])[:500])
        return RunOutcome(
            text=str(data.get("text") or ""),
            tool_events=list(data.get("toolEvents") or []),
        )
