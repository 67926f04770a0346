"""Tests for the HTTP session executor against a mocked agent runtime."""

import json

import httpx
import pytest

from steward.runs.executor import HttpSessionExecutor
from steward.runs.manager import RunRequest


def _executor(settings, handler) -> HttpSessionExecutor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://runtime")
    return HttpSessionExecutor(settings, http_client=client)


class TestHttpSessionExecutor:

    async def test_posts_run_and_parses_reply(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200, json={"text": "All done", "toolEvents": [{"name": "shell", "error": False}]}
            )

        executor = _executor(settings, handler)
        outcome = await executor.run(
            RunRequest(session_id="s1", message="hi", source="heartbeat", internal=True, model_override="fast")
        )

        assert seen["path"] == "/sessions/s1/runs"
        assert seen["body"] == {"message": "hi", "internal": True, "source": "heartbeat", "model": "fast"}
        assert outcome.text == "All done"
        assert outcome.tool_events == [{"name": "shell", "error": False}]

    async def test_non_200_raises(self, settings):
        executor = _executor(settings, lambda r: httpx.Response(502, text="bad gateway"))
        with pytest.raises(RuntimeError, match="502"):
            await executor.run(RunRequest(session_id="s1", message="hi"))

    async def test_error_payload_raises(self, settings):
        executor = _executor(settings, lambda r: httpx.Response(200, json={"error": "session locked"}))
        with pytest.raises(RuntimeError, match="session locked"):
            await executor.run(RunRequest(session_id="s1", message="hi"))

    async def test_requires_start(self, settings):
        executor = HttpSessionExecutor(settings)
        with pytest.raises(RuntimeError, match="start"):
            await executor.run(RunRequest(session_id="s1", message="hi"))
