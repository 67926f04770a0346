"""Periodic daemon handlers for Steward.

Each handler owns one concern (scheduling, queue processing, heartbeats,
health checks, webhook retries) and exposes a tick method the daemon calls
from its own timer. Handlers report what they did through diagnostic events.
"""

from typing import Any

from steward.events import Event, EventBus


async def emit_diagnostic(
    bus: EventBus | None,
    event_type: str,
    text: str,
    *,
    user: str | None = None,
    **data: Any,
) -> None:
    """Emit a diagnostic event if a bus is wired.

    Shared by every handler that reports to main sessions.
    """
    if bus is None:
        return
    await bus.emit(Event(type=event_type, text=text, user=user, data=data))
