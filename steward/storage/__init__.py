"""Document store: named collections of JSON records keyed by id."""

from steward.storage.store import (
    AGENTS,
    CONNECTORS,
    MEMORIES,
    QUEUE,
    SCHEDULES,
    SESSIONS,
    SETTINGS,
    TASKS,
    WEBHOOK_LOGS,
    WEBHOOK_RETRY_QUEUE,
    WEBHOOKS,
    DocumentStore,
    MemoryDocumentStore,
    SqlDocumentStore,
    load_runtime_settings,
)

__all__ = [
    "DocumentStore",
    "MemoryDocumentStore",
    "SqlDocumentStore",
    "load_runtime_settings",
    # Collection names
    "AGENTS",
    "CONNECTORS",
    "MEMORIES",
    "QUEUE",
    "SCHEDULES",
    "SESSIONS",
    "SETTINGS",
    "TASKS",
    "WEBHOOK_LOGS",
    "WEBHOOK_RETRY_QUEUE",
    "WEBHOOKS",
]
