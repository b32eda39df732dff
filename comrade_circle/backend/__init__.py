"""
Backend adapters for the hosted service.

Components:
- base: Backend contract, composable queries, channels, change events
- memory: In-process backend for tests and local development
- rest: HTTP backend (rows, auth, storage)
- realtime: Websocket channel client used by the HTTP backend
"""

from .base import (
    AuthEvent,
    AuthUser,
    Backend,
    ChangeEvent,
    Channel,
    EventType,
    Filter,
    FilterOp,
    Query,
    parse_timestamp,
    utc_now_iso,
)
from .memory import MemoryBackend
from .rest import AuthSession, RestBackend
from .realtime import BackoffStrategy, PhoenixMessage, RealtimeClient

__all__ = [
    # Contract
    "AuthEvent",
    "AuthUser",
    "Backend",
    "ChangeEvent",
    "Channel",
    "EventType",
    "Filter",
    "FilterOp",
    "Query",
    "parse_timestamp",
    "utc_now_iso",
    # Adapters
    "MemoryBackend",
    "AuthSession",
    "RestBackend",
    # Realtime
    "BackoffStrategy",
    "PhoenixMessage",
    "RealtimeClient",
]
