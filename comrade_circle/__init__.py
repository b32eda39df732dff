"""
Comrade Circle client core.

Session, realtime conversation and feed sync, optimistic toggles and
cached domain collections on top of a hosted Postgres-style backend.
"""

__version__ = "0.3.0"

from .backend import Backend, MemoryBackend, RestBackend
from .core import BaseNotifier, ComradeError, LogNotifier, MemoryNotifier, settings
from .session import SessionStore
from .sync import ConversationSync, FeedSync, OptimisticToggle

__all__ = [
    "__version__",
    "Backend",
    "MemoryBackend",
    "RestBackend",
    "BaseNotifier",
    "ComradeError",
    "LogNotifier",
    "MemoryNotifier",
    "settings",
    "SessionStore",
    "ConversationSync",
    "FeedSync",
    "OptimisticToggle",
]
