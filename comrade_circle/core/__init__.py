"""Core modules for the Comrade Circle sync client."""
from .config import Settings, settings
from .errors import (
    AuthError,
    BackendError,
    ComradeError,
    EmailInUse,
    InvalidCredentials,
    NetworkError,
    NotAuthenticated,
    ValidationError,
    WeakPassword,
    translate_backend_error,
)
from .notifications import BaseNotifier, LogNotifier, MemoryNotifier, NotificationLevel

__all__ = [
    "Settings",
    "settings",
    "AuthError",
    "BackendError",
    "ComradeError",
    "EmailInUse",
    "InvalidCredentials",
    "NetworkError",
    "NotAuthenticated",
    "ValidationError",
    "WeakPassword",
    "translate_backend_error",
    "BaseNotifier",
    "LogNotifier",
    "MemoryNotifier",
    "NotificationLevel",
]
