"""
Error taxonomy for the sync client.

Adapters raise BackendError with the service's raw code; components
translate it at the mutation boundary into the user-facing classes below.
"""

from typing import Optional


class ComradeError(Exception):
    """Base class for all client errors."""

    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ComradeError):
    """Input rejected before any network call."""

    default_message = "Invalid input"


class NotAuthenticated(ComradeError):
    """A mutation was attempted without a session."""

    default_message = "You must be signed in to do that"


class AuthError(ComradeError):
    """Authentication failure with a user-facing message."""


class InvalidEmail(AuthError):
    default_message = "Invalid email address"


class InvalidCredentials(AuthError):
    default_message = "Incorrect password"


class EmailInUse(AuthError):
    default_message = "An account with this email already exists"


class WeakPassword(AuthError):
    default_message = "Password should be at least 6 characters"


class EmailNotConfirmed(AuthError):
    default_message = "Please confirm your email before signing in"


class AccountDisabled(AuthError):
    default_message = "This account has been disabled"


class NetworkError(ComradeError):
    """Any backend rejection that is not a known auth failure."""

    default_message = "Network error. Please check your connection"

    def __init__(
        self,
        message: Optional[str] = None,
        status: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status = status
        self.code = code


class BackendError(Exception):
    """Raw error raised by a backend adapter."""

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status

    def __repr__(self) -> str:
        return f"BackendError(code={self.code!r}, status={self.status!r}, message={self.message!r})"


# Service auth codes -> (error class, message override)
AUTH_ERROR_CODES = {
    "invalid_email": (InvalidEmail, None),
    "email_address_invalid": (InvalidEmail, None),
    "user_not_found": (InvalidCredentials, "No account found with this email"),
    "invalid_credentials": (InvalidCredentials, None),
    "wrong_password": (InvalidCredentials, None),
    "email_exists": (EmailInUse, None),
    "user_already_exists": (EmailInUse, None),
    "weak_password": (WeakPassword, None),
    "email_not_confirmed": (EmailNotConfirmed, None),
    "user_banned": (AccountDisabled, None),
}


def translate_backend_error(exc: Exception) -> ComradeError:
    """Map an adapter error onto the client taxonomy."""
    if isinstance(exc, ComradeError):
        return exc

    if isinstance(exc, BackendError):
        if exc.code in AUTH_ERROR_CODES:
            cls, message = AUTH_ERROR_CODES[exc.code]
            return cls(message)
        if exc.code and exc.code.startswith("auth_"):
            return AuthError()
        return NetworkError(exc.message, status=exc.status, code=exc.code)

    return NetworkError(str(exc) or None)


__all__ = [
    "ComradeError",
    "ValidationError",
    "NotAuthenticated",
    "AuthError",
    "InvalidEmail",
    "InvalidCredentials",
    "EmailInUse",
    "WeakPassword",
    "EmailNotConfirmed",
    "AccountDisabled",
    "NetworkError",
    "BackendError",
    "AUTH_ERROR_CODES",
    "translate_backend_error",
]
