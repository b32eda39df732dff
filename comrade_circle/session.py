"""Session store: the current authenticated identity.

The store subscribes to the backend's auth state stream when it is
constructed and keeps ``current_identity()`` in sync until ``close()``.
It is built once per application and handed to every component that
needs to scope data or gate mutations.
"""
from typing import Callable, List, Optional

import structlog

from .backend.base import AuthEvent, AuthUser, Backend, Query
from .core.errors import (
    AuthError,
    ComradeError,
    NotAuthenticated,
    ValidationError,
    translate_backend_error,
)
from .core.notifications import BaseNotifier, LogNotifier
from .models import Identity

logger = structlog.get_logger(__name__)

IdentityListener = Callable[[Optional[Identity]], None]


class SessionStore:
    """
    Holds the signed-in identity and exposes login/signup/logout.

    Usage:
        async with SessionStore(backend, notifier) as session:
            await session.login("ada@uni.edu", "secret1")
            session.current_identity()
    """

    def __init__(self, backend: Backend, notifier: Optional[BaseNotifier] = None):
        self.backend = backend
        self.notifier = notifier or LogNotifier()

        self._identity: Optional[Identity] = None
        self._loading = True
        self._listeners: List[IdentityListener] = []
        self._unsubscribe: Optional[Callable[[], None]] = backend.on_auth_state_change(
            self._on_auth_change
        )

    async def __aenter__(self) -> "SessionStore":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- Reactive identity -----------------------------------------------

    def current_identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def is_authenticated(self) -> bool:
        return self._identity is not None

    @property
    def loading(self) -> bool:
        return self._loading

    def require_identity(
        self,
        notifier: Optional[BaseNotifier] = None,
        message: Optional[str] = None,
    ) -> Identity:
        """
        Return the identity or raise NotAuthenticated.

        With a notifier, the failure is also reported to the user once
        before raising.
        """
        if self._identity is None:
            error = NotAuthenticated(message)
            if notifier is not None:
                notifier.error(error.message)
            raise error
        return self._identity

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        """Call listener on every identity change. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_identity(self, identity: Optional[Identity]) -> None:
        self._identity = identity
        for listener in list(self._listeners):
            try:
                listener(identity)
            except Exception as e:
                logger.error("identity_listener_failed", error=str(e))

    async def _hydrate(self, user: AuthUser) -> Identity:
        """Merge the auth account with its profile row."""
        nickname = user.metadata.get("nickname")
        try:
            profile = await self.backend.fetch_one(Query("profiles").eq("id", user.id))
        except Exception as e:
            logger.warning("profile_lookup_failed", user_id=user.id, error=str(e))
            return Identity(id=user.id, email=user.email, nickname=nickname, created_at=user.created_at)

        profile = profile or {}
        return Identity(
            id=user.id,
            email=user.email,
            nickname=profile.get("nickname") or nickname,
            tags=list(profile.get("tags") or []),
            bio=profile.get("bio"),
            created_at=profile.get("created_at") or user.created_at,
        )

    async def _on_auth_change(self, event: AuthEvent, user: Optional[AuthUser]) -> None:
        self._loading = True
        try:
            if user is not None:
                logger.info("auth_state_changed", auth_event=event.value, user_id=user.id)
                self._set_identity(await self._hydrate(user))
            else:
                logger.info("auth_state_changed", auth_event=event.value, user_id=None)
                self._set_identity(None)
        finally:
            self._loading = False

    # -- Lifecycle -------------------------------------------------------

    async def start(self) -> Optional[Identity]:
        """Pick up an already-active backend session."""
        try:
            user = await self.backend.get_user()
        except Exception as e:
            logger.warning("initial_session_lookup_failed", error=str(e))
            user = None
        await self._on_auth_change(AuthEvent.INITIAL_SESSION, user)
        return self._identity

    def close(self) -> None:
        """Tear down the auth state subscription."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._listeners.clear()
        logger.debug("session_store_closed")

    # -- Operations ------------------------------------------------------

    @staticmethod
    def _validate_credentials(email: str, password: str) -> str:
        email = (email or "").strip()
        if not email:
            raise ValidationError("Email is required")
        if not password:
            raise ValidationError("Password is required")
        return email

    def _fail(self, exc: Exception, action: str) -> ComradeError:
        error = translate_backend_error(exc)
        if not isinstance(error, AuthError):
            logger.error(f"{action}_failed", error=repr(exc))
        else:
            logger.info(f"{action}_rejected", reason=type(error).__name__)
        self.notifier.error(error.message)
        return error

    async def login(self, email: str, password: str) -> Identity:
        """
        Sign in with email and password.

        Raises:
            ValidationError: Empty email or password.
            InvalidCredentials: The service rejected the credentials.
        """
        email = self._validate_credentials(email, password)
        self._loading = True
        try:
            user = await self.backend.sign_in(email, password)
        except Exception as e:
            raise self._fail(e, "login") from e
        finally:
            self._loading = False

        if self._identity is None or self._identity.id != user.id:
            await self._on_auth_change(AuthEvent.SIGNED_IN, user)
        logger.info("user_logged_in", user_id=user.id)
        return self._identity

    async def signup(self, email: str, password: str, display_name: Optional[str] = None) -> Optional[Identity]:
        """
        Create an account and its profile row.

        Returns the new identity, or None when the service requires email
        confirmation before the first sign-in.

        Raises:
            ValidationError: Empty email or password.
            EmailInUse: An account already exists for the email.
            WeakPassword: The password is too short.
        """
        email = self._validate_credentials(email, password)
        display_name = (display_name or "").strip() or None
        self._loading = True
        try:
            user = await self.backend.sign_up(email, password, {"nickname": display_name})
        except Exception as e:
            raise self._fail(e, "signup") from e
        finally:
            self._loading = False

        if self._identity is None or self._identity.id != user.id:
            # No session yet: the account awaits email confirmation.
            logger.info("signup_pending_confirmation", user_id=user.id)
            self.notifier.info("Check your email to confirm your account")
            return None

        try:
            await self.backend.insert("profiles", {"id": user.id, "nickname": display_name, "tags": []})
        except Exception as e:
            logger.warning("profile_create_failed", user_id=user.id, error=repr(e))
        else:
            self._set_identity(await self._hydrate(user))

        logger.info("user_signed_up", user_id=user.id)
        return self._identity

    async def logout(self) -> None:
        """Sign out. Always clears the local identity, even if the remote call fails."""
        try:
            await self.backend.sign_out()
        except Exception as e:
            logger.warning("remote_logout_failed", error=repr(e))
        finally:
            if self._identity is not None:
                self._set_identity(None)
            self._loading = False


__all__ = ["SessionStore", "IdentityListener"]
