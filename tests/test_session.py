"""Tests for the session store."""

import pytest

from comrade_circle.backend import MemoryBackend
from comrade_circle.core.errors import (
    EmailInUse,
    EmailNotConfirmed,
    InvalidCredentials,
    NotAuthenticated,
    ValidationError,
    WeakPassword,
)
from comrade_circle.core.notifications import NotificationLevel
from comrade_circle.session import SessionStore


class TestSignup:
    """Tests for SessionStore.signup."""

    @pytest.mark.asyncio
    async def test_signup_creates_profile(self, session, backend):
        """Signup should sign the user in and create their profile row."""
        identity = await session.signup("ada@uni.edu", "secret123", "Ada")

        assert identity is not None
        assert identity.nickname == "Ada"
        assert session.current_identity() == identity
        assert session.is_authenticated

        profiles = backend.tables["profiles"]
        assert profiles == [
            {"id": identity.id, "nickname": "Ada", "tags": [], "bio": None, "created_at": profiles[0]["created_at"]}
        ]

    @pytest.mark.asyncio
    async def test_signup_pending_confirmation(self, notifier):
        """With confirmation required, signup returns None and tells the user to check email."""
        backend = MemoryBackend(require_confirmation=True)
        session = SessionStore(backend, notifier)
        await session.start()

        result = await session.signup("ada@uni.edu", "secret123", "Ada")

        assert result is None
        assert session.current_identity() is None
        assert backend.tables["profiles"] == []
        assert notifier.messages(NotificationLevel.INFO) == ["Check your email to confirm your account"]

    @pytest.mark.asyncio
    async def test_signup_email_in_use(self, session, notifier):
        await session.signup("ada@uni.edu", "secret123", "Ada")
        await session.logout()
        notifier.clear()

        with pytest.raises(EmailInUse):
            await session.signup("ada@uni.edu", "another123", "Ada2")
        assert notifier.messages(NotificationLevel.ERROR) == ["An account with this email already exists"]

    @pytest.mark.asyncio
    async def test_signup_weak_password(self, session):
        with pytest.raises(WeakPassword):
            await session.signup("ada@uni.edu", "123", "Ada")
        assert session.current_identity() is None

    @pytest.mark.asyncio
    async def test_profile_insert_failure_keeps_session(self, session, backend):
        """A failed profile insert should be logged, not fail the signup."""
        backend.fail_next("insert", table="profiles")

        identity = await session.signup("ada@uni.edu", "secret123", "Ada")

        assert identity is not None
        assert identity.nickname == "Ada"
        assert backend.tables["profiles"] == []


class TestLogin:
    """Tests for SessionStore.login."""

    @pytest.mark.asyncio
    async def test_login_success(self, session, backend):
        await backend.sign_up("ada@uni.edu", "secret123", {"nickname": "Ada"})
        await backend.sign_out()

        identity = await session.login("ada@uni.edu", "secret123")

        assert identity.email == "ada@uni.edu"
        assert identity.display_name == "Ada"
        assert session.loading is False

    @pytest.mark.asyncio
    async def test_login_wrong_password(self, session, backend, notifier):
        """A rejected password should raise and notify exactly once."""
        await backend.sign_up("ada@uni.edu", "secret123")
        await backend.sign_out()

        with pytest.raises(InvalidCredentials):
            await session.login("ada@uni.edu", "nope")

        assert notifier.messages(NotificationLevel.ERROR) == ["Incorrect password"]
        assert session.current_identity() is None

    @pytest.mark.asyncio
    async def test_login_email_not_confirmed(self, notifier):
        backend = MemoryBackend(require_confirmation=True)
        session = SessionStore(backend, notifier)
        await backend.sign_up("ada@uni.edu", "secret123")

        with pytest.raises(EmailNotConfirmed):
            await session.login("ada@uni.edu", "secret123")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("email,password", [("", "secret123"), ("ada@uni.edu", ""), ("   ", "x")])
    async def test_login_validation(self, session, backend, email, password):
        """Empty credentials should fail before any network call."""
        with pytest.raises(ValidationError):
            await session.login(email, password)
        assert backend.count_calls("sign_in") == 0


class TestIdentityStream:
    """Tests for identity tracking."""

    @pytest.mark.asyncio
    async def test_start_picks_up_existing_session(self, backend):
        await backend.sign_up("ada@uni.edu", "secret123", {"nickname": "Ada"})

        async with SessionStore(backend) as session:
            assert session.current_identity().email == "ada@uni.edu"
            assert session.loading is False

    @pytest.mark.asyncio
    async def test_listeners_follow_changes(self, session):
        seen = []
        session.subscribe(lambda identity: seen.append(identity.email if identity else None))

        await session.signup("ada@uni.edu", "secret123", "Ada")
        await session.logout()

        assert seen[0] == "ada@uni.edu"
        assert seen[-1] is None

    @pytest.mark.asyncio
    async def test_close_stops_tracking(self, session, backend):
        session.close()
        await backend.sign_up("ada@uni.edu", "secret123")

        assert session.current_identity() is None

    @pytest.mark.asyncio
    async def test_profile_lookup_failure_falls_back(self, session, backend):
        """Identity should still be set from auth info when the profile read fails."""
        await backend.sign_up("ada@uni.edu", "secret123", {"nickname": "Ada"})
        await backend.sign_out()
        backend.fail_next("fetch", table="profiles")

        identity = await session.login("ada@uni.edu", "secret123")

        assert identity.nickname == "Ada"
        assert identity.tags == []

    @pytest.mark.asyncio
    async def test_hydrates_profile_fields(self, session, backend):
        user = await backend.sign_up("ada@uni.edu", "secret123")
        await backend.sign_out()
        backend.seed("profiles", {"id": user.id, "nickname": "Countess", "tags": ["math"], "bio": "Engines"})

        identity = await session.login("ada@uni.edu", "secret123")

        assert identity.nickname == "Countess"
        assert identity.tags == ["math"]
        assert identity.bio == "Engines"


class TestLogout:
    """Tests for SessionStore.logout."""

    @pytest.mark.asyncio
    async def test_logout_clears_identity(self, session, identity):
        await session.logout()
        assert session.current_identity() is None
        with pytest.raises(NotAuthenticated):
            session.require_identity()

    @pytest.mark.asyncio
    async def test_require_identity_notifies_once(self, session, notifier):
        with pytest.raises(NotAuthenticated) as exc_info:
            session.require_identity(notifier, "Sign in first")

        assert exc_info.value.message == "Sign in first"
        assert notifier.messages(NotificationLevel.ERROR) == ["Sign in first"]

    @pytest.mark.asyncio
    async def test_logout_remote_failure(self, session, identity, backend):
        """Local identity should be cleared even when the remote call fails."""
        backend.fail_next("sign_out")

        await session.logout()

        assert session.current_identity() is None
        assert not session.is_authenticated
