"""Pytest fixtures for Comrade Circle tests."""
import pytest

from comrade_circle.backend import MemoryBackend
from comrade_circle.core.notifications import MemoryNotifier
from comrade_circle.models import Identity
from comrade_circle.session import SessionStore


# --- Backend Fixtures ---

@pytest.fixture
def backend() -> MemoryBackend:
    """Fresh in-memory backend."""
    return MemoryBackend()


@pytest.fixture
def notifier() -> MemoryNotifier:
    """Notifier that records everything it is given."""
    return MemoryNotifier()


# --- Session Fixtures ---

@pytest.fixture
async def session(backend: MemoryBackend, notifier: MemoryNotifier):
    """Started session store with nobody signed in."""
    store = SessionStore(backend, notifier)
    await store.start()
    yield store
    store.close()


@pytest.fixture
async def identity(session: SessionStore, notifier: MemoryNotifier) -> Identity:
    """Sign up and sign in Ada; notifications from signup are cleared."""
    result = await session.signup("ada@uni.edu", "secret123", "Ada")
    notifier.clear()
    return result


@pytest.fixture
def other_user(backend: MemoryBackend) -> dict:
    """A second user known only through their profile row."""
    return backend.seed("profiles", {"id": "user-bob", "nickname": "Bob", "tags": ["chess"]})[0]


@pytest.fixture
def seed_posts(backend: MemoryBackend, other_user: dict):
    """Factory fixture to seed feed posts authored by Bob."""
    def _seed(*contents: str) -> list:
        return backend.seed("posts", *[
            {"user_id": other_user["id"], "content": c, "created_at": f"2026-01-0{i + 1}T00:00:00.000000+00:00"}
            for i, c in enumerate(contents)
        ])
    return _seed
