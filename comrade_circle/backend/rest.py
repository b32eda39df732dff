"""
HTTP backend for the hosted service.

Rows go through the PostgREST-style ``/rest/v1`` API, auth through
``/auth/v1`` and blobs through ``/storage/v1``. Realtime channels are
delegated to RealtimeClient.

Usage:
    backend = RestBackend(base_url=settings.backend_url, api_key=settings.backend_anon_key)
    await backend.restore_session()
    rows = await backend.fetch(Query("confessions").order("created_at", desc=True))
"""
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel

from ..core.config import settings
from ..core.errors import BackendError
from .base import (
    AuthEvent,
    AuthUser,
    Backend,
    ChangeCallback,
    Channel,
    EventType,
    Filter,
    Query,
)
from .realtime import RealtimeClient

logger = logging.getLogger(__name__)


class AuthSession(BaseModel):
    """Token set returned by the auth API."""

    access_token: str
    refresh_token: str
    expires_at: Optional[float] = None
    user: Dict[str, Any]

    @classmethod
    def from_api_response(cls, data: Dict[str, Any]) -> "AuthSession":
        expires_at = data.get("expires_at")
        if expires_at is None and data.get("expires_in"):
            expires_at = time.time() + float(data["expires_in"])
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", ""),
            expires_at=expires_at,
            user=data.get("user") or {},
        )

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and time.time() >= self.expires_at - 30


def query_params(query: Query, include_select: bool = True) -> List[tuple]:
    """Render a Query as PostgREST query-string parameters."""
    params: List[tuple] = []
    if include_select:
        params.append(("select", query.columns))

    for f in query.filters:
        params.append((f.column, f"{f.op.value}.{f.render_value()}"))

    for group in query.any_of:
        alternatives = []
        for alt in group:
            if len(alt) == 1:
                alternatives.append(alt[0].render_inline())
            else:
                alternatives.append("and(" + ",".join(f.render_inline() for f in alt) + ")")
        params.append(("or", "(" + ",".join(alternatives) + ")"))

    if query.ordering:
        params.append((
            "order",
            ",".join(f"{column}.{'desc' if desc else 'asc'}" for column, desc in query.ordering),
        ))

    if query.limit_count is not None:
        params.append(("limit", str(query.limit_count)))

    return params


def error_from_response(response: httpx.Response) -> BackendError:
    """Build a BackendError from an error response body."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    code = body.get("error_code") or body.get("code")
    if not isinstance(code, str):
        code = None
    # Older auth servers report bad passwords as an OAuth grant error
    if code is None and body.get("error") == "invalid_grant":
        code = "invalid_credentials"

    message = (
        body.get("message")
        or body.get("msg")
        or body.get("error_description")
        or body.get("error")
        or response.text
        or f"HTTP {response.status_code}"
    )
    return BackendError(str(message), code=code, status=response.status_code)


class RestBackend(Backend):
    """
    Client for the hosted backend's HTTP and realtime APIs.

    Uses the anon key until a user signs in, then the user's access
    token. The session is persisted to ``session_path`` so it survives
    restarts.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        session_path: Optional[Path] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        realtime: Optional[RealtimeClient] = None,
    ):
        """
        Initialize the backend client.

        Args:
            base_url: Service root URL.
            api_key: Public anon key.
            session_path: File to persist the auth session in (None disables).
            timeout: HTTP timeout in seconds.
            transport: Custom httpx transport (tests use httpx.MockTransport).
            realtime: Pre-built realtime client.
        """
        super().__init__()
        self.base_url = (base_url or settings.backend_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.backend_anon_key
        self.session_path = session_path
        self.timeout = timeout or settings.http_timeout

        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._session: Optional[AuthSession] = None
        self._realtime = realtime

    @classmethod
    def from_settings(cls) -> "RestBackend":
        """Build a backend from environment settings, persisting the session."""
        return cls(
            base_url=settings.backend_url,
            api_key=settings.backend_anon_key,
            session_path=settings.session_path,
            timeout=settings.http_timeout,
        )

    @property
    def session(self) -> Optional[AuthSession]:
        return self._session

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        token = self._session.access_token if self._session else self.api_key
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {token}",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[List[tuple]] = None,
        json_body: Any = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        client = await self._get_client()
        try:
            response = await client.request(
                method,
                path,
                params=params,
                json=json_body,
                content=content,
                headers=self._headers(headers),
            )
        except httpx.HTTPError as e:
            logger.warning(f"Backend request {method} {path} failed: {e}")
            raise BackendError(str(e) or type(e).__name__, code="network_error") from e

        if response.status_code >= 400:
            error = error_from_response(response)
            logger.debug(f"Backend {method} {path} -> {response.status_code}: {error.message}")
            raise error

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    # -- Rows ------------------------------------------------------------

    async def fetch(self, query: Query) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/rest/v1/{query.table}", params=query_params(query))
        return data or []

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request(
            "POST",
            f"/rest/v1/{table}",
            params=[("select", "*")],
            json_body=row,
            headers={"Prefer": "return=representation"},
        )
        if isinstance(data, list):
            return data[0] if data else {}
        return data or {}

    async def update(self, query: Query, values: Dict[str, Any]) -> List[Dict[str, Any]]:
        data = await self._request(
            "PATCH",
            f"/rest/v1/{query.table}",
            params=query_params(query),
            json_body=values,
            headers={"Prefer": "return=representation"},
        )
        return data or []

    async def delete(self, query: Query) -> List[Dict[str, Any]]:
        data = await self._request(
            "DELETE",
            f"/rest/v1/{query.table}",
            params=query_params(query),
            headers={"Prefer": "return=representation"},
        )
        return data or []

    # -- Realtime --------------------------------------------------------

    async def _get_realtime(self) -> RealtimeClient:
        if self._realtime is None:
            self._realtime = RealtimeClient(
                base_url=self.base_url,
                api_key=self.api_key,
                access_token=self._session.access_token if self._session else None,
            )
        await self._realtime.start()
        return self._realtime

    async def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        event: EventType = EventType.ANY,
        filter: Optional[Filter] = None,
    ) -> Channel:
        realtime = await self._get_realtime()
        channel = Channel(table, callback, event=event, filter=filter)
        await realtime.join(channel)
        return channel

    async def remove_channel(self, channel: Channel) -> None:
        if self._realtime is not None:
            await self._realtime.leave(channel)
        else:
            await channel.close()

    # -- Auth ------------------------------------------------------------

    def _store_session(self, session: Optional[AuthSession]) -> None:
        self._session = session
        if self._realtime is not None:
            self._realtime.set_access_token(session.access_token if session else None)

        if self.session_path is None:
            return
        if session is None:
            self.session_path.unlink(missing_ok=True)
            return
        self.session_path.parent.mkdir(parents=True, exist_ok=True)
        self.session_path.write_text(session.model_dump_json())

    def _load_stored_session(self) -> Optional[AuthSession]:
        if self.session_path is None or not self.session_path.exists():
            return None
        try:
            return AuthSession.model_validate(json.loads(self.session_path.read_text()))
        except (ValueError, OSError) as e:
            logger.warning(f"Discarding unreadable session file {self.session_path}: {e}")
            return None

    async def restore_session(self) -> Optional[AuthUser]:
        """
        Load the persisted session, refreshing it if expired.

        Emits INITIAL_SESSION with the restored user (or None).
        """
        session = self._load_stored_session()
        if session is not None and session.expired:
            try:
                data = await self._request(
                    "POST",
                    "/auth/v1/token",
                    params=[("grant_type", "refresh_token")],
                    json_body={"refresh_token": session.refresh_token},
                )
                session = AuthSession.from_api_response(data)
            except BackendError as e:
                logger.info(f"Stored session could not be refreshed: {e.message}")
                session = None

        self._store_session(session)
        user = AuthUser.from_api_response(session.user) if session and session.user else None
        await self._emit_auth(AuthEvent.INITIAL_SESSION, user)
        return user

    async def sign_in(self, email: str, password: str) -> AuthUser:
        data = await self._request(
            "POST",
            "/auth/v1/token",
            params=[("grant_type", "password")],
            json_body={"email": email, "password": password},
        )
        session = AuthSession.from_api_response(data)
        self._store_session(session)
        user = AuthUser.from_api_response(session.user)
        await self._emit_auth(AuthEvent.SIGNED_IN, user)
        return user

    async def sign_up(
        self,
        email: str,
        password: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuthUser:
        data = await self._request(
            "POST",
            "/auth/v1/signup",
            json_body={"email": email, "password": password, "data": metadata or {}},
        )

        # With email confirmation on, only the user object comes back.
        if isinstance(data, dict) and data.get("access_token"):
            session = AuthSession.from_api_response(data)
            self._store_session(session)
            user = AuthUser.from_api_response(session.user)
            await self._emit_auth(AuthEvent.SIGNED_IN, user)
            return user

        return AuthUser.from_api_response(data.get("user") or data)

    async def sign_out(self) -> None:
        try:
            if self._session is not None:
                await self._request("POST", "/auth/v1/logout")
        finally:
            self._store_session(None)
            await self._emit_auth(AuthEvent.SIGNED_OUT, None)

    async def get_user(self) -> Optional[AuthUser]:
        if self._session is None:
            return None
        data = await self._request("GET", "/auth/v1/user")
        return AuthUser.from_api_response(data) if data else None

    # -- Storage ---------------------------------------------------------

    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: Optional[str] = None,
        upsert: bool = False,
    ) -> str:
        await self._request(
            "POST",
            f"/storage/v1/object/{bucket}/{path}",
            content=data,
            headers={
                "Content-Type": content_type or "application/octet-stream",
                "cache-control": f"max-age={settings.media_cache_control}",
                "x-upsert": "true" if upsert else "false",
            },
        )
        return path

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{path}"

    async def remove(self, bucket: str, paths: Sequence[str]) -> None:
        await self._request(
            "DELETE",
            f"/storage/v1/object/{bucket}",
            json_body={"prefixes": list(paths)},
        )

    async def close(self) -> None:
        """Close the realtime connection and HTTP client."""
        if self._realtime is not None:
            await self._realtime.stop()
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


__all__ = [
    "AuthSession",
    "RestBackend",
    "query_params",
    "error_from_response",
]
