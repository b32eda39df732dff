"""
Realtime channel client for the hosted backend.

Speaks the service's Phoenix-channel websocket protocol:
- Message envelope (topic/event/payload/ref)
- Heartbeat/keepalive
- Reconnection with exponential backoff
- Re-joining open channels after a reconnect
"""

import asyncio
import json
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp

from ..core.config import settings
from .base import ChangeEvent, Channel, EventType

logger = logging.getLogger(__name__)

PHOENIX_TOPIC = "phoenix"
PROTOCOL_VERSION = "1.0.0"


@dataclass
class PhoenixMessage:
    """
    Standard envelope for all protocol messages.

    Attributes:
        topic: Channel topic, e.g. ``realtime:messages-1a2b``.
        event: phx_join, phx_leave, heartbeat, postgres_changes, ...
        payload: The actual data content.
        ref: Message reference used to correlate replies.
    """
    topic: str
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)
    ref: Optional[str] = None

    def to_json(self) -> str:
        """Serializes the message to a JSON string."""
        return json.dumps({
            "topic": self.topic,
            "event": self.event,
            "payload": self.payload,
            "ref": self.ref,
        })

    @classmethod
    def from_json(cls, data: str) -> "PhoenixMessage":
        """Deserializes a JSON string into a PhoenixMessage."""
        try:
            parsed = json.loads(data)
            return cls(
                topic=parsed["topic"],
                event=parsed["event"],
                payload=parsed.get("payload") or {},
                ref=parsed.get("ref"),
            )
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error(f"Failed to parse realtime message: {e}")
            raise ValueError(f"Invalid realtime message: {e}") from e


class BackoffStrategy:
    """Helper to calculate exponential backoff with jitter."""

    def __init__(self, base_delay: float = 1.0, max_delay: float = 30.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.attempts = 0

    def get_delay(self) -> float:
        """Calculates delay: min(max, base * 2^attempts) + jitter."""
        delay = min(self.max_delay, self.base_delay * (2 ** self.attempts))
        jitter = delay * 0.1 * random.random()
        self.attempts += 1
        return delay + jitter

    def reset(self):
        """Resets the attempt counter."""
        self.attempts = 0


def change_event_from_payload(payload: Dict[str, Any]) -> ChangeEvent:
    """Build a ChangeEvent from a ``postgres_changes`` payload."""
    data = payload.get("data") or {}
    return ChangeEvent(
        table=data.get("table", ""),
        type=EventType(data.get("type", "INSERT")),
        new=data.get("record") or {},
        old=data.get("old_record") or {},
        commit_timestamp=data.get("commit_timestamp") or "",
    )


def build_websocket_url(base_url: str, api_key: str) -> str:
    if base_url.startswith("https://"):
        ws_base = "wss://" + base_url[len("https://"):]
    elif base_url.startswith("http://"):
        ws_base = "ws://" + base_url[len("http://"):]
    else:
        ws_base = base_url
    return f"{ws_base.rstrip('/')}/realtime/v1/websocket?apikey={api_key}&vsn={PROTOCOL_VERSION}"


class RealtimeClient:
    """
    Manages the lifecycle of the realtime websocket connection.

    Features:
    - Auto-reconnection with exponential backoff.
    - Heartbeat management.
    - Channel join/leave and re-join after reconnect.
    - Event dispatching to the owning Channel.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: Optional[str] = None,
        heartbeat_interval: Optional[float] = None,
        schema: str = "public",
    ):
        """
        Args:
            base_url: Service root (https://<project>.example.co).
            api_key: Public anon key.
            access_token: User JWT sent with each join so row policies apply.
            heartbeat_interval: Seconds between heartbeats.
            schema: Database schema the channels listen on.
        """
        self.url = build_websocket_url(base_url, api_key)
        self.api_key = api_key
        self.access_token = access_token
        self.heartbeat_interval = heartbeat_interval or settings.realtime_heartbeat_seconds
        self.schema = schema

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._running = False
        self._connected = asyncio.Event()
        self._backoff = BackoffStrategy(
            base_delay=settings.realtime_reconnect_base,
            max_delay=settings.realtime_reconnect_max,
        )
        self._ref = 0

        # topic -> channel
        self._channels: Dict[str, Channel] = {}

        self._connection_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    @staticmethod
    def topic_for(channel: Channel) -> str:
        return f"realtime:{channel.id}"

    async def start(self) -> None:
        """Starts the connection loop."""
        if self._running:
            return

        self._running = True
        self._session = aiohttp.ClientSession()
        logger.info("Starting realtime client")
        self._connection_task = asyncio.create_task(self._connection_loop())

    async def stop(self) -> None:
        """Stops the client and closes connections gracefully."""
        self._running = False

        for task in (self._heartbeat_task, self._connection_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._session is not None and not self._session.closed:
            await self._session.close()

        for channel in list(self._channels.values()):
            await channel.close()
        self._channels.clear()
        logger.info("Realtime client stopped.")

    def set_access_token(self, token: Optional[str]) -> None:
        self.access_token = token

    async def join(self, channel: Channel) -> None:
        """Registers a channel and joins it if connected."""
        topic = self.topic_for(channel)
        self._channels[topic] = channel
        channel.open()
        if self.connected:
            await self._send_join(channel)

    async def leave(self, channel: Channel) -> None:
        """Leaves and closes a channel."""
        topic = self.topic_for(channel)
        self._channels.pop(topic, None)
        if self.connected:
            await self._send(PhoenixMessage(topic=topic, event="phx_leave", ref=self._next_ref()))
        await channel.close()

    async def _connection_loop(self) -> None:
        """Main loop handling connection, errors, and reconnection logic."""
        while self._running:
            try:
                logger.debug(f"Connecting to {self.url.split('?')[0]}...")
                self._ws = await self._session.ws_connect(self.url, heartbeat=None)

                self._backoff.reset()
                self._connected.set()
                logger.info("Connected to realtime service.")

                await self._recover_channels()
                self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
                await self._listen_loop()

            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as e:
                logger.warning(f"Realtime connection lost: {e}. Retrying...")
            except Exception as e:
                logger.error(f"Realtime connection failed: {e!r}. Retrying...", exc_info=True)
            finally:
                self._connected.clear()
                if self._heartbeat_task:
                    self._heartbeat_task.cancel()
                    self._heartbeat_task = None

            if self._running:
                wait_time = self._backoff.get_delay()
                logger.info(f"Reconnecting in {wait_time:.2f} seconds...")
                await asyncio.sleep(wait_time)

    async def _listen_loop(self) -> None:
        """Reads messages from the socket until it closes."""
        async for raw in self._ws:
            if raw.type == aiohttp.WSMsgType.TEXT:
                try:
                    message = PhoenixMessage.from_json(raw.data)
                except ValueError:
                    continue
                self._handle_message(message)
            elif raw.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                break

    def _handle_message(self, message: PhoenixMessage) -> None:
        """Dispatches messages to the owning channel."""
        if message.topic == PHOENIX_TOPIC:
            return

        if message.event == "phx_reply":
            if message.payload.get("status") != "ok":
                logger.error(f"Realtime join rejected for {message.topic}: {message.payload}")
            return

        if message.event in ("phx_error", "phx_close"):
            logger.warning(f"Realtime channel {message.topic} reported {message.event}")
            return

        if message.event != "postgres_changes":
            return

        channel = self._channels.get(message.topic)
        if channel is None:
            return

        try:
            event = change_event_from_payload(message.payload)
        except ValueError as e:
            logger.warning(f"Received malformed change event: {e}")
            return
        channel.deliver(event)

    async def _heartbeat_loop(self) -> None:
        """Sends periodic heartbeats to keep the connection alive."""
        try:
            while self._running and self.connected:
                await asyncio.sleep(self.heartbeat_interval)
                await self._send(PhoenixMessage(
                    topic=PHOENIX_TOPIC,
                    event="heartbeat",
                    ref=self._next_ref(),
                ))
        except asyncio.CancelledError:
            pass
        except (aiohttp.ClientError, ConnectionError) as e:
            logger.debug(f"Heartbeat loop stopped: {e}")

    def _join_payload(self, channel: Channel) -> Dict[str, Any]:
        change = {
            "event": channel.event.value,
            "schema": self.schema,
            "table": channel.table,
        }
        if channel.filter is not None:
            change["filter"] = channel.filter.render()

        payload: Dict[str, Any] = {
            "config": {
                "broadcast": {"ack": False, "self": False},
                "presence": {"key": ""},
                "postgres_changes": [change],
            },
        }
        if self.access_token:
            payload["access_token"] = self.access_token
        return payload

    async def _send_join(self, channel: Channel) -> None:
        await self._send(PhoenixMessage(
            topic=self.topic_for(channel),
            event="phx_join",
            payload=self._join_payload(channel),
            ref=self._next_ref(),
        ))
        logger.debug(f"Joined {channel.id}")

    async def _send(self, message: PhoenixMessage) -> None:
        if self._ws is None or self._ws.closed:
            return
        await self._ws.send_str(message.to_json())

    async def _recover_channels(self) -> None:
        """Re-joins channels after a connection drop."""
        for channel in list(self._channels.values()):
            await self._send_join(channel)


__all__ = [
    "PhoenixMessage",
    "BackoffStrategy",
    "RealtimeClient",
    "change_event_from_payload",
    "build_websocket_url",
]
