"""
Supabase Realtime client (Phoenix channels over a websocket).

A channel listens to row changes on one table, optionally narrowed by a
PostgREST-style filter (``report_id=eq.42``). Subscribing returns a
``Subscription`` handle that must be released; it also works as an async
context manager so release is guaranteed on exit:

    async with realtime.channel("reports-changes", table="reports").subscribe(on_change):
        ...

Events are delivered to callbacks one at a time in the order the server sent
them.
"""
import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiohttp

from ..domain.models import ChangeEvent, ChangeType

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


class Subscription:
    """Handle for one callback on one channel. Call ``release()`` on teardown."""

    def __init__(self, channel: "RealtimeChannel", callback: ChangeCallback):
        self.channel = channel
        self.callback = callback
        self.released = False

    async def release(self) -> None:
        if self.released:
            return
        self.released = True
        await self.channel.remove_callback(self.callback)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()


class RealtimeChannel:
    """Postgres change feed for one table (+ optional filter)."""

    def __init__(
        self,
        client: "RealtimeClient",
        name: str,
        table: str,
        filter: Optional[str] = None,
        schema: str = "public",
    ):
        self.client = client
        self.name = name
        self.table = table
        self.filter = filter
        self.schema = schema
        self._callbacks: List[ChangeCallback] = []
        self.joined = False

    @property
    def topic(self) -> str:
        return f"realtime:{self.name}"

    @property
    def callback_count(self) -> int:
        return len(self._callbacks)

    def join_config(self) -> Dict[str, Any]:
        change = {"event": "*", "schema": self.schema, "table": self.table}
        if self.filter:
            change["filter"] = self.filter
        return {
            "config": {
                "broadcast": {"ack": False, "self": False},
                "presence": {"key": ""},
                "postgres_changes": [change],
            }
        }

    async def subscribe(self, callback: ChangeCallback) -> Subscription:
        """Register a callback and join the channel on first use."""
        self._callbacks.append(callback)
        if not self.joined:
            await self.client.join(self)
        return Subscription(self, callback)

    async def remove_callback(self, callback: ChangeCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)
        if not self._callbacks:
            await self.client.leave(self)

    async def dispatch(self, event: ChangeEvent) -> None:
        """Deliver one event to every callback, in registration order."""
        for callback in list(self._callbacks):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[{self.name}] Realtime callback failed for {event.event_type.value}: {e}")

    @staticmethod
    def parse_change(payload: Dict[str, Any]) -> Optional[ChangeEvent]:
        """Parse a postgres_changes payload into a ChangeEvent."""
        data = payload.get("data") or payload
        event_type = data.get("type") or data.get("eventType")
        if event_type not in {t.value for t in ChangeType}:
            return None
        return ChangeEvent(
            event_type=ChangeType(event_type),
            table=data.get("table", ""),
            new=data.get("record") or data.get("new") or {},
            old=data.get("old_record") or data.get("old") or {},
            commit_timestamp=data.get("commit_timestamp"),
        )


class RealtimeClient:
    """
    One websocket shared by every channel.

    When the socket drops while channels are registered, the client reconnects
    with exponential backoff and sends ``phx_join`` again for each channel.

    With ``auto_connect=False`` no socket is opened and channels only receive
    events passed to ``handle_message`` (used when another transport feeds
    events in, and in tests).
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        heartbeat_seconds: float = 30.0,
        auto_connect: bool = True,
        session: Optional[aiohttp.ClientSession] = None,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
    ):
        ws_base = url.rstrip("/").replace("https://", "wss://").replace("http://", "ws://")
        self.endpoint = f"{ws_base}/realtime/v1/websocket"
        self.api_key = api_key
        self.heartbeat_seconds = heartbeat_seconds
        self.auto_connect = auto_connect
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.access_token: Optional[str] = None
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._channels: Dict[str, RealtimeChannel] = {}
        self._ref = 0

    def channel(self, name: str, table: str, filter: Optional[str] = None) -> RealtimeChannel:
        topic = f"realtime:{name}"
        if topic not in self._channels:
            self._channels[topic] = RealtimeChannel(self, name, table, filter)
        return self._channels[topic]

    @property
    def channels(self) -> List[RealtimeChannel]:
        return list(self._channels.values())

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    async def connect(self) -> None:
        if self.is_connected:
            return
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._ws = await self._session.ws_connect(
            self.endpoint,
            params={"apikey": self.api_key, "vsn": "1.0.0"},
        )
        self._reader_task = asyncio.create_task(self._read_loop())
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"Realtime connected: {self.endpoint}")

    async def _send(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        if not self.is_connected:
            return
        ref = self._next_ref()
        await self._ws.send_str(json.dumps({
            "topic": topic,
            "event": event,
            "payload": payload,
            "ref": ref,
            "join_ref": ref,
        }))

    async def join(self, channel: RealtimeChannel) -> None:
        channel.joined = True
        if not self.auto_connect:
            return
        await self.connect()
        payload = channel.join_config()
        if self.access_token:
            payload["access_token"] = self.access_token
        await self._send(channel.topic, "phx_join", payload)
        logger.info(f"Joined realtime channel {channel.topic} (table={channel.table}, filter={channel.filter})")

    async def leave(self, channel: RealtimeChannel) -> None:
        if channel.joined:
            await self._send(channel.topic, "phx_leave", {})
            channel.joined = False
        self._channels.pop(channel.topic, None)
        logger.info(f"Left realtime channel {channel.topic}")
        if not self._channels:
            await self.disconnect()

    async def handle_message(self, message: Dict[str, Any]) -> None:
        """Route one decoded Phoenix message to its channel."""
        if message.get("event") != "postgres_changes":
            if message.get("event") == "phx_error":
                logger.error(f"Realtime channel error on {message.get('topic')}: {message.get('payload')}")
            return
        channel = self._channels.get(message.get("topic", ""))
        if channel is None:
            return
        event = RealtimeChannel.parse_change(message.get("payload") or {})
        if event is not None:
            await channel.dispatch(event)

    async def _read_loop(self) -> None:
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        await self.handle_message(json.loads(msg.data))
                    except json.JSONDecodeError:
                        logger.warning("Ignoring malformed realtime frame")
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        except asyncio.CancelledError:
            raise
        except aiohttp.ClientError as e:
            logger.error(f"Realtime connection lost: {e}")

        # Reached only when the server side ended the stream
        if self._channels and not self.is_reconnecting:
            logger.warning("Realtime socket closed, reconnecting")
            self._reconnect_task = asyncio.create_task(self._reconnect())

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before reconnect attempt ``attempt`` (0-based)."""
        return min(self.reconnect_delay * 2 ** attempt, self.max_reconnect_delay)

    async def _reconnect(self) -> None:
        """Reopen the socket with exponential backoff, then rejoin every channel."""
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
        self._heartbeat_task = None
        self._reader_task = None
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        for channel in self._channels.values():
            channel.joined = False

        attempt = 0
        while self._channels:
            delay = self.backoff_delay(attempt)
            attempt += 1
            await asyncio.sleep(delay)
            try:
                await self.connect()
            except (aiohttp.ClientError, OSError) as e:
                logger.warning(f"Realtime reconnect attempt {attempt} failed: {e}")
                continue

            for channel in list(self._channels.values()):
                await self.join(channel)
            if not self.is_connected:
                continue
            logger.info(f"Realtime reconnected after {attempt} attempt(s), rejoined {len(self._channels)} channel(s)")
            return

    async def _heartbeat_loop(self) -> None:
        while self.is_connected:
            await asyncio.sleep(self.heartbeat_seconds)
            await self._send("phoenix", "heartbeat", {})

    async def disconnect(self) -> None:
        for task in (self._reconnect_task, self._heartbeat_task, self._reader_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
        self._reconnect_task = None
        self._heartbeat_task = None
        self._reader_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
            logger.info("Realtime disconnected")

    async def aclose(self) -> None:
        await self.disconnect()
        self._channels.clear()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
