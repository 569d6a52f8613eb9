"""Push channel implementations.

- SupabaseRealtimeChannel: websocket client for the Phoenix-based realtime
  protocol, subscribed to ``postgres_changes`` UPDATE events on the
  artifacts table filtered to one row.
- InMemoryPushChannel: in-process channel for tests and local wiring.

Protocol summary (Phoenix channels, JSON serializer v1):
    → {"topic": "realtime:artifact-<id>", "event": "phx_join",
       "payload": {"config": {"postgres_changes": [...]}}, "ref": "1"}
    ← {"event": "phx_reply", "payload": {"status": "ok"}, "ref": "1"}
    ← {"event": "postgres_changes",
       "payload": {"data": {"type": "UPDATE", "record": {...},
                            "old_record": {...}}}}
    → {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": "n"}
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Dict, List, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from src.artifact_sync.realtime.models import (
    ArtifactChangeEvent,
    ChannelStatus,
    EventCallback,
    StatusCallback,
)


logger = logging.getLogger(__name__)


DEFAULT_HEARTBEAT_SECONDS = 25.0
DEFAULT_JOIN_TIMEOUT_SECONDS = 10.0


class SupabaseRealtimeSubscription:
    """One joined realtime channel on its own websocket connection."""

    def __init__(
        self,
        connection: ClientConnection,
        topic: str,
        artifact_id: str,
        on_event: EventCallback,
        on_status: StatusCallback,
        heartbeat_seconds: float,
        join_timeout_seconds: float,
    ):
        self._connection = connection
        self._topic = topic
        self._artifact_id = artifact_id
        self._on_event = on_event
        self._on_status = on_status
        self._heartbeat_seconds = heartbeat_seconds
        self._join_timeout_seconds = join_timeout_seconds
        self._refs = itertools.count(1)
        self._join_ref: Optional[str] = None
        self._joined = asyncio.Event()
        self._closing = False
        self._tasks: List[asyncio.Task] = []

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def _send(self, topic: str, event: str, payload: Dict[str, Any]) -> str:
        ref = self._next_ref()
        message = {"topic": topic, "event": event, "payload": payload, "ref": ref}
        await self._connection.send(json.dumps(message))
        return ref

    async def join(self, access_token: Optional[str]) -> None:
        """Send phx_join and start the reader and heartbeat tasks."""
        payload: Dict[str, Any] = {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [
                    {
                        "event": "UPDATE",
                        "schema": "public",
                        "table": "artifacts",
                        "filter": f"id=eq.{self._artifact_id}",
                    }
                ],
            },
        }
        if access_token:
            payload["access_token"] = access_token

        self._join_ref = await self._send(self._topic, "phx_join", payload)
        self._tasks = [
            asyncio.create_task(self._read_loop(), name=f"realtime-read-{self._topic}"),
            asyncio.create_task(self._heartbeat_loop(), name=f"realtime-hb-{self._topic}"),
            asyncio.create_task(self._join_watchdog(), name=f"realtime-join-{self._topic}"),
        ]

    async def _read_loop(self) -> None:
        try:
            async for raw in self._connection:
                self._dispatch(raw)
        except ConnectionClosed as exc:
            if not self._closing:
                self._report(ChannelStatus.CLOSED, str(exc))
            return
        if not self._closing:
            self._report(ChannelStatus.CLOSED, "connection closed")

    def _dispatch(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed realtime message", extra={"topic": self._topic})
            return

        event = message.get("event")
        payload = message.get("payload") or {}

        if event == "phx_reply" and message.get("ref") == self._join_ref:
            if payload.get("status") == "ok":
                self._joined.set()
                self._report(ChannelStatus.SUBSCRIBED, None)
            else:
                self._report(ChannelStatus.CHANNEL_ERROR, json.dumps(payload.get("response")))
        elif event == "postgres_changes" and message.get("topic") == self._topic:
            data = payload.get("data") or {}
            if data.get("type", "UPDATE") != "UPDATE":
                return
            change = ArtifactChangeEvent(
                artifact_id=self._artifact_id,
                event="UPDATE",
                new=data.get("record") or {},
                old=data.get("old_record") or {},
            )
            self._on_event(change)
        elif event == "phx_error" and message.get("topic") == self._topic:
            self._report(ChannelStatus.CHANNEL_ERROR, "phx_error")
        elif event == "phx_close" and message.get("topic") == self._topic:
            self._report(ChannelStatus.CLOSED, "phx_close")
        elif event == "system" and payload.get("status") == "error":
            self._report(ChannelStatus.CHANNEL_ERROR, payload.get("message"))

    async def _heartbeat_loop(self) -> None:
        while not self._closing:
            await asyncio.sleep(self._heartbeat_seconds)
            try:
                await self._send("phoenix", "heartbeat", {})
            except ConnectionClosed:
                return

    async def _join_watchdog(self) -> None:
        try:
            await asyncio.wait_for(self._joined.wait(), self._join_timeout_seconds)
        except asyncio.TimeoutError:
            if not self._closing:
                self._report(ChannelStatus.TIMED_OUT, "join not acknowledged")

    def _report(self, status: ChannelStatus, detail: Optional[str]) -> None:
        if self._closing:
            return
        try:
            self._on_status(status, detail)
        except Exception:
            logger.exception("Realtime status callback failed", extra={"topic": self._topic})

    async def unsubscribe(self) -> None:
        if self._closing:
            return
        self._closing = True
        try:
            await self._send(self._topic, "phx_leave", {})
        except ConnectionClosed:
            pass
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._connection.close()


class SupabaseRealtimeChannel:
    """Push channel backed by a Supabase Realtime websocket.

    Each subscription opens its own connection so that closing one
    artifact's engine never affects another.

    Attributes:
        url: Realtime websocket endpoint, e.g.
             ``wss://<project>.supabase.co/realtime/v1/websocket``.
        api_key: Project API key sent as the ``apikey`` query parameter.
        access_token: Optional user JWT sent with the join.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        access_token: Optional[str] = None,
        heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
        join_timeout_seconds: float = DEFAULT_JOIN_TIMEOUT_SECONDS,
    ):
        self.url = url
        self.api_key = api_key
        self.access_token = access_token
        self.heartbeat_seconds = heartbeat_seconds
        self.join_timeout_seconds = join_timeout_seconds

    def _endpoint(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}apikey={self.api_key}&vsn=1.0.0"

    async def subscribe(
        self,
        artifact_id: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> SupabaseRealtimeSubscription:
        """Open a connection and join the artifact's channel.

        Raises:
            OSError: If the connection cannot be established.
            websockets.exceptions.InvalidHandshake: On handshake failure.
        """
        connection = await connect(self._endpoint(), open_timeout=self.join_timeout_seconds)
        subscription = SupabaseRealtimeSubscription(
            connection=connection,
            topic=f"realtime:artifact-{artifact_id}",
            artifact_id=artifact_id,
            on_event=on_event,
            on_status=on_status,
            heartbeat_seconds=self.heartbeat_seconds,
            join_timeout_seconds=self.join_timeout_seconds,
        )
        try:
            await subscription.join(self.access_token)
        except Exception:
            await connection.close()
            raise
        return subscription


class InMemorySubscription:
    def __init__(self, channel: "InMemoryPushChannel", artifact_id: str,
                 on_event: EventCallback, on_status: StatusCallback):
        self.channel = channel
        self.artifact_id = artifact_id
        self.on_event = on_event
        self.on_status = on_status
        self.active = True

    async def unsubscribe(self) -> None:
        self.active = False
        if self in self.channel.subscriptions:
            self.channel.subscriptions.remove(self)


class InMemoryPushChannel:
    """Push channel that delivers events published in-process.

    Attributes:
        subscriptions: Active subscriptions.
        fail_subscribe: When set, subscribe() raises this exception.
    """

    def __init__(self, fail_subscribe: Optional[Exception] = None):
        self.subscriptions: List[InMemorySubscription] = []
        self.fail_subscribe = fail_subscribe
        self.subscribe_calls = 0

    async def subscribe(
        self,
        artifact_id: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> InMemorySubscription:
        self.subscribe_calls += 1
        if self.fail_subscribe is not None:
            raise self.fail_subscribe
        subscription = InMemorySubscription(self, artifact_id, on_event, on_status)
        self.subscriptions.append(subscription)
        on_status(ChannelStatus.SUBSCRIBED, None)
        return subscription

    def publish(self, event: ArtifactChangeEvent) -> int:
        """Deliver an event to matching subscribers; returns the delivery count."""
        delivered = 0
        for subscription in list(self.subscriptions):
            if subscription.active and subscription.artifact_id == event.artifact_id:
                subscription.on_event(event)
                delivered += 1
        return delivered

    def set_status(self, status: ChannelStatus, detail: Optional[str] = None) -> None:
        """Report a status change (e.g. CLOSED) to every subscriber."""
        for subscription in list(self.subscriptions):
            if subscription.active:
                subscription.on_status(status, detail)
