"""
Real-time fan-out for LiveFoot.

Manages client WebSocket connections with:
- Topic subscriptions: match:{match_id} and team:{team_id}
- Emit primitives for match updates, kick-off, full-time, timeline events and insights
- Heartbeat/ping-pong for connection liveness
- Per-connection subscription limits

Delivery is best effort and at most once: a connection that is not joined to
a topic at emit time never sees the message, and nothing is replayed later.
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from shared.config import Settings, get_settings
from shared.models.enums import WSClientOp, WSServerMsgType
from shared.utils.logging import get_logger
from shared.utils.metrics import FANOUT_EMITS, WS_CONNECTIONS, WS_MESSAGES, WS_SUBSCRIPTIONS

logger = get_logger(__name__)


def match_topic(match_id: int) -> str:
    return f"match:{match_id}"


def team_topic(team_id: int) -> str:
    return f"team:{team_id}"


@dataclass
class WSConnection:
    """Represents a single WebSocket client connection."""

    ws: WebSocket
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    topics: set[str] = field(default_factory=set)
    created_at: float = field(default_factory=time.monotonic)
    last_pong_at: float = field(default_factory=time.monotonic)
    remote_addr: str = ""

    @property
    def alive_seconds(self) -> float:
        return time.monotonic() - self.created_at


# op -> (payload id field, topic builder, join?)
_TOPIC_OPS = {
    WSClientOp.SUBSCRIBE_MATCH: ("matchId", match_topic, True),
    WSClientOp.UNSUBSCRIBE_MATCH: ("matchId", match_topic, False),
    WSClientOp.SUBSCRIBE_TEAM: ("teamId", team_topic, True),
    WSClientOp.UNSUBSCRIBE_TEAM: ("teamId", team_topic, False),
}


class FanoutManager:
    """
    Tracks topic membership for every connection on this API instance and
    pushes server events to the members of a topic.

    Match-scoped emits also reach the team topics of both participants, so a
    client following a team hears about its matches without knowing their ids.
    A connection joined to several of those topics still receives one copy.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._connections: dict[str, WSConnection] = {}
        # topic -> set of connection_ids
        self._topic_members: dict[str, set[str]] = {}
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._shutdown = asyncio.Event()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def topic_size(self, topic: str) -> int:
        return len(self._topic_members.get(topic, ()))

    async def start(self) -> None:
        self._heartbeat_task = asyncio.create_task(self._run_heartbeat())
        logger.info("fanout_started")

    async def stop(self) -> None:
        """Stop the heartbeat and close all connections."""
        self._shutdown.set()
        if self._heartbeat_task:
            self._heartbeat_task.cancel()

        served = len(self._connections)
        for conn in list(self._connections.values()):
            await self._close_connection(conn, code=1001, reason="server_shutdown")

        logger.info("fanout_stopped", open_connections=served)

    # ── Connection lifecycle ────────────────────────────────────────────

    async def handle_connection(self, ws: WebSocket) -> None:
        """Accept a connection, process its commands, and clean up on disconnect."""
        await ws.accept()

        conn = WSConnection(
            ws=ws,
            remote_addr=f"{ws.client.host}:{ws.client.port}" if ws.client else "unknown",
        )
        self._connections[conn.connection_id] = conn
        WS_CONNECTIONS.inc()

        logger.info("ws_connected", connection_id=conn.connection_id, remote_addr=conn.remote_addr)

        await self._send(conn, {
            "type": WSServerMsgType.STATE.value,
            "connection_id": conn.connection_id,
            "max_subscriptions": self._settings.ws_max_subscriptions_per_conn,
            "heartbeat_interval": self._settings.ws_heartbeat_interval_s,
        })

        try:
            while not self._shutdown.is_set():
                try:
                    raw = await asyncio.wait_for(ws.receive_text(), timeout=60.0)
                except asyncio.TimeoutError:
                    continue

                WS_MESSAGES.labels(direction="in").inc()
                await self._handle_message(conn, raw)

        except WebSocketDisconnect:
            pass
        except Exception as exc:
            logger.warning("ws_connection_error", connection_id=conn.connection_id, error=str(exc))
        finally:
            await self._cleanup_connection(conn)

    async def _handle_message(self, conn: WSConnection, raw: str) -> None:
        """Parse and dispatch a client command."""
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            await self._send_error(conn, "invalid_json", "Message must be valid JSON")
            return

        if not isinstance(msg, dict) or not msg.get("op"):
            await self._send_error(conn, "missing_op", "Message must include 'op' field")
            return

        op = msg["op"]
        try:
            operation = WSClientOp(op)
        except ValueError:
            await self._send_error(conn, "unknown_op", f"Unknown operation: {op}")
            return

        if operation == WSClientOp.PING:
            await self._handle_ping(conn)
            return

        id_field, build_topic, join = _TOPIC_OPS[operation]
        target = _parse_id(msg, id_field)
        if target is None:
            await self._send_error(
                conn, f"invalid_{_snake(id_field)}", f"{op} requires a numeric {id_field}"
            )
            return

        topic = build_topic(target)
        if join:
            await self._join(conn, topic)
        else:
            self._leave(conn, topic)
            await self._send_state(conn)

    async def _join(self, conn: WSConnection, topic: str) -> None:
        if topic not in conn.topics:
            if len(conn.topics) >= self._settings.ws_max_subscriptions_per_conn:
                await self._send_error(
                    conn,
                    "subscription_limit",
                    f"Maximum {self._settings.ws_max_subscriptions_per_conn} subscriptions per connection",
                )
                return
            conn.topics.add(topic)
            self._topic_members.setdefault(topic, set()).add(conn.connection_id)
            WS_SUBSCRIPTIONS.inc()

        logger.debug("ws_subscribed", connection_id=conn.connection_id, topic=topic)
        await self._send_state(conn)

    def _leave(self, conn: WSConnection, topic: str) -> None:
        if topic not in conn.topics:
            return
        conn.topics.discard(topic)
        members = self._topic_members.get(topic)
        if members is not None:
            members.discard(conn.connection_id)
            if not members:
                del self._topic_members[topic]
        WS_SUBSCRIPTIONS.dec()

    async def _handle_ping(self, conn: WSConnection) -> None:
        conn.last_pong_at = time.monotonic()
        await self._send(conn, {"type": WSServerMsgType.PONG.value, "timestamp": time.time()})

    async def _send_state(self, conn: WSConnection) -> None:
        await self._send(conn, {
            "type": WSServerMsgType.STATE.value,
            "subscribed": sorted(conn.topics),
        })

    # ── Emit primitives ─────────────────────────────────────────────────

    async def emit_match_update(
        self, match_id: int, payload: dict[str, Any], team_ids: Iterable[int] = ()
    ) -> int:
        return await self._emit(WSServerMsgType.MATCH_UPDATE, match_id, payload, team_ids)

    async def emit_match_started(
        self, match_id: int, payload: dict[str, Any], team_ids: Iterable[int] = ()
    ) -> int:
        return await self._emit(WSServerMsgType.MATCH_STARTED, match_id, payload, team_ids)

    async def emit_match_ended(
        self, match_id: int, payload: dict[str, Any], team_ids: Iterable[int] = ()
    ) -> int:
        return await self._emit(WSServerMsgType.MATCH_ENDED, match_id, payload, team_ids)

    async def emit_match_event(
        self, match_id: int, payload: dict[str, Any], team_ids: Iterable[int] = ()
    ) -> int:
        return await self._emit(WSServerMsgType.MATCH_EVENT, match_id, payload, team_ids)

    async def emit_insight(self, match_id: int, payload: dict[str, Any]) -> int:
        return await self._emit(WSServerMsgType.AI_INSIGHT, match_id, payload, ())

    async def _emit(
        self,
        event: WSServerMsgType,
        match_id: int,
        payload: dict[str, Any],
        team_ids: Iterable[int],
    ) -> int:
        """Deliver one event to every member of the affected topics. Returns recipients."""
        topics = [match_topic(match_id)] + [team_topic(t) for t in team_ids]
        recipients: set[str] = set()
        for topic in topics:
            recipients.update(self._topic_members.get(topic, ()))

        FANOUT_EMITS.labels(event=event.value).inc()
        if not recipients:
            return 0

        message = {
            "type": event.value,
            "match_id": match_id,
            "data": payload,
            "timestamp": time.time(),
        }

        tasks = []
        for conn_id in recipients:
            conn = self._connections.get(conn_id)
            if conn:
                tasks.append(self._send(conn, message))

        delivered = 0
        if tasks:
            results = await asyncio.gather(*tasks)
            delivered = sum(1 for ok in results if ok)
            WS_MESSAGES.labels(direction="out").inc(delivered)

        logger.debug(
            "fanout_emitted", event_type=event.value, match_id=match_id, recipients=delivered
        )
        return delivered

    # ── Heartbeat ───────────────────────────────────────────────────────

    async def _run_heartbeat(self) -> None:
        """Ping every connection periodically; drop the ones that stopped answering."""
        interval = self._settings.ws_heartbeat_interval_s
        timeout = self._settings.ws_heartbeat_timeout_s
        while not self._shutdown.is_set():
            try:
                await asyncio.sleep(interval)
                if self._shutdown.is_set():
                    break
                await self.sweep_stale(interval + timeout)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("ws_heartbeat_error", error=str(exc))

    async def sweep_stale(self, max_silence_s: float) -> int:
        """Close connections silent for longer than ``max_silence_s`` and ping the rest."""
        now = time.monotonic()
        stale: list[WSConnection] = []
        for conn in list(self._connections.values()):
            if now - conn.last_pong_at > max_silence_s:
                stale.append(conn)
                continue
            await self._send(conn, {"type": WSServerMsgType.PING.value, "timestamp": time.time()})

        for conn in stale:
            logger.info(
                "ws_heartbeat_timeout",
                connection_id=conn.connection_id,
                alive_seconds=round(conn.alive_seconds, 1),
            )
            await self._close_connection(conn, code=1000, reason="heartbeat_timeout")
        return len(stale)

    # ── Transport helpers ───────────────────────────────────────────────

    async def _send(self, conn: WSConnection, message: dict[str, Any]) -> bool:
        """Send a JSON message. A connection whose send fails is dropped."""
        if conn.ws.client_state != WebSocketState.CONNECTED:
            return False
        try:
            await conn.ws.send_text(json.dumps(message, default=str))
        except Exception as exc:
            logger.info("ws_send_failed", connection_id=conn.connection_id, error=str(exc))
            await self._cleanup_connection(conn)
            return False
        return True

    async def _send_error(self, conn: WSConnection, code: str, message: str) -> None:
        await self._send(conn, {
            "type": WSServerMsgType.ERROR.value,
            "error": {"code": code, "message": message},
        })

    async def _close_connection(self, conn: WSConnection, code: int = 1000, reason: str = "") -> None:
        try:
            if conn.ws.client_state == WebSocketState.CONNECTED:
                await conn.ws.close(code=code, reason=reason)
        except Exception as exc:
            logger.debug("ws_close_error", connection_id=conn.connection_id, error=str(exc))
        await self._cleanup_connection(conn)

    async def _cleanup_connection(self, conn: WSConnection) -> None:
        """Remove a connection from all tracking structures. Safe to call twice."""
        if self._connections.pop(conn.connection_id, None) is None:
            return
        WS_CONNECTIONS.dec()

        subscriptions = len(conn.topics)
        for topic in list(conn.topics):
            self._leave(conn, topic)

        logger.info(
            "ws_disconnected",
            connection_id=conn.connection_id,
            alive_seconds=round(conn.alive_seconds, 1),
            subscriptions=subscriptions,
        )


def _parse_id(msg: dict[str, Any], camel: str) -> Optional[int]:
    raw = msg.get(camel, msg.get(_snake(camel)))
    if isinstance(raw, bool):
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def _snake(camel: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in camel)
