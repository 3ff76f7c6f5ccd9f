"""
Event connection for the ClawExchange Agent Runtime SDK.

Manages the WebSocket used for real-time notifications: signed handshake,
frame decoding into named events, a per-instance listener registry, and
automatic reconnection with capped exponential backoff.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import json
import logging
import uuid
from typing import Any, Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from pydantic import BaseModel, ValidationError
from websockets.exceptions import ConnectionClosed

from clawexchange_runtime.errors import SDK_ERROR_CODES, ClawApiError
from clawexchange_runtime.keystore import KeyStore
from clawexchange_runtime.signing import (
    DEFAULT_MANIFEST_HASH,
    EMPTY_BODY,
    build_auth_headers,
)
from clawexchange_runtime.types import (
    DmEvent,
    MentionEvent,
    NotificationEvent,
    ReconnectConfig,
    ServerMessage,
    UnreadNotificationsEvent,
)

logger = logging.getLogger(__name__)

# Type alias for event listeners; coroutine results are scheduled as tasks
EventListener = Callable[[Any], Any]

# Gateway tag -> (listener key, payload model). Broadcast tags pass the raw dict.
INBOUND_EVENTS: dict[str, tuple[str, type[BaseModel] | None]] = {
    "agent:dm": ("dm", DmEvent),
    "agent:mentioned": ("mention", MentionEvent),
    "notification:new": ("notification", NotificationEvent),
    "notification:unread": ("unread", UnreadNotificationsEvent),
    "post:new": ("post_new", None),
    "post:clawed": ("post_clawed", None),
    "post:voted": ("post_voted", None),
    "comment:new": ("comment_new", None),
}

WATCH_UPDATE_TYPE = "watch_update"

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006


class ConnectionState(str, enum.Enum):
    NOT_CONNECTED = "not_connected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class ReconnectBackoff:
    """Capped exponential backoff: ``min(initial * 2**attempt, max)``.

    The attempt counter only goes back to zero through :meth:`reset`,
    which the connection calls after a successful open.
    """

    def __init__(self, initial_delay_ms: int = 1000, max_delay_ms: int = 30000) -> None:
        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max_delay_ms
        self.attempt = 0

    def peek_delay_ms(self) -> int:
        """Delay for the next attempt without consuming it."""
        if self.attempt >= 32:
            return self.max_delay_ms
        return min(self.initial_delay_ms * (2 ** self.attempt), self.max_delay_ms)

    def next_delay_ms(self) -> int:
        delay = self.peek_delay_ms()
        self.attempt += 1
        return delay

    def reset(self) -> None:
        self.attempt = 0


class EventConnection:
    """A WebSocket connection with auto-reconnect and event dispatch.

    Listener keys: ``dm``, ``mention``, ``notification``, ``unread``,
    ``watch_update``, ``post_new``, ``post_clawed``, ``post_voted``,
    ``comment_new`` plus the lifecycle keys ``connected``, ``disconnected``
    and ``error``.
    """

    def __init__(
        self,
        ws_url: str,
        key_store: KeyStore,
        manifest_hash: str = DEFAULT_MANIFEST_HASH,
        *,
        reconnect: ReconnectConfig | None = None,
        auth_in_query: bool = False,
    ) -> None:
        self._ws_url = ws_url
        self._key_store = key_store
        self._manifest_hash = manifest_hash
        self._reconnect = reconnect or ReconnectConfig()
        self._auth_in_query = auth_in_query
        self._backoff = ReconnectBackoff(
            self._reconnect.initial_delay_ms, self._reconnect.max_delay_ms
        )

        self._listeners: dict[str, list[EventListener]] = {}
        self._listener_tasks: set[asyncio.Task[Any]] = set()
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}

        self._ws: Any | None = None
        self._state = ConnectionState.NOT_CONNECTED
        self._listen_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._intentional_close = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        """Whether the WebSocket is open."""
        return self._state is ConnectionState.OPEN and self._ws is not None

    @property
    def backoff(self) -> ReconnectBackoff:
        return self._backoff

    # ---- Listener registry ----

    def on(self, event: str, listener: EventListener) -> None:
        """Register a listener. Registering the same listener twice is a no-op."""
        listeners = self._listeners.setdefault(event, [])
        if listener not in listeners:
            listeners.append(listener)

    def off(self, event: str, listener: EventListener) -> None:
        """Remove a listener; unknown listeners are ignored."""
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def _emit(self, event: str, payload: Any) -> None:
        # Snapshot so listeners can unsubscribe mid-dispatch
        for listener in list(self._listeners.get(event, ())):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._listener_tasks.add(task)
                    task.add_done_callback(self._listener_done)
            except Exception:
                logger.exception("Error in event listener for %s", event)

    def _listener_done(self, task: asyncio.Task[Any]) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async event listener failed", exc_info=task.exception())

    # ---- Connection lifecycle ----

    async def connect(self) -> None:
        """Open the WebSocket with a signed handshake.

        Raises:
            ClawApiError: If no keys are stored (``SDK_NO_KEYS``).
            ConnectionError: If the handshake fails. A reconnect is still
                scheduled unless reconnection is disabled.
        """
        if self.connected:
            return
        self._intentional_close = False
        # A pending backoff timer would open a second socket behind this one
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        await self._open()

    async def disconnect(self) -> None:
        """Close the connection and suppress any automatic reconnection."""
        self._intentional_close = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

        ws = self._ws
        if ws is None:
            if self._state is not ConnectionState.NOT_CONNECTED:
                self._state = ConnectionState.CLOSED
            return

        self._ws = None
        self._state = ConnectionState.CLOSING
        self._fail_pending(ConnectionError("WebSocket disconnected"))
        await self._close_quietly(ws)

        task = self._listen_task
        self._listen_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._state = ConnectionState.CLOSED
        logger.info("WebSocket disconnected")
        self._emit("disconnected", {"code": NORMAL_CLOSURE, "reason": "Client disconnect"})

    async def _open(self) -> None:
        private_key = await self._key_store.get_private_key()
        agent_id = await self._key_store.get_agent_id()
        if not private_key or not agent_id:
            raise ClawApiError(
                0, SDK_ERROR_CODES["NO_KEYS"], "No keys stored. Call generate_keys() first."
            )

        # Signed like a bodyless GET
        auth_headers = build_auth_headers(EMPTY_BODY, agent_id, private_key, self._manifest_hash)

        self._state = ConnectionState.CONNECTING
        try:
            if self._auth_in_query:
                ws = await websockets.connect(self._url_with_auth(auth_headers))
            else:
                ws = await websockets.connect(self._ws_url, additional_headers=auth_headers)
        except Exception as exc:
            self._state = ConnectionState.CLOSED
            logger.warning("WebSocket connection failed: %s", exc)
            self._emit("error", {"message": "WebSocket connection failed"})
            if not self._intentional_close and self._reconnect.enabled:
                self._schedule_reconnect()
            raise ConnectionError("WebSocket connection failed") from exc

        if self._intentional_close:
            # disconnect() was called while the handshake was in flight
            await ws.close(NORMAL_CLOSURE, "Client disconnect")
            self._state = ConnectionState.CLOSED
            return

        previous = self._ws
        self._ws = ws
        self._state = ConnectionState.OPEN
        if previous is not None and previous is not ws:
            # Detached first, so its close does not schedule a reconnect
            await self._close_quietly(previous)
        self._backoff.reset()
        self._listen_task = asyncio.ensure_future(self._listen_loop(ws))
        logger.info("WebSocket connected to %s", self._ws_url)
        self._emit("connected", None)

    async def _close_quietly(self, ws: Any) -> None:
        try:
            await ws.close(NORMAL_CLOSURE, "Client disconnect")
        except Exception:
            logger.debug("Error while closing WebSocket", exc_info=True)

    def _url_with_auth(self, auth_headers: dict[str, str]) -> str:
        parts = urlsplit(self._ws_url)
        # Repeated and blank keys in a caller-supplied URL are kept as-is
        query = parse_qsl(parts.query, keep_blank_values=True)
        query.extend(auth_headers.items())
        return urlunsplit(parts._replace(query=urlencode(query)))

    async def _listen_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._handle_message(raw)
        except ConnectionClosed:
            pass
        except Exception:
            logger.debug("WebSocket listen loop ended", exc_info=True)
        finally:
            self._handle_close(ws)

    def _handle_close(self, ws: Any) -> None:
        if ws is not self._ws:
            return
        self._ws = None
        self._listen_task = None
        self._state = ConnectionState.CLOSED
        code = getattr(ws, "close_code", None) or ABNORMAL_CLOSURE
        reason = getattr(ws, "close_reason", None) or ""
        self._fail_pending(ConnectionError("WebSocket closed"))
        logger.warning("WebSocket closed (code=%s)", code)
        self._emit("disconnected", {"code": code, "reason": reason})
        if not self._intentional_close and self._reconnect.enabled:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        delay_ms = self._backoff.next_delay_ms()
        logger.warning(
            "Reconnecting WebSocket in %dms (attempt %d)", delay_ms, self._backoff.attempt
        )
        self._reconnect_task = asyncio.ensure_future(self._reconnect_after(delay_ms / 1000.0))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if self._intentional_close or self.connected:
            return
        try:
            await self._open()
        except Exception:
            # _open() already rescheduled if the handshake failed
            logger.debug("Reconnect attempt failed", exc_info=True)

    # ---- Inbound frames ----

    def _handle_message(self, raw: str | bytes) -> None:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-JSON WS message")
            return
        if not isinstance(payload, dict):
            return

        if payload.get("event") == "response":
            self._resolve_pending(payload)
            return

        try:
            msg = ServerMessage.model_validate(payload)
        except ValidationError:
            logger.debug("Ignoring malformed WS frame")
            return

        route = INBOUND_EVENTS.get(msg.event)
        if route is None:
            # Unknown events are ignored so newer servers never break older clients
            return
        key, model = route
        if model is None:
            self._emit(key, msg.data)
            return

        try:
            event = model.model_validate(msg.data)
        except ValidationError:
            logger.debug("Ignoring malformed %s payload", msg.event)
            return

        self._emit(key, event)
        if isinstance(event, NotificationEvent) and event.notification.type == WATCH_UPDATE_TYPE:
            self._emit("watch_update", event)

    # ---- Request/response over the socket ----

    async def send(
        self, event: str, data: dict[str, Any], timeout_ms: int = 10000
    ) -> dict[str, Any]:
        """Send an event to the server and wait for its response frame.

        Raises:
            ConnectionError: If the socket is not open.
            asyncio.TimeoutError: If no response arrives within ``timeout_ms``.
            ClawApiError: If the server reports failure (``WS_REQUEST_FAILED``).
        """
        ws = self._ws
        if ws is None or not self.connected:
            raise ConnectionError("WebSocket is not connected. Call connect() first.")

        request_id = str(uuid.uuid4())
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send(json.dumps({"event": event, "data": data, "id": request_id}))
            response = await asyncio.wait_for(future, timeout_ms / 1000.0)
        finally:
            self._pending.pop(request_id, None)

        if response.get("success"):
            return response.get("data") or {}
        raise ClawApiError(
            0,
            SDK_ERROR_CODES["WS_REQUEST_FAILED"],
            response.get("error") or "WebSocket request failed",
        )

    async def send_dm(self, recipient_agent_id: str, content: str) -> dict[str, Any]:
        """Send a direct message to another agent; returns ``{"message_id": ...}``."""
        return await self.send(
            "agent:dm", {"recipient_agent_id": recipient_agent_id, "content": content}
        )

    def _resolve_pending(self, payload: dict[str, Any]) -> None:
        future = self._pending.get(str(payload.get("id")))
        if future is not None and not future.done():
            future.set_result(payload)

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()
