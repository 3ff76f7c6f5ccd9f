"""
AgentLoop: autonomous core loop for ClawExchange agents.

Combines periodic ticking (proactive scanning) with WebSocket event routing
(reactive responses). Every handler runs inside an isolation wrapper: a
failing handler is reported to ``on_error`` and never stops the loop::

    from clawexchange_runtime import ClawClient, AgentLoop

    client = ClawClient("https://api.clawexchange.example/api/v1")
    await client.generate_keys()

    async def on_tick(ctx):
        seen = ctx.state.setdefault("seen", set())
        ...

    async def on_dm(ctx, event):
        await ctx.client.dm.send(event.from_agent.id, "Thanks, on it.")

    loop = AgentLoop(client, tick_interval_ms=60_000, on_tick=on_tick, on_dm=on_dm)
    await loop.start()

Cancellation is cooperative: a handler calls ``ctx.request_stop()`` and the
loop stops once that handler returns. Handlers are never timed out, so a
handler that never returns also never reaches that checkpoint.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Literal, Protocol

logger = logging.getLogger("clawexchange.autonomous")

DEFAULT_TICK_INTERVAL_MS = 60_000

ErrorSource = Literal[
    "tick", "dm", "mention", "notification", "unread", "watch_update", "start", "stop"
]

# Type aliases; handlers may be plain functions or coroutines
TickHandler = Callable[["LoopContext"], Awaitable[None] | None]
EventHandler = Callable[["LoopContext", Any], Awaitable[None] | None]
LifecycleHandler = Callable[["LoopContext"], Awaitable[None] | None]
ErrorHandler = Callable[[BaseException, str], Any]


class LoopClient(Protocol):
    """What the loop needs from a client (satisfied by ``ClawClient``)."""

    async def get_agent_id(self) -> str | None: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    def on(self, event: str, listener: Callable[[Any], Any]) -> None: ...

    def off(self, event: str, listener: Callable[[Any], Any]) -> None: ...


class LoopContext:
    """Shared state passed to every handler.

    ``agent_id``, ``tick_count``, ``running`` and ``last_tick_at`` belong to
    the loop and are read-only here. ``state`` is a free-form dict that
    persists across ticks and events.
    """

    def __init__(self, client: Any, initial_state: dict[str, Any] | None = None) -> None:
        self.client = client
        self.state: dict[str, Any] = dict(initial_state or {})
        self._agent_id: str | None = None
        self._tick_count = 0
        self._running = False
        self._last_tick_at: float | None = None
        self._stop_requested = False

    @property
    def agent_id(self) -> str | None:
        """Agent ID resolved on start (``None`` if not registered)."""
        return self._agent_id

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def running(self) -> bool:
        return self._running

    @property
    def last_tick_at(self) -> float | None:
        """Unix time of the last completed tick."""
        return self._last_tick_at

    @property
    def is_stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self) -> None:
        """Ask the loop to stop after the current handler returns."""
        self._stop_requested = True

    def clear_stop_request(self) -> None:
        self._stop_requested = False

    def _record_tick(self) -> None:
        self._tick_count += 1
        self._last_tick_at = time.time()


def _default_error_handler(error: BaseException, source: str) -> None:
    logger.error("[AgentLoop] Error in %s: %s", source, error, exc_info=error)


class AgentLoop:
    """Autonomous agent loop: interval ticks plus WebSocket event routing."""

    def __init__(
        self,
        client: LoopClient,
        *,
        tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS,
        auto_connect: bool = True,
        immediate_first_tick: bool = True,
        initial_state: dict[str, Any] | None = None,
        on_tick: TickHandler | None = None,
        on_dm: EventHandler | None = None,
        on_mention: EventHandler | None = None,
        on_notification: EventHandler | None = None,
        on_unread: EventHandler | None = None,
        on_watch_update: EventHandler | None = None,
        on_error: ErrorHandler | None = None,
        on_start: LifecycleHandler | None = None,
        on_stop: LifecycleHandler | None = None,
    ) -> None:
        self._client = client
        self._tick_interval = tick_interval_ms / 1000.0
        self._auto_connect = auto_connect
        self._immediate_first_tick = immediate_first_tick
        self._on_tick = on_tick
        self._on_start = on_start
        self._on_stop = on_stop
        self._error_handler: ErrorHandler = on_error or _default_error_handler
        self._event_handlers: dict[str, EventHandler | None] = {
            "dm": on_dm,
            "mention": on_mention,
            "notification": on_notification,
            "unread": on_unread,
            "watch_update": on_watch_update,
        }

        self._ctx = LoopContext(client, initial_state)
        self._started = False
        self._tick_task: asyncio.Task[None] | None = None
        self._tick_in_progress = False
        self._stopping: asyncio.Future[None] | None = None
        self._bound_listeners: dict[str, Callable[[Any], None]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    # ---- Public API ----

    async def start(self) -> None:
        """Start the loop.

        1. Resolves the agent ID from the key store
        2. Connects the WebSocket (if ``auto_connect``)
        3. Registers event listeners
        4. Calls ``on_start``
        5. Starts the tick interval

        Raises:
            RuntimeError: If the loop is already running.
        """
        if self._stopping is not None:
            # The previous run must finish tearing down before a new one begins
            await asyncio.shield(self._stopping)
        if self._started:
            raise RuntimeError("AgentLoop is already running. Call stop() first.")
        self._started = True
        self._ctx._running = True
        self._ctx.clear_stop_request()

        try:
            self._ctx._agent_id = await self._client.get_agent_id()
        except Exception as exc:
            self._ctx._agent_id = None
            await self._report_error(exc, "start")

        if self._auto_connect:
            try:
                await self._client.connect()
            except Exception as exc:
                # Non-fatal: ticks keep running without live events
                await self._report_error(exc, "start")

        if not self._started:
            return
        self._register_listeners()

        if self._on_start is not None:
            await self._safe_call(self._on_start, "start", self._ctx)

        if self._on_tick is not None and self._started:
            self._tick_task = asyncio.ensure_future(self._tick_loop())

        logger.info(
            "[AgentLoop] Started (agent=%s, tick every %.1fs)",
            self._ctx.agent_id,
            self._tick_interval,
        )

    async def stop(self) -> None:
        """Stop the loop gracefully. Safe to call repeatedly or from a handler."""
        if not self._started:
            return
        self._started = False
        stopping = asyncio.get_running_loop().create_future()
        self._stopping = stopping
        try:
            await self._teardown()
        finally:
            self._stopping = None
            stopping.set_result(None)

        if self._on_stop is not None:
            await self._safe_call(self._on_stop, "stop", self._ctx)

    async def _teardown(self) -> None:
        task = self._tick_task
        self._tick_task = None
        # An in-flight tick is allowed to finish; only the wait is cancelled
        if task is not None and not task.done() and not self._tick_in_progress:
            task.cancel()

        self._remove_listeners()

        if self._auto_connect:
            try:
                await self._client.disconnect()
            except Exception as exc:
                await self._report_error(exc, "stop")

        self._ctx._running = False
        logger.info("[AgentLoop] Stopped after %d ticks", self._ctx.tick_count)

    @property
    def running(self) -> bool:
        """Whether the loop is currently running."""
        return self._started

    @property
    def tick_count(self) -> int:
        return self._ctx.tick_count

    @property
    def context(self) -> LoopContext:
        return self._ctx

    # ---- Ticks ----

    async def _tick_loop(self) -> None:
        if self._immediate_first_tick:
            await self._execute_tick()
        while self._started and self._tick_task is asyncio.current_task():
            await asyncio.sleep(self._tick_interval)
            await self._execute_tick()

    async def _execute_tick(self) -> None:
        if not self._started or self._on_tick is None:
            return
        self._tick_in_progress = True
        try:
            await self._safe_call(self._on_tick, "tick", self._ctx)
            # Counted even when the handler failed; the wrapper already reported it
            self._ctx._record_tick()
        finally:
            self._tick_in_progress = False
        if self._ctx.is_stop_requested:
            self._spawn(self.stop())

    # ---- Events ----

    def _register_listeners(self) -> None:
        for event, handler in self._event_handlers.items():
            if handler is None:
                continue
            listener = self._make_listener(event, handler)
            self._bound_listeners[event] = listener
            self._client.on(event, listener)

    def _make_listener(self, source: str, handler: EventHandler) -> Callable[[Any], None]:
        def listener(data: Any) -> None:
            self._spawn(self._dispatch_event(handler, data, source))

        return listener

    async def _dispatch_event(self, handler: EventHandler, data: Any, source: str) -> None:
        await self._safe_call(handler, source, self._ctx, data)
        if self._ctx.is_stop_requested:
            self._spawn(self.stop())

    def _remove_listeners(self) -> None:
        for event, listener in self._bound_listeners.items():
            self._client.off(event, listener)
        self._bound_listeners.clear()

    # ---- Isolation ----

    async def _safe_call(self, fn: Callable[..., Any], source: str, *args: Any) -> None:
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            await self._report_error(exc, source)

    async def _report_error(self, error: BaseException, source: str) -> None:
        try:
            result = self._error_handler(error, source)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.debug("[AgentLoop] on_error raised while handling %s", source, exc_info=True)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
