"""Persistent realtime connection to the upstream server.

One transport at a time, publish/subscribe keyed by message type, and linear
backoff reconnection capped at ``max_reconnect_attempts``. Frames on the wire
are JSON objects shaped ``{"type": str, "data": any}``.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Protocol

import websockets
from pydantic import BaseModel, ValidationError

from app.schemas import MESSAGE_MODELS, MessageType

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]
ConnectionListener = Callable[[bool], Any]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Transport(Protocol):
    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Connector = Callable[[str], Awaitable[Transport]]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


def websocket_connector(open_timeout: float = 20.0) -> Connector:
    async def _connect(url: str) -> Transport:
        return await websockets.connect(
            url,
            open_timeout=open_timeout,
            ping_interval=20,
            ping_timeout=20,
            close_timeout=10,
        )

    return _connect


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PendingMessage:
    message_type: str
    payload: Any = None

    def encode(self) -> str:
        data = self.payload
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json")
        return json.dumps({"type": self.message_type, "data": data})


@dataclass
class ReconnectState:
    attempt: int = 0
    scheduled_at: datetime | None = None
    handle: TimerHandle | None = field(default=None, repr=False)

    def cancel(self) -> None:
        if self.handle is not None:
            self.handle.cancel()
        self.handle = None
        self.scheduled_at = None


async def _close_quietly(transport: Transport) -> None:
    try:
        await transport.close()
    except Exception:
        logger.debug("Transport close failed", exc_info=True)


class ConnectionManager:
    """Owns at most one live transport and recovers it after drops.

    ``send`` never blocks: while disconnected, messages are queued and flushed
    in FIFO order as soon as the next connection opens. Handlers registered
    with ``on`` run synchronously in registration order; handlers for known
    message types receive the validated payload model.
    """

    def __init__(
        self,
        url: str,
        *,
        connector: Connector | None = None,
        scheduler: Scheduler | None = None,
        reconnect_base_delay: float = 1.0,
        max_reconnect_attempts: int = 5,
        open_timeout: float = 20.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._url = url
        self._connector = connector or websocket_connector(open_timeout)
        self._scheduler = scheduler or LoopScheduler()
        self._clock = clock or _utc_now
        self.reconnect_base_delay = reconnect_base_delay
        self.max_reconnect_attempts = max_reconnect_attempts

        self._state = ConnectionState.DISCONNECTED
        self._transport: Transport | None = None
        self._connect_future: asyncio.Future[bool] | None = None
        self._reader_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._wakeup: asyncio.Event | None = None
        self._generation = 0

        self._pending: Deque[PendingMessage] = deque()
        self._handlers: Dict[str, List[Handler]] = {}
        self._listeners: List[ConnectionListener] = []
        self._reconnect = ReconnectState()
        self._background: set[asyncio.Task] = set()

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def reconnect_state(self) -> ReconnectState:
        return self._reconnect

    def handler_count(self, message_type: str | MessageType) -> int:
        return len(self._handlers.get(self._message_key(message_type), ()))

    # Connection lifecycle

    async def connect(self, url: str | None = None) -> bool:
        """Open the transport, or join the attempt already in flight.

        Returns ``True`` once connected and ``False`` if the attempt failed;
        network failures are never raised to the caller.
        """
        return await self._connect(url, from_timer=False)

    async def _connect(self, url: str | None, *, from_timer: bool) -> bool:
        if url:
            self._url = url
        if self._state is ConnectionState.CONNECTED:
            return True
        if self._connect_future is not None:
            return await asyncio.shield(self._connect_future)

        if not from_timer:
            self._reconnect.attempt = 0
        self._reconnect.cancel()

        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._connect_future = future
        self._state = ConnectionState.CONNECTING
        generation = self._generation
        target = self._url

        try:
            transport = await self._connector(target)
        except asyncio.CancelledError:
            if self._connect_future is future:
                self._connect_future = None
                self._state = ConnectionState.DISCONNECTED
            if not future.done():
                future.set_result(False)
            raise
        except Exception as exc:
            if generation != self._generation:
                return False
            logger.warning("Connection to %s failed: %s", target, exc)
            self._connect_future = None
            self._state = ConnectionState.DISCONNECTED
            future.set_result(False)
            self._notify_listeners(False)
            self._schedule_reconnect()
            return False

        if generation != self._generation:
            await _close_quietly(transport)
            return False

        self._connect_future = None
        self._transport = transport
        self._state = ConnectionState.CONNECTED
        self._reconnect.attempt = 0
        self._wakeup = asyncio.Event()
        logger.info("Connected to %s", target)

        try:
            await self._flush(transport)
        except Exception as exc:
            future.set_result(False)
            self._connection_lost(generation, exc)
            return False

        loop = asyncio.get_running_loop()
        self._reader_task = loop.create_task(self._read_loop(transport, generation), name="upstream-reader")
        self._writer_task = loop.create_task(self._write_loop(transport, generation), name="upstream-writer")
        future.set_result(True)
        self._notify_listeners(True)
        return True

    async def disconnect(self) -> None:
        """Tear down: cancel reconnects, close the transport, drop all registrations."""
        self._generation += 1
        self._reconnect.cancel()
        self._reconnect.attempt = 0

        future = self._connect_future
        self._connect_future = None
        if future is not None and not future.done():
            future.set_result(False)

        current = asyncio.current_task()
        tasks = [task for task in (self._reader_task, self._writer_task, *self._background) if task is not None]
        self._reader_task = None
        self._writer_task = None
        for task in tasks:
            if task is not current:
                task.cancel()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug("Background task failed during disconnect", exc_info=True)

        transport = self._transport
        self._transport = None
        previous = self._state
        self._state = ConnectionState.DISCONNECTED
        if transport is not None:
            await _close_quietly(transport)

        self._pending.clear()
        if previous is not ConnectionState.DISCONNECTED:
            self._notify_listeners(False)
        self._handlers.clear()
        self._listeners.clear()
        logger.info("Disconnected from %s", self._url)

    def _connection_lost(self, generation: int, error: BaseException | None) -> None:
        if generation != self._generation or self._state is not ConnectionState.CONNECTED:
            return
        self._generation += 1

        current = asyncio.current_task()
        for task in (self._reader_task, self._writer_task):
            if task is not None and task is not current:
                task.cancel()
        self._reader_task = None
        self._writer_task = None

        transport = self._transport
        self._transport = None
        self._state = ConnectionState.DISCONNECTED
        if transport is not None:
            self._spawn(_close_quietly(transport))

        logger.warning("Connection to %s lost: %s", self._url, error or "closed by peer")
        self._notify_listeners(False)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect.attempt >= self.max_reconnect_attempts:
            self._reconnect.cancel()
            logger.error(
                "Giving up on %s after %d reconnect attempts",
                self._url,
                self._reconnect.attempt,
            )
            return

        self._reconnect.attempt += 1
        delay = self.reconnect_base_delay * self._reconnect.attempt
        self._reconnect.scheduled_at = self._clock() + timedelta(seconds=delay)
        self._reconnect.handle = self._scheduler.call_later(delay, self._on_reconnect_due)
        logger.info(
            "Reconnecting to %s in %.1fs (attempt %d/%d)",
            self._url,
            delay,
            self._reconnect.attempt,
            self.max_reconnect_attempts,
        )

    def _on_reconnect_due(self) -> None:
        self._reconnect.handle = None
        self._reconnect.scheduled_at = None
        self._spawn(self._connect(None, from_timer=True))

    # Publish

    def send(self, message_type: str | MessageType, payload: Any = None) -> bool:
        """Queue a message for delivery; connects first when disconnected.

        Always returns ``True``: delivery is fire-and-forget, so callers cannot
        tell a transmitted message from a queued one.
        """
        message = PendingMessage(self._message_key(message_type), payload)
        message.encode()
        self._pending.append(message)

        if self._state is ConnectionState.CONNECTED:
            if self._wakeup is not None:
                self._wakeup.set()
        elif self._state is ConnectionState.DISCONNECTED:
            self._spawn(self.connect())
        return True

    async def _flush(self, transport: Transport) -> None:
        while self._pending:
            message = self._pending[0]
            await transport.send(message.encode())
            if self._pending and self._pending[0] is message:
                self._pending.popleft()

    async def _write_loop(self, transport: Transport, generation: int) -> None:
        wakeup = self._wakeup
        if wakeup is None:
            return
        try:
            while True:
                await self._flush(transport)
                wakeup.clear()
                if self._pending:
                    continue
                await wakeup.wait()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._connection_lost(generation, exc)

    # Subscribe

    def on(self, message_type: str | MessageType, handler: Handler) -> Callable[[], None]:
        if not callable(handler):
            raise TypeError("handler must be callable")
        key = self._message_key(message_type)
        self._handlers.setdefault(key, []).append(handler)

        def unsubscribe() -> None:
            self.off(key, handler)

        return unsubscribe

    def off(self, message_type: str | MessageType, handler: Handler) -> None:
        key = self._message_key(message_type)
        handlers = self._handlers.get(key)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._handlers[key]

    def on_connection_change(self, listener: ConnectionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    async def _read_loop(self, transport: Transport, generation: int) -> None:
        error: BaseException | None = None
        try:
            async for raw in transport:
                self._dispatch(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc
        self._connection_lost(generation, error)

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Dropping malformed frame: %.200r", raw)
            return
        message_type = frame.get("type") if isinstance(frame, dict) else None
        if not isinstance(message_type, str) or not message_type:
            logger.warning("Dropping frame without a message type: %.200r", raw)
            return

        handlers = list(self._handlers.get(message_type, ()))
        if not handlers:
            return

        payload: Any = frame.get("data")
        model = MESSAGE_MODELS.get(message_type)
        if model is not None:
            try:
                payload = model.model_validate(payload if payload is not None else {})
            except ValidationError as exc:
                logger.warning("Dropping %s frame with invalid payload: %s", message_type, exc)
                return

        for handler in handlers:
            try:
                result = handler(payload)
            except Exception:
                logger.exception("Handler for %s failed", message_type)
                continue
            if inspect.isawaitable(result):
                self._spawn(result)

    # Helpers

    def _notify_listeners(self, connected: bool) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(connected)
            except Exception:
                logger.exception("Connection listener failed")
                continue
            if inspect.isawaitable(result):
                self._spawn(result)

    def _spawn(self, awaitable: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed: %s", exc, exc_info=exc)

    @staticmethod
    def _message_key(message_type: str | MessageType) -> str:
        if isinstance(message_type, MessageType):
            return message_type.value
        if not isinstance(message_type, str) or not message_type.strip():
            raise ValueError("message_type must be a non-empty string")
        return message_type.strip()
