"""
Port Adapter Layer.

This module contains:
- classify_port: picks one adapter per channel object, richest shape first
- MessagePortAdapter: in-memory ports that need ``start()`` before delivering
- WebSocketAdapter: text-only websockets connections, JSON encoded
- CustomPort / CustomPortAdapter: caller-supplied callables and codecs
- TransportAdapter: blocking ``send``/``recv`` endpoints read by a thread
- GenericPortAdapter: anything with ``send``/``subscribe``/``unsubscribe``
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable

from websockets.asyncio.connection import Connection as WebSocketConnection
from websockets.exceptions import ConnectionClosed

from ..errors import InvalidPortTypeError
from ..interfaces import MessageHandler, PortAdapter, Unsubscribe
from .message_channel import MessagePort
from .rpc_serialization import CodecSpec, json_decode, json_encode, resolve_codec

logger = logging.getLogger(__name__)


def _has_methods(obj: Any, *names: str) -> bool:
    return all(callable(getattr(obj, name, None)) for name in names)


# ---------------------------------------------------------------------------
# Object-capable ports
# ---------------------------------------------------------------------------


class MessagePortAdapter:
    kind = "message-port"

    def __init__(self, port: MessagePort) -> None:
        self._port = port
        self._activated = False

    def send(self, message: Any) -> None:
        self._port.post_message(message)

    def subscribe(self, handler: MessageHandler) -> Unsubscribe:
        if not self._activated:
            self._port.start()
            self._activated = True
        self._port.add_listener(handler)
        return lambda: self._port.remove_listener(handler)


class GenericPortAdapter:
    kind = "generic"

    def __init__(self, port: Any) -> None:
        self._port = port

    def send(self, message: Any) -> None:
        self._port.send(message)

    def subscribe(self, handler: MessageHandler) -> Unsubscribe:
        self._port.subscribe(handler)
        return lambda: self._port.unsubscribe(handler)


class TransportAdapter:
    """Fan-out reader for blocking transports.

    One daemon thread per channel calls ``recv()`` and hands every message to
    each subscriber on the subscriber's own event loop. When the transport
    offers ``poll(timeout)`` the thread exits within one poll interval after
    the last subscriber leaves; otherwise it exits after the next message. A
    message read while nobody is subscribed is held for the next subscriber.
    """

    kind = "transport"
    POLL_INTERVAL = 0.05

    def __init__(self, transport: Any) -> None:
        self._transport = transport
        self._lock = threading.Lock()
        self._subscribers: dict[int, tuple[MessageHandler, asyncio.AbstractEventLoop]] = {}
        self._next_token = 0
        self._thread: threading.Thread | None = None
        self._held: list[Any] = []

    def send(self, message: Any) -> None:
        self._transport.send(message)

    def subscribe(self, handler: MessageHandler) -> Unsubscribe:
        loop = asyncio.get_running_loop()
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = (handler, loop)
            for message in self._held:
                loop.call_soon(handler, message)
            self._held = []
            if self._thread is None:
                self._thread = threading.Thread(
                    target=self._recv_thread,
                    name=f"portrpc-reader-{type(self._transport).__name__}",
                    daemon=True,
                )
                self._thread.start()
                logger.debug("Started reader thread for %r", self._transport)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    def _recv_thread(self) -> None:
        poll = getattr(self._transport, "poll", None)
        while True:
            with self._lock:
                if not self._subscribers:
                    self._thread = None
                    logger.debug("Reader thread for %r stopping", self._transport)
                    return
            try:
                if callable(poll) and not poll(self.POLL_INTERVAL):
                    continue
                message = self._transport.recv()
            except Exception as exc:
                if isinstance(exc, (EOFError, OSError)):
                    logger.debug("Transport %r stopped delivering: %s", self._transport, exc)
                else:
                    logger.error("Reader thread for %r failed: %s", self._transport, exc)
                with self._lock:
                    self._thread = None
                return

            with self._lock:
                targets = list(self._subscribers.values())
                if not targets:
                    self._held.append(message)
                    self._thread = None
                    logger.debug("Reader thread for %r stopping; holding one message", self._transport)
                    return
            for handler, loop in targets:
                try:
                    loop.call_soon_threadsafe(handler, message)
                except RuntimeError:
                    logger.debug("Dropping message for a closed event loop")


# ---------------------------------------------------------------------------
# Text-only ports
# ---------------------------------------------------------------------------


class WebSocketAdapter:
    """JSON over a ``websockets`` asyncio connection.

    A single reader task consumes frames and fans them out, because a
    connection allows only one concurrent ``recv``. Writes go through an
    outbox so that ``send`` stays synchronous and ordered. The writer drains
    and exits once the last subscriber leaves or the connection closes.
    """

    kind = "websocket"

    def __init__(self, conn: WebSocketConnection) -> None:
        self._conn = conn
        self._handlers: list[MessageHandler] = []
        self._reader: asyncio.Task[None] | None = None
        self._writer: asyncio.Task[None] | None = None
        self._outbox: asyncio.Queue[str | None] | None = None

    def send(self, message: Any) -> None:
        data = json_encode(message)
        if self._outbox is None:
            self._outbox = asyncio.Queue()
            self._writer = asyncio.get_running_loop().create_task(self._write_loop(self._outbox))
        self._outbox.put_nowait(data)

    def subscribe(self, handler: MessageHandler) -> Unsubscribe:
        self._handlers.append(handler)
        if self._reader is None:
            self._reader = asyncio.get_running_loop().create_task(self._read_loop())

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)
            if self._handlers:
                return
            if self._reader is not None:
                self._reader.cancel()
                self._reader = None
            self._stop_writer()

        return unsubscribe

    async def _read_loop(self) -> None:
        try:
            async for frame in self._conn:
                try:
                    message = json_decode(frame)
                except ValueError as exc:
                    logger.warning("Dropping undecodable websocket frame: %s", exc)
                    continue
                for handler in list(self._handlers):
                    handler(message)
        except ConnectionClosed as exc:
            logger.debug("WebSocket closed while reading: %s", exc)

    def _stop_writer(self) -> None:
        if self._outbox is not None:
            self._outbox.put_nowait(None)
        self._outbox = None
        self._writer = None

    async def _write_loop(self, outbox: asyncio.Queue[str | None]) -> None:
        try:
            while True:
                data = await outbox.get()
                if data is None:
                    return
                await self._conn.send(data)
        except ConnectionClosed as exc:
            logger.debug("WebSocket closed while writing: %s", exc)
        finally:
            if self._outbox is outbox:
                self._outbox = None
                self._writer = None


class CustomPort:
    """Caller-supplied port built from plain callables.

    Args:
        post_message: Sends one (already encoded) payload.
        add_listener: Registers a callable receiving raw incoming payloads.
        remove_listener: Unregisters a callable passed to ``add_listener``.
        serializer: ``"json"`` (default), ``"as-is"``, or a callable.
        deserializer: ``"json"`` (default), ``"as-is"``, or a callable.
    """

    def __init__(
        self,
        post_message: Callable[[Any], None],
        add_listener: Callable[[Callable[[Any], None]], None],
        remove_listener: Callable[[Callable[[Any], None]], None],
        *,
        serializer: CodecSpec = "json",
        deserializer: CodecSpec = "json",
    ) -> None:
        self.post_message = post_message
        self.add_listener = add_listener
        self.remove_listener = remove_listener
        self.serializer = resolve_codec(serializer)
        self.deserializer = resolve_codec(deserializer, decode=True)


class CustomPortAdapter:
    kind = "custom"

    def __init__(self, port: CustomPort) -> None:
        self._port = port

    def send(self, message: Any) -> None:
        self._port.post_message(self._port.serializer(message))

    def subscribe(self, handler: MessageHandler) -> Unsubscribe:
        deserializer = self._port.deserializer

        def listener(data: Any) -> None:
            try:
                message = deserializer(data)
            except (TypeError, ValueError) as exc:
                logger.warning("Dropping undecodable message on %r: %s", self._port, exc)
                return
            handler(message)

        self._port.add_listener(listener)
        return lambda: self._port.remove_listener(listener)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify_port(port: Any) -> PortAdapter:
    """Select the adapter for *port*. Checked richest shape first.

    Raises:
        InvalidPortTypeError: If *port* matches none of the supported shapes.
    """
    adapter: PortAdapter
    if isinstance(port, MessagePort):
        adapter = MessagePortAdapter(port)
    elif isinstance(port, WebSocketConnection):
        adapter = WebSocketAdapter(port)
    elif isinstance(port, CustomPort):
        adapter = CustomPortAdapter(port)
    elif _has_methods(port, "send", "recv"):
        adapter = TransportAdapter(port)
    elif _has_methods(port, "send", "subscribe", "unsubscribe"):
        adapter = GenericPortAdapter(port)
    else:
        raise InvalidPortTypeError(port)
    logger.debug("Classified %r as a %s port", port, adapter.kind)
    return adapter
