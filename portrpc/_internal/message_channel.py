"""In-memory message channel.

A :class:`MessageChannel` owns two entangled :class:`MessagePort` endpoints.
Whatever is posted on one port is delivered, asynchronously and in order, to
the listeners of the other. A port buffers incoming messages until
:meth:`MessagePort.start` is called, and deliveries run on the event loop that
was running when the port was started.
"""

from __future__ import annotations

import asyncio
import collections
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class MessagePort:
    """One endpoint of a :class:`MessageChannel`. Objects are passed as-is."""

    def __init__(self) -> None:
        self._peer: MessagePort | None = None
        self._listeners: list[Listener] = []
        self._inbox: collections.deque[Any] = collections.deque()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._started = False
        self._closed = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def closed(self) -> bool:
        return self._closed

    def post_message(self, message: Any) -> None:
        peer = self._peer
        if self._closed or peer is None:
            logger.debug("Dropping message posted on a closed port")
            return
        peer._enqueue(message)

    def add_listener(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def start(self) -> None:
        """Begin delivering buffered and future messages on the running loop."""
        if self._started or self._closed:
            return
        self._loop = asyncio.get_running_loop()
        self._started = True
        for _ in range(len(self._inbox)):
            self._loop.call_soon(self._deliver_one)

    def close(self) -> None:
        """Disentangle both ports. Pending and future messages are dropped."""
        if self._closed:
            return
        self._closed = True
        self._inbox.clear()
        self._listeners.clear()
        peer, self._peer = self._peer, None
        if peer is not None:
            peer._peer = None

    def _enqueue(self, message: Any) -> None:
        if self._closed:
            return
        self._inbox.append(message)
        if self._started and self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._deliver_one)

    def _deliver_one(self) -> None:
        if self._closed or not self._inbox:
            return
        message = self._inbox.popleft()
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                logger.exception("MessagePort listener %r failed", listener)

    def __repr__(self) -> str:
        state = "closed" if self._closed else "started" if self._started else "idle"
        return f"<MessagePort {state} at {id(self):#x}>"


class MessageChannel:
    """A pair of entangled in-memory ports.

    Example:
        >>> channel = MessageChannel()
        >>> rpc1 = PortRPC(channel.port1)
        >>> rpc2 = PortRPC(channel.port2)
    """

    def __init__(self) -> None:
        self.port1 = MessagePort()
        self.port2 = MessagePort()
        self.port1._peer = self.port2
        self.port2._peer = self.port1

    def close(self) -> None:
        self.port1.close()
        self.port2.close()
