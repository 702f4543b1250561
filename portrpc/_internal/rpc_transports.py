"""
Blocking Transports.

This module contains:
- RPCTransport Protocol (blocking send/recv endpoints)
- QueueTransport (thread or process channel over a pair of queues)
- ConnectionTransport (multiprocessing.connection.Connection)

These are channel objects, not adapters: hand any of them (or a raw
``multiprocessing.connection.Connection``) to :class:`~portrpc.PortRPC` and
the port layer runs a reader thread for it.
"""

from __future__ import annotations

import collections
import contextlib
import logging
import queue
import threading
from typing import (
    TYPE_CHECKING,
    Any,
    Protocol,
    runtime_checkable,
)

if TYPE_CHECKING:
    from multiprocessing.connection import Connection

logger = logging.getLogger(__name__)


@runtime_checkable
class RPCTransport(Protocol):
    """Protocol for blocking transport endpoints.

    ``send`` must be safe to call from the event loop thread while another
    thread is blocked in ``recv``. Implementations may also provide
    ``poll(timeout) -> bool`` so reader threads can stop without a message.
    """

    def send(self, obj: Any) -> None:
        """Send an object to the remote endpoint."""
        ...

    def recv(self) -> Any:
        """Receive an object from the remote endpoint. Blocks until available."""
        ...

    def close(self) -> None:
        """Close the transport. Further send/recv calls may fail."""
        ...


class QueueTransport:
    """Transport over a pair of queues (``queue.Queue`` or ``multiprocessing.Queue``)."""

    def __init__(self, send_queue: Any, recv_queue: Any) -> None:
        self._send_queue = send_queue
        self._recv_queue = recv_queue
        self._buffer: collections.deque[Any] = collections.deque()

    @classmethod
    def pair(cls) -> tuple[QueueTransport, QueueTransport]:
        """Create two in-process endpoints wired to each other."""
        a_to_b: queue.Queue[Any] = queue.Queue()
        b_to_a: queue.Queue[Any] = queue.Queue()
        return cls(a_to_b, b_to_a), cls(b_to_a, a_to_b)

    def send(self, obj: Any) -> None:
        self._send_queue.put(obj)

    def poll(self, timeout: float = 0.0) -> bool:
        if self._buffer:
            return True
        try:
            self._buffer.append(self._recv_queue.get(timeout=timeout))
        except queue.Empty:
            return False
        return True

    def recv(self) -> Any:
        if self._buffer:
            return self._buffer.popleft()
        return self._recv_queue.get()

    def close(self) -> None:
        with contextlib.suppress(Exception):
            self._send_queue.close()
        with contextlib.suppress(Exception):
            self._recv_queue.close()


class ConnectionTransport:
    """Transport using multiprocessing.connection.Connection (pipes, Unix sockets)."""

    def __init__(self, conn: Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def send(self, obj: Any) -> None:
        with self._lock:
            self._conn.send(obj)

    def poll(self, timeout: float = 0.0) -> bool:
        return self._conn.poll(timeout)

    def recv(self) -> Any:
        return self._conn.recv()

    def close(self) -> None:
        with contextlib.suppress(Exception):
            self._conn.close()
