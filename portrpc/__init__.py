"""
portrpc - Message based remote procedure calls over any duplex port.

portrpc lets two endpoints connected by an asynchronous message channel expose
named functions to one another and call them as if they were local. It adds
call semantics on top of a transport you already have; it does not provide
the transport.

Key Features:
    - Call/return protocol with per-call timeout and automatic retry
    - Several independent namespaces multiplexed over one port
    - Introspection of the functions the peer currently exposes
    - One engine for in-memory ports, thread and process pipes,
      websockets connections and custom ports

Basic Usage:
    >>> import asyncio
    >>> import portrpc
    >>> async def main():
    ...     channel = portrpc.MessageChannel()
    ...     rpc1 = portrpc.PortRPC(channel.port1)
    ...     rpc2 = portrpc.PortRPC(channel.port2)
    ...     rpc1.define_local_fn("add", lambda a, b: a + b)
    ...     assert await rpc2.call_remote_fn("add", [1, 2]) == 3
    ...     fns = rpc2.use_remote_fns()
    ...     assert await fns.add(3, 4) == 7
    ...     rpc1.dispose()
    ...     rpc2.dispose()
    ...     channel.close()
    >>> asyncio.run(main())
"""

from ._internal.message_channel import MessageChannel, MessagePort
from ._internal.port_registry import PortRegistry
from ._internal.ports import CustomPort
from ._internal.rpc_protocol import PortRPC, RemoteFunctions
from ._internal.rpc_transports import ConnectionTransport, QueueTransport, RPCTransport
from .config import DEFAULT_NAMESPACE, DEFAULT_TIMEOUT, INTERNAL_NAMESPACE, CallOptions, RPCOptions
from .errors import (
    DuplicateNameError,
    InvalidKeyError,
    InvalidPortTypeError,
    NamespaceConflictError,
    PortRPCError,
    RemoteCallError,
    RemoteTimeoutError,
)

__version__ = "0.1.0"

__all__ = [
    "PortRPC",
    "RemoteFunctions",
    "RPCOptions",
    "CallOptions",
    "DEFAULT_NAMESPACE",
    "DEFAULT_TIMEOUT",
    "INTERNAL_NAMESPACE",
    "MessageChannel",
    "MessagePort",
    "CustomPort",
    "RPCTransport",
    "QueueTransport",
    "ConnectionTransport",
    "PortRPCError",
    "DuplicateNameError",
    "NamespaceConflictError",
    "InvalidPortTypeError",
    "InvalidKeyError",
    "RemoteCallError",
    "RemoteTimeoutError",
    "release_port",
]


def release_port(port: object) -> None:
    """Forget every namespace registered on *port* (for ports that cannot be weakly referenced)."""
    PortRegistry.get_instance().release(port)
