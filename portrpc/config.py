from __future__ import annotations

from typing import Callable, TypedDict

DEFAULT_NAMESPACE = "#default"
"""Namespace used by engines constructed without an explicit one."""

INTERNAL_NAMESPACE = "#internal"
"""Reserved namespace of the per-port introspection engine."""

DEFAULT_TIMEOUT = 3.0
"""Seconds a remote call waits for its return before timing out."""

DEFAULT_RETRY = 0


class RPCOptions(TypedDict, total=False):
    """Configuration for a :class:`~portrpc.PortRPC` engine."""

    namespace: str
    """Logical sub-channel; at most one live engine per namespace on a port."""

    timeout: float
    """Default per-attempt timeout in seconds for remote calls."""

    retry: int
    """Default number of automatic re-issues after a timeout."""

    on_disposed: Callable[[], None]
    """Callback fired once when the engine is disposed."""


class CallOptions(TypedDict, total=False):
    """Per-call overrides for :meth:`~portrpc.PortRPC.call_remote_fn`."""

    timeout: float
    retry: int
