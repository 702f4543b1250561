"""
RPC Protocol & Core Logic.

This module contains:
- PortRPC (the RPC engine bound to one namespace on one port)
- RemoteFunctions (lazily memoised view of remote functions)
- the internal introspection namespace answering ``$names`` queries
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Iterable, Mapping
from types import TracebackType
from typing import Any, Callable, TypedDict

from ..config import (
    DEFAULT_NAMESPACE,
    DEFAULT_RETRY,
    DEFAULT_TIMEOUT,
    INTERNAL_NAMESPACE,
    CallOptions,
    RPCOptions,
)
from ..errors import DuplicateNameError, InvalidKeyError, RemoteCallError, RemoteTimeoutError
from .port_registry import PortRegistry
from .rpc_serialization import (
    CallMessage,
    ReturnMessage,
    error_to_message,
    is_call_message,
    is_return_message,
    make_call_message,
    make_return_message,
)

logger = logging.getLogger(__name__)

RemoteFn = Callable[..., "asyncio.Future[Any]"]

NAMES_FN = "$names"


class PendingCall(TypedDict):
    name: str
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle


# ---------------------------------------------------------------------------
# Remote function view
# ---------------------------------------------------------------------------


class RemoteFunctions:
    """Grouped access to remote functions.

    ``fns.add`` and ``fns["add"]`` both return the same memoised
    :meth:`PortRPC.use_remote_fn` wrapper, built on first access with the
    options given for that name.
    """

    def __init__(self, rpc: PortRPC, options: Mapping[str, CallOptions] | None = None) -> None:
        self._rpc = rpc
        self._options = dict(options or {})
        self._cache: dict[str, RemoteFn] = {}

    def __getitem__(self, name: Any) -> RemoteFn:
        if not isinstance(name, str):
            raise InvalidKeyError(name)
        fn = self._cache.get(name)
        if fn is None:
            fn = self._rpc.use_remote_fn(name, self._options.get(name))
            self._cache[name] = fn
        return fn

    def __getattr__(self, name: str) -> RemoteFn:
        if name.startswith("_"):
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")
        return self[name]

    def __repr__(self) -> str:
        return f"<RemoteFunctions ns={self._rpc.namespace!r} cached={sorted(self._cache)}>"


# ---------------------------------------------------------------------------
# PortRPC Class
# ---------------------------------------------------------------------------


class PortRPC:
    """Message based RPC over one duplex port.

    Each instance owns one namespace on its port; several instances with
    different namespaces can share a port. Must be constructed while an event
    loop is running: incoming messages and timeouts are handled on that loop.

    Example:
        >>> channel = MessageChannel()
        >>> rpc1 = PortRPC(channel.port1)
        >>> rpc2 = PortRPC(channel.port2)
        >>> rpc1.define_local_fn("add", lambda a, b: a + b)
        >>> await rpc2.call_remote_fn("add", [1, 2])
        3

    Raises:
        NamespaceConflictError: If the namespace is already live on the port.
        InvalidPortTypeError: If the port matches no supported shape.
    """

    def __init__(self, port: Any, options: RPCOptions | None = None) -> None:
        options = options or {}
        self._port = port
        self._namespace: str = options.get("namespace", DEFAULT_NAMESPACE)
        self._timeout: float = options.get("timeout", DEFAULT_TIMEOUT)
        self._retry: int = options.get("retry", DEFAULT_RETRY)
        self._loop = asyncio.get_running_loop()

        self._local_fns: dict[str, Callable[..., Any]] = {}
        self._pending: dict[int, PendingCall] = {}
        self._on_disposed_callbacks: list[Callable[[], None]] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._call_acc = 0
        self._disposed = False

        registry = PortRegistry.get_instance()
        self._adapter = registry.add_namespace(port, self._namespace, self)

        on_disposed = options.get("on_disposed")
        if on_disposed is not None:
            self.on_disposed(on_disposed)

        try:
            self._ensure_internal_rpc()
            if self._namespace == INTERNAL_NAMESPACE:
                self.define_local_fn(NAMES_FN, self._local_fn_names_of)
            self._unsubscribe = self._adapter.subscribe(self._on_message)
        except BaseException:
            registry.remove_namespace(port, self._namespace, self)
            raise
        logger.debug("PortRPC %r listening on %r (%s)", self._namespace, port, self._adapter.kind)

    # -- properties ---------------------------------------------------------

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def port(self) -> Any:
        return self._port

    # -- local functions ----------------------------------------------------

    def define_local_fn(self, name: str, fn: Callable[..., Any]) -> None:
        """Expose *fn* to the peer under *name*.

        Raises:
            DuplicateNameError: If *name* is already defined on this instance.
        """
        if name in self._local_fns:
            raise DuplicateNameError(name)
        self._local_fns[name] = fn

    def define_local_fns(self, fns: Mapping[str, Callable[..., Any]]) -> None:
        """Define several local functions in order, stopping at the first duplicate."""
        for name, fn in fns.items():
            self.define_local_fn(name, fn)

    def get_local_fn_names(self) -> list[str]:
        return list(self._local_fns)

    # -- remote functions ---------------------------------------------------

    def call_remote_fn(
        self,
        name: str,
        args: Iterable[Any] = (),
        options: CallOptions | None = None,
    ) -> asyncio.Future[Any]:
        """Call the peer's function *name* with positional *args*.

        Each attempt waits ``timeout`` seconds for its return. On expiry the
        call is re-issued with a new key while ``retry`` attempts remain.

        Returns:
            A future resolving to the remote return value. It fails with
            :class:`RemoteCallError` if the remote reports an error, or with
            :class:`RemoteTimeoutError` once every attempt has timed out.
        """
        options = options or {}
        timeout = options.get("timeout", self._timeout)
        retry = options.get("retry", self._retry)
        future: asyncio.Future[Any] = self._loop.create_future()
        self._issue_call(name, list(args), timeout, retry, future)
        return future

    def use_remote_fn(self, name: str, options: CallOptions | None = None) -> RemoteFn:
        """Return a callable forwarding its positional arguments to :meth:`call_remote_fn`."""

        def remote_fn(*args: Any) -> asyncio.Future[Any]:
            return self.call_remote_fn(name, args, options)

        remote_fn.__name__ = remote_fn.__qualname__ = name
        return remote_fn

    def use_remote_fns(self, options: Mapping[str, CallOptions] | None = None) -> RemoteFunctions:
        return RemoteFunctions(self, options)

    def get_remote_fn_names(self) -> asyncio.Future[list[str] | None]:
        """Ask the peer which functions it defines under this namespace.

        Resolves to ``None`` if no engine on the peer owns the namespace.
        """
        return self._ensure_internal_rpc().call_remote_fn(NAMES_FN, [self._namespace])

    # -- lifecycle ----------------------------------------------------------

    def on_disposed(self, callback: Callable[[], None]) -> None:
        """Run *callback* once on disposal, or right away if already disposed."""
        if self._disposed:
            callback()
            return
        self._on_disposed_callbacks.append(callback)

    def dispose(self) -> None:
        """Stop listening and free the namespace. The port itself is left open.

        Calls still pending are not cancelled; their timeouts keep running.
        """
        if self._disposed:
            return
        self._disposed = True
        self._unsubscribe()
        PortRegistry.get_instance().remove_namespace(self._port, self._namespace, self)
        logger.debug("PortRPC %r on %r disposed", self._namespace, self._port)

        callbacks, self._on_disposed_callbacks = self._on_disposed_callbacks, []
        for callback in callbacks:
            callback()

    def __enter__(self) -> PortRPC:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.dispose()

    def __repr__(self) -> str:
        state = "disposed" if self._disposed else "live"
        return f"<PortRPC ns={self._namespace!r} {state} pending={len(self._pending)}>"

    # -- port-level lookup --------------------------------------------------

    @classmethod
    def get(cls, port: Any, namespace: str = DEFAULT_NAMESPACE) -> PortRPC | None:
        """Return the live engine owning *namespace* on *port*, if any."""
        return PortRegistry.get_instance().get_rpc(port, namespace)

    @classmethod
    def ensure(cls, port: Any, namespace: str = DEFAULT_NAMESPACE) -> PortRPC:
        """Return the live engine owning *namespace* on *port*, creating one if needed."""
        rpc = cls.get(port, namespace)
        if rpc is None:
            rpc = cls(port, {"namespace": namespace})
        return rpc

    # -- internals ----------------------------------------------------------

    def _ensure_internal_rpc(self) -> PortRPC:
        return PortRPC.ensure(self._port, INTERNAL_NAMESPACE)

    def _local_fn_names_of(self, namespace: str) -> list[str] | None:
        rpc = PortRPC.get(self._port, namespace)
        return rpc.get_local_fn_names() if rpc is not None else None

    def _issue_call(
        self,
        name: str,
        args: list[Any],
        timeout: float,
        retry: int,
        future: asyncio.Future[Any],
    ) -> None:
        self._call_acc += 1
        key = self._call_acc
        timer = self._loop.call_later(
            timeout, self._on_call_timeout, key, name, args, timeout, retry, future
        )
        self._pending[key] = PendingCall(name=name, future=future, timer=timer)
        try:
            self._adapter.send(make_call_message(self._namespace, key, name, args))
        except Exception as exc:
            self._pending.pop(key, None)
            timer.cancel()
            logger.error("RPC send failed for %r (key=%s): %s", name, key, exc)
            if not future.done():
                future.set_exception(exc)

    def _on_call_timeout(
        self,
        key: int,
        name: str,
        args: list[Any],
        timeout: float,
        retry: int,
        future: asyncio.Future[Any],
    ) -> None:
        self._pending.pop(key, None)
        if future.done():
            return
        if retry > 0:
            logger.debug("Call %r (key=%s) timed out, %d retries left", name, key, retry)
            self._issue_call(name, args, timeout, retry - 1, future)
        else:
            logger.debug("Call %r (key=%s) timed out", name, key)
            future.set_exception(RemoteTimeoutError(name, timeout))

    def _on_message(self, message: Any) -> None:
        if self._disposed:
            return
        if is_call_message(message):
            if message.get("ns") == self._namespace:
                self._handle_call(message)
        elif is_return_message(message):
            if message.get("ns") == self._namespace:
                self._handle_return(message)
        else:
            logger.debug("Ignoring non-RPC message on %r", self._port)

    def _handle_call(self, message: CallMessage) -> None:
        name = message.get("name")
        key = message.get("key")
        fn = self._local_fns.get(name) if isinstance(name, str) else None
        if fn is None:
            self._reply(name, key, False, err=f'The function name "{name}" is not defined.')
            return
        task = self._loop.create_task(self._invoke_local_fn(fn, name, key, message.get("args")))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _invoke_local_fn(self, fn: Callable[..., Any], name: str, key: Any, args: Any) -> None:
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.exception("Local function %r failed (ns=%r, key=%s)", name, self._namespace, key)
            self._reply(name, key, False, err=error_to_message(exc))
            return
        self._reply(name, key, True, ret=result)

    def _reply(self, name: Any, key: Any, ok: bool, ret: Any = None, err: str | None = None) -> None:
        message: ReturnMessage = make_return_message(self._namespace, key, name, ok, ret, err)
        try:
            self._adapter.send(message)
        except Exception as exc:
            if not ok:
                logger.error("RPC response for %r (key=%s) could not be sent: %s", name, key, exc)
                return
            # Pickling failures surface as AttributeError or PicklingError, not only TypeError.
            logger.error("RPC response serialization failed for %r (key=%s): %s", name, key, exc)
            self._reply(name, key, False, err=f"Response serialization failed: {exc}")

    def _handle_return(self, message: ReturnMessage) -> None:
        key = message.get("key")
        pending = self._pending.pop(key, None) if isinstance(key, int) else None
        if pending is None:
            logger.debug("Ignoring return for unknown key %r in %r", key, self._namespace)
            return
        pending["timer"].cancel()
        future = pending["future"]
        if future.done():
            return
        name = message.get("name") or pending["name"]
        if message.get("ok"):
            future.set_result(message.get("ret"))
        else:
            future.set_exception(RemoteCallError(name, str(message.get("err"))))
