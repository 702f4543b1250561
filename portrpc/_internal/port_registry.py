"""Per-port namespace registry.

Every channel object gets one :class:`PortState`: the live engine of each
namespace and the adapter chosen for the channel. The side table is keyed
weakly and its values only reference engines and adapters weakly, so the
registry never keeps a channel alive; the engines themselves hold the adapter.
Channels that cannot be weakly referenced are pinned by identity until
:meth:`PortRegistry.release` is called.
"""

from __future__ import annotations

import logging
import weakref
from typing import TYPE_CHECKING, Any

from ..errors import NamespaceConflictError
from .ports import classify_port

if TYPE_CHECKING:
    from ..interfaces import PortAdapter
    from .rpc_protocol import PortRPC

logger = logging.getLogger(__name__)


class PortState:
    def __init__(self, adapter: PortAdapter) -> None:
        self.namespaces: weakref.WeakValueDictionary[str, PortRPC] = weakref.WeakValueDictionary()
        self._adapter_ref = weakref.ref(adapter)

    def adapter_for(self, port: Any) -> PortAdapter:
        """Return the port's adapter, classifying again if every holder is gone."""
        adapter = self._adapter_ref()
        if adapter is None:
            adapter = classify_port(port)
            self._adapter_ref = weakref.ref(adapter)
        return adapter


class PortRegistry:
    """Singleton side table from channel objects to their :class:`PortState`."""

    _instance: PortRegistry | None = None

    def __init__(self) -> None:
        self._states: weakref.WeakKeyDictionary[Any, PortState] = weakref.WeakKeyDictionary()
        self._pinned: dict[int, tuple[Any, PortState]] = {}

    @classmethod
    def get_instance(cls) -> PortRegistry:
        """Return the singleton instance, creating it if necessary."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def lookup(self, port: Any) -> PortState | None:
        try:
            return self._states.get(port)
        except TypeError:
            pinned = self._pinned.get(id(port))
            return pinned[1] if pinned is not None else None

    def add_namespace(self, port: Any, namespace: str, rpc: PortRPC) -> PortAdapter:
        """Register *rpc* as the owner of *namespace* and return the port's adapter.

        Raises:
            InvalidPortTypeError: If *port* is not a supported channel.
            NamespaceConflictError: If *namespace* already has a live engine.
        """
        state = self.lookup(port)
        if state is None:
            adapter = classify_port(port)
            state = PortState(adapter)
            try:
                self._states[port] = state
            except TypeError:
                logger.debug("%r cannot be weakly referenced; pinning it until released", port)
                self._pinned[id(port)] = (port, state)
        else:
            adapter = state.adapter_for(port)
        if namespace in state.namespaces:
            raise NamespaceConflictError(namespace, port)
        state.namespaces[namespace] = rpc
        return adapter

    def remove_namespace(self, port: Any, namespace: str, rpc: PortRPC) -> None:
        state = self.lookup(port)
        if state is not None and state.namespaces.get(namespace) is rpc:
            del state.namespaces[namespace]

    def get_rpc(self, port: Any, namespace: str) -> PortRPC | None:
        state = self.lookup(port)
        return state.namespaces.get(namespace) if state is not None else None

    def release(self, port: Any) -> None:
        """Forget *port* entirely. Live engines on it keep working but lose their entries."""
        try:
            self._states.pop(port, None)
        except TypeError:
            self._pinned.pop(id(port), None)

    def clear(self) -> None:
        """Remove all port states (useful for tests)."""
        self._states.clear()
        self._pinned.clear()
