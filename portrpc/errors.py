"""
Exception hierarchy for portrpc.

Error Hierarchy:
- PortRPCError (base)
  - DuplicateNameError: local function name registered twice
  - NamespaceConflictError: namespace already owned by a live engine on the port
  - InvalidPortTypeError: channel object matches no supported shape
  - InvalidKeyError: non-string lookup on a remote function view
  - RemoteCallError: the remote replied with a failed return
  - RemoteTimeoutError: no return arrived and no retries remain

Registration and construction errors are raised synchronously. Remote
failures and timeouts are set on the future returned by the call.
"""

from __future__ import annotations

from typing import Any


class PortRPCError(Exception):
    """Base class for all portrpc errors."""


class DuplicateNameError(PortRPCError, ValueError):
    def __init__(self, name: str) -> None:
        super().__init__(f'The function name "{name}" has already been defined.')
        self.name = name


class NamespaceConflictError(PortRPCError, ValueError):
    def __init__(self, namespace: str, port: Any) -> None:
        super().__init__(
            f'The namespace "{namespace}" has already been used by another '
            f"RPC instance on this port ({port!r})."
        )
        self.namespace = namespace
        self.port = port


class InvalidPortTypeError(PortRPCError, TypeError):
    def __init__(self, port: Any) -> None:
        super().__init__(
            f"Invalid port type: {type(port).__name__}. Expected a MessagePort, "
            "a websockets connection, a CustomPort, an object with send()/recv(), "
            "or an object with send()/subscribe()/unsubscribe()."
        )
        self.port = port


class InvalidKeyError(PortRPCError, TypeError):
    def __init__(self, key: Any) -> None:
        super().__init__(f"The name is not a string: {key!r}")
        self.key = key


class RemoteCallError(PortRPCError):
    """The remote side failed to run the function.

    Attributes:
        function_name: Name of the remote function that was called.
        remote_message: Error string reported by the remote side.
    """

    def __init__(self, function_name: str, remote_message: str) -> None:
        super().__init__(
            f'The remote threw an error when calling the function "{function_name}": '
            f"{remote_message}"
        )
        self.function_name = function_name
        self.remote_message = remote_message


class RemoteTimeoutError(PortRPCError, TimeoutError):
    def __init__(self, function_name: str, timeout: float) -> None:
        super().__init__(
            f'The call of the remote function "{function_name}" timed out '
            f"after {timeout:g}s."
        )
        self.function_name = function_name
        self.timeout = timeout
