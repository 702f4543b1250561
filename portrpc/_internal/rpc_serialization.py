"""
RPC Message Protocol & Codecs.

This module contains:
1. Wire messages: CallMessage, ReturnMessage and their builders
2. Tag predicates: is_call_message, is_return_message
3. Codecs used by text-only ports: json_encode, json_decode, resolve_codec
"""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import Mapping
from typing import Any, Callable, Literal, TypedDict, Union

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Wire Messages
# ---------------------------------------------------------------------------


class _MessageBase(TypedDict):
    ns: str
    key: int
    name: str


class CallMessage(_MessageBase):
    type: Literal["call"]
    args: list[Any]


class _ReturnBase(_MessageBase):
    type: Literal["ret"]
    ok: bool


class ReturnMessage(_ReturnBase, total=False):
    ret: Any
    err: str


RPCMessage = Union[CallMessage, ReturnMessage]

Codec = Callable[[Any], Any]
CodecSpec = Union[Literal["json", "as-is"], Codec]


def make_call_message(ns: str, key: int, name: str, args: Any) -> CallMessage:
    return CallMessage(type="call", ns=ns, key=key, name=name, args=list(args))


def make_return_message(
    ns: str,
    key: int,
    name: str,
    ok: bool,
    ret: Any = None,
    err: str | None = None,
) -> ReturnMessage:
    if ok:
        return ReturnMessage(type="ret", ns=ns, key=key, name=name, ok=True, ret=ret)
    return ReturnMessage(type="ret", ns=ns, key=key, name=name, ok=False, err=err or "")


def is_call_message(value: Any) -> bool:
    """Return True if *value* carries the ``"call"`` tag. No other checks are made."""
    return isinstance(value, Mapping) and value.get("type") == "call"


def is_return_message(value: Any) -> bool:
    """Return True if *value* carries the ``"ret"`` tag. No other checks are made."""
    return isinstance(value, Mapping) and value.get("type") == "ret"


def error_to_message(exc: BaseException) -> str:
    """Coerce a local failure into the string carried by a failed return."""
    message = str(exc)
    return message if message else type(exc).__name__


# ---------------------------------------------------------------------------
# Codecs
# ---------------------------------------------------------------------------


def _json_default(obj: Any) -> Any:
    """Handle non-JSON types during serialization."""
    if isinstance(obj, (bytes, bytearray)):
        return {"__portrpc_bytes__": True, "data": base64.b64encode(obj).decode("ascii")}
    if isinstance(obj, (set, frozenset)):
        return list(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _json_object_hook(dct: dict[str, Any]) -> Any:
    if dct.get("__portrpc_bytes__"):
        return base64.b64decode(dct["data"])
    return dct


def json_encode(obj: Any) -> str:
    return json.dumps(obj, default=_json_default)


def json_decode(data: str | bytes) -> Any:
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8")
    return json.loads(data, object_hook=_json_object_hook)


def as_is(obj: Any) -> Any:
    return obj


def resolve_codec(spec: CodecSpec, *, decode: bool = False) -> Codec:
    """Turn a codec spec (``"json"``, ``"as-is"`` or a callable) into a callable.

    Args:
        spec: The codec selection supplied by the caller.
        decode: Select the decoding half of the ``"json"`` codec.

    Raises:
        ValueError: If *spec* is neither a known name nor callable.
    """
    if spec == "json":
        return json_decode if decode else json_encode
    if spec == "as-is":
        return as_is
    if callable(spec):
        return spec
    raise ValueError(f"Unknown codec {spec!r}. Valid codecs are: 'json', 'as-is' or a callable.")
