"""Public port protocols for portrpc.

These interfaces define the contract between the RPC engine and the channels
it runs over. They enable structural typing so channels can be implemented
without inheriting from concrete base classes.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

MessageHandler = Callable[[Any], None]
Unsubscribe = Callable[[], None]


@runtime_checkable
class SubscribablePort(Protocol):
    """The generic channel shape: push-style delivery to registered handlers.

    Messages are passed through unmodified, so the channel must be able to
    carry Python objects (dicts, lists, numbers, strings).
    """

    def send(self, message: Any) -> None:
        """Send one message to the peer."""

    def subscribe(self, handler: MessageHandler) -> None:
        """Start calling *handler* with every incoming message."""

    def unsubscribe(self, handler: MessageHandler) -> None:
        """Stop calling *handler*."""


@runtime_checkable
class PortAdapter(Protocol):
    """Uniform view over a classified channel, used by the RPC engine."""

    @property
    def kind(self) -> str:
        """Short name of the channel shape (e.g. ``"message-port"``)."""

    def send(self, message: Any) -> None:
        """Encode (if the channel is text-only) and send one message.

        Raises:
            TypeError, ValueError: If the message cannot be encoded.
        """

    def subscribe(self, handler: MessageHandler) -> Unsubscribe:
        """Deliver decoded incoming messages to *handler* until unsubscribed.

        Must be called with the event loop that should run *handler* running.
        """
