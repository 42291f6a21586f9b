"""Typed messages, message creators and the registry of pending ``take`` calls."""

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .cancellation import CancellationToken, SagaCancelledError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Message[P]:
    """A dispatched message: a type tag plus a payload."""

    type: str
    payload: P | None = None
    meta: Mapping[str, Any] | None = None


class MessageCreator[P]:
    """Builds messages of one type and recognizes them again.

    Example:

    >>> increment = MessageCreator[int]("INCREMENT")
    >>> message = increment(2)
    >>> message
    Message(type='INCREMENT', payload=2, meta=None)
    >>> increment.match(message)
    True
    """

    def __init__(self, type: str):
        self.type = type

    def __call__(self, payload: P | None = None, meta: Mapping[str, Any] | None = None) -> Message[P]:
        return Message(self.type, payload, meta)

    def match(self, message: Any) -> bool:
        return message_type(message) == self.type

    def __repr__(self) -> str:
        return f"MessageCreator({self.type!r})"


def message_creator_factory(
    prefix: str | None = None, separator: str = "/"
) -> Callable[[str], MessageCreator[Any]]:
    """Return a function creating message creators whose types share ``prefix``."""

    def create(type: str) -> MessageCreator[Any]:
        full_type = f"{prefix}{separator}{type}" if prefix else type
        return MessageCreator(full_type)

    return create


def message_type(message: Any) -> str | None:
    if isinstance(message, Mapping):
        return message.get("type")
    return getattr(message, "type", None)


def message_payload(message: Any) -> Any:
    if isinstance(message, Mapping):
        return message.get("payload")
    return getattr(message, "payload", None)


def is_type(message: Any, creator: MessageCreator[Any]) -> bool:
    """Return True if ``message`` was (or could have been) built by ``creator``."""
    return creator.match(message)


class AwaitingMessages:
    """Futures waiting for the next message matching a creator.

    Every waiter registered for a creator resolves with the payload of the
    first matching message passed to ``notify`` and is then dropped.
    """

    def __init__(self) -> None:
        self._waiters: list[tuple[MessageCreator[Any], asyncio.Future[Any]]] = []

    def __len__(self) -> int:
        return sum(1 for _, future in self._waiters if not future.done())

    def wait_for(
        self, creator: MessageCreator[Any], token: CancellationToken | None = None
    ) -> asyncio.Future[Any]:
        """Register a waiter for ``creator``; must be called from a running event loop.

        When ``token`` is canceled before a matching message arrives the returned
        future fails with ``SagaCancelledError``.
        """
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._waiters.append((creator, future))
        logger.debug("Waiting for %s", creator.type)

        if token is not None:

            def on_cancel() -> None:
                self._discard(future)
                if not future.done():
                    future.set_exception(SagaCancelledError(token))

            token.add_callback(on_cancel)
            future.add_done_callback(lambda _: token.remove_callback(on_cancel))

        return future

    def notify(self, message: Any) -> int:
        """Resolve every waiter matching ``message``; return how many were resolved."""
        matched = [future for creator, future in self._waiters if is_type(message, creator)]
        self._waiters = [
            (creator, future)
            for creator, future in self._waiters
            if not future.done() and not is_type(message, creator)
        ]
        if not matched:
            return 0

        payload = message_payload(message)
        resolved = 0
        for future in matched:
            if not future.done():
                future.set_result(payload)
                resolved += 1
        logger.debug("Resolved %d waiter(s) for %s", resolved, message_type(message))
        return resolved

    def _discard(self, future: asyncio.Future[Any]) -> None:
        self._waiters = [(c, f) for c, f in self._waiters if f is not future]
