"""A minimal reducer-driven state store."""

import logging
from collections.abc import Callable
from typing import Any

from .messages import Message, message_type

logger = logging.getLogger(__name__)

INIT_MESSAGE_TYPE = "@@tsaga/INIT"

Listener = Callable[[Any], None]


class Store[S]:
    """Holds the single application state and funnels every change through ``reducer``.

    Args:
        reducer: Pure function ``(state | None, message) -> state``.
        initial_state: Optional state passed to the reducer with the init message.
    """

    def __init__(self, reducer: Callable[[S | None, Any], S], initial_state: S | None = None):
        self._reducer = reducer
        self._listeners: list[Listener] = []
        self._dispatching = False
        self._state: S = reducer(initial_state, Message(INIT_MESSAGE_TYPE))

    @property
    def reducer(self) -> Callable[[S | None, Any], S]:
        return self._reducer

    def get_state(self) -> S:
        return self._state

    def dispatch(self, message: Any) -> Any:
        """Apply ``message`` to the state, then notify listeners in subscription order.

        Raises:
            RuntimeError: If called from inside the reducer.
        """
        if self._dispatching:
            raise RuntimeError("Reducers may not dispatch messages.")

        self._dispatching = True
        try:
            self._state = self._reducer(self._state, message)
        finally:
            self._dispatching = False
        logger.debug("Dispatched %s", message_type(message))

        for listener in list(self._listeners):
            listener(message)
        return message

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener(message)`` after every dispatch; return an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            for i in range(len(self._listeners) - 1, -1, -1):
                if self._listeners[i] is listener:
                    self._listeners.pop(i)
                    return

        return unsubscribe
