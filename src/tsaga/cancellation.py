from collections.abc import Callable


class SagaCancelledError(Exception):
    """Raised by an effect operation whose cancellation token has been set."""

    __match_args__ = ("token",)

    def __init__(self, token: "CancellationToken | None" = None):
        super().__init__("Saga has been cancelled")
        self.token = token


class CancellationToken:
    """Cooperative cancel flag shared by an environment and its attached children.

    The token never interrupts running code. It is only consulted at effect
    checkpoints, and by suspended ``take`` calls through callbacks.
    """

    def __init__(self) -> None:
        self._canceled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def canceled(self) -> bool:
        return self._canceled

    def cancel(self) -> None:
        """Mark the token as canceled. Calling it again is a no-op."""
        if self._canceled:
            return
        self._canceled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once when the token is canceled.

        If the token is already canceled the callback runs immediately.
        """
        if self._canceled:
            callback()
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        for i in range(len(self._callbacks) - 1, -1, -1):
            if self._callbacks[i] is callback:
                self._callbacks.pop(i)
                return

    def raise_if_canceled(self) -> None:
        if self._canceled:
            raise SagaCancelledError(self)

    def __repr__(self) -> str:
        return f"CancellationToken(canceled={self._canceled})"
