import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

from ._typing import describe_target
from .cancellation import CancellationToken, SagaCancelledError
from .effects import BoundEffect, Task, as_effect
from .messages import AwaitingMessages, MessageCreator

logger = logging.getLogger(__name__)


class Environment[S]:
    """Production effect environment: performs effects against a real store.

    Every operation is a cancellation checkpoint. Once the bound token is
    canceled, the next operation raises ``SagaCancelledError``.

    Args:
        store: Object providing ``get_state``, ``dispatch`` and ``subscribe``.
        cancellation_token: Token gating this environment and its attached children.
        awaiting: Registry of pending ``take`` calls. Child environments share
            their parent's registry; a root environment creates one and
            subscribes it to the store.
    """

    def __init__(
        self,
        store: Any,
        cancellation_token: CancellationToken | None = None,
        *,
        awaiting: AwaitingMessages | None = None,
    ):
        self._unsubscribe: Callable[[], None] | None = None
        if awaiting is None:
            awaiting = AwaitingMessages()
            self._unsubscribe = store.subscribe(awaiting.notify)
        self._store = store
        self._cancellation_token = cancellation_token
        self._awaiting = awaiting

    @property
    def store(self) -> Any:
        return self._store

    @property
    def cancellation_token(self) -> CancellationToken | None:
        return self._cancellation_token

    def _checkpoint(self) -> None:
        if self._cancellation_token is not None:
            self._cancellation_token.raise_if_canceled()

    def dispatch(self, message: Any) -> Any:
        self._checkpoint()
        self._store.dispatch(message)
        return message

    def select[T](self, selector: Callable[..., T], *args: Any) -> T:
        self._checkpoint()
        return selector(self._store.get_state(), *args)

    def call[T](self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        self._checkpoint()
        return fn(*args, **kwargs)

    def run_function[T](self, fn: Callable[..., T], *args: Any) -> T:
        self._checkpoint()
        return fn(self, *args)

    def run_effect[T](self, effect: BoundEffect[T]) -> T:
        self._checkpoint()
        return effect.run(self)

    def run(self, target: Any, *args: Any) -> Any:
        return self.run_effect(as_effect(target, args))

    def spawn(self, target: Any, *args: Any) -> Task[Any]:
        effect = as_effect(target, args)
        child_env, token = self.create_detached_child_environment()
        result = effect.run(child_env)
        if inspect.isawaitable(result):
            result = asyncio.ensure_future(result)
            result.add_done_callback(log_task_outcome)
        logger.debug("Spawned %s", describe_target(effect))
        return Task(result, token)

    async def take[P](self, creator: MessageCreator[P]) -> P:
        self._checkpoint()
        payload = await self._awaiting.wait_for(creator, self._cancellation_token)
        self._checkpoint()
        return payload

    def create_detached_child_environment(self) -> tuple["Environment[S]", CancellationToken]:
        """Create a child environment with its own token, for work that outlives cancellation."""
        self._checkpoint()
        token = CancellationToken()
        child_env = Environment(self._store, token, awaiting=self._awaiting)
        return child_env, token

    def close(self) -> None:
        """Detach the ``take`` registry this environment subscribed to the store.

        Only a root environment owns the subscription; closing a child is a no-op.
        """
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None


def log_task_outcome(task: "asyncio.Future[Any]") -> None:
    """Done callback for detached asyncio tasks; marks their exception as retrieved."""
    if task.cancelled():
        return
    error = task.exception()
    if isinstance(error, SagaCancelledError):
        logger.debug("Spawned task stopped after cancellation")
    elif error is not None:
        logger.error("Spawned task failed", exc_info=error)
