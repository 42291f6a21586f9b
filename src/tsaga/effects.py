"""Effect, task and saga contracts shared by the runtime and the test harness."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal, Protocol, runtime_checkable

from .cancellation import CancellationToken
from .messages import MessageCreator

logger = logging.getLogger(__name__)

SagaMode = Literal["every", "latest"]
SAGA_MODES: tuple[SagaMode, ...] = ("every", "latest")


@runtime_checkable
class BoundEffect[R](Protocol):
    """Anything that knows how to run itself against a saga environment.

    Bound effects carry their own arguments, so reusable effect logic can be
    packaged as an object and handed to ``run`` or ``spawn``::

        @dataclass(frozen=True)
        class SaveTitle:
            title: str

            def run(self, env):
                return env.dispatch(set_title(self.title))
    """

    def run(self, env: "SagaEnvironment[Any]") -> R: ...


@dataclass(frozen=True)
class FunctionEffect[R]:
    """A plain function taking the environment first, bound to its remaining arguments."""

    fn: Callable[..., R]
    args: tuple[Any, ...] = ()

    def run(self, env: "SagaEnvironment[Any]") -> R:
        return self.fn(env, *self.args)


def as_effect(target: Any, args: tuple[Any, ...] = ()) -> BoundEffect[Any]:
    """Normalize a function or bound effect into a runnable effect variant.

    Raises:
        TypeError: If ``target`` is neither, or if arguments are passed along
            with a bound effect.
    """
    if isinstance(target, FunctionEffect):
        if args:
            raise TypeError("FunctionEffect already carries its arguments")
        return target
    if isinstance(target, BoundEffect) and not isinstance(target, type):
        if args:
            raise TypeError(
                f"Bound effect {target!r} carries its own arguments, got extra {args!r}"
            )
        return target
    if callable(target):
        return FunctionEffect(target, tuple(args))
    raise TypeError(f"Expected a function or a bound effect, got {target!r}")


@dataclass(frozen=True)
class Task[T]:
    """Handle on a spawned, detached unit of work.

    ``result`` is the value returned by the spawned target, or the scheduled
    ``asyncio.Task`` when the target is asynchronous.
    """

    result: T
    token: CancellationToken | None = None

    @property
    def canceled(self) -> bool:
        return self.token is not None and self.token.canceled

    def cancel(self) -> None:
        if self.token is None:
            logger.debug("Ignoring cancel on a task without cancellation token")
            return
        self.token.cancel()


class SagaEnvironment[S](Protocol):
    """The operations available to saga code."""

    def dispatch(self, message: Any) -> Any:
        """Dispatch a message to the store and return it."""
        ...

    def select[T](self, selector: Callable[..., T], *args: Any) -> T:
        """Apply ``selector`` to the current state followed by ``args``."""
        ...

    def call[T](self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call a function. Exists so cancellation and mocking can intercept it."""
        ...

    def run_function[T](self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(env, *args)`` attached to this environment."""
        ...

    def run_effect[T](self, effect: BoundEffect[T]) -> T:
        """Run a bound effect attached to this environment."""
        ...

    def run(self, target: Any, *args: Any) -> Any:
        """Run a function or bound effect attached to this environment.

        Cancelling the parent also cancels the child at its next effect.
        """
        ...

    def spawn(self, target: Any, *args: Any) -> Task[Any]:
        """Run a function or bound effect in a detached child environment.

        Cancelling the returned task does not cancel the parent, and cancelling
        the parent does not cancel the task.
        """
        ...

    async def take[P](self, creator: MessageCreator[P]) -> P:
        """Wait for the next message built by ``creator`` and return its payload."""
        ...


SagaHandler = Callable[[SagaEnvironment[Any], Any], Awaitable[None]]


@dataclass(frozen=True, eq=False)
class Saga[P]:
    """A workflow started whenever a message matching ``trigger`` is dispatched.

    In ``"every"`` mode each trigger starts a concurrent instance; in
    ``"latest"`` mode the previous instance is cancelled first.
    """

    trigger: MessageCreator[P]
    handler: SagaHandler
    mode: SagaMode = "every"

    def __post_init__(self) -> None:
        if self.mode not in SAGA_MODES:
            raise ValueError(f"Saga mode must be one of {SAGA_MODES}, got {self.mode!r}")

    @property
    def name(self) -> str:
        return getattr(self.handler, "__qualname__", repr(self.handler))


def saga(trigger: MessageCreator[Any], mode: SagaMode = "every") -> Callable[[SagaHandler], Saga[Any]]:
    """Decorator turning an async ``(env, payload)`` function into a ``Saga``.

    Example::

        @saga(post_string, mode="latest")
        async def post_string_saga(env, payload):
            if env.select(longer_than_count, payload):
                await env.call(send_request, payload)
    """

    def decorate(handler: SagaHandler) -> Saga[Any]:
        return Saga(trigger, handler, mode)

    return decorate
