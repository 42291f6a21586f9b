"""Deterministic test harness for sagas.

A saga under test runs against a ``HarnessEnvironment`` instead of a real
store. Effects are matched against an ordered pool of mocks; a matching mock
is consumed and its recorded value returned, anything unmatched falls through
to the real function, selector or reducer. After the saga completes the pool
must be empty and the tracked state must equal the expected final state.

Example::

    await (
        expect_saga(post_string_saga)
        .with_store(store)
        .to_have_final_state({"count": 0})
        .after_it([
            selects(longer_than_count, "sample").receiving(True),
            calls(send_request).receiving(200),
        ])
        .when_run_with("")
    )
"""

import asyncio
import dataclasses
import inspect
import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, Literal, assert_never

from ._typing import describe_target, is_async_target
from .cancellation import SagaCancelledError
from .effects import BoundEffect, FunctionEffect, Saga, Task, as_effect
from .environment import log_task_outcome
from .messages import AwaitingMessages, Message, MessageCreator, message_payload, message_type

logger = logging.getLogger(__name__)

SETUP_MESSAGE = Message("___INTERNAL___SETUP_MESSAGE")

MockKind = Literal["call", "select", "run", "spawn", "dispatch"]


class SagaTestError(AssertionError):
    """Base class for failures reported by the saga test harness."""


class UnusedMocksError(SagaTestError):
    """Mocks were left in the pool after the saga completed."""

    __match_args__ = ("mocks",)

    def __init__(self, mocks: Iterable["Mock"]):
        self.mocks = list(mocks)
        listed = ", ".join(describe_mock(mock) for mock in self.mocks)
        super().__init__(f"Unused mocks after the saga completed: {listed}")


class StateMismatchError(SagaTestError):
    """The state after the saga completed differs from the expected state."""

    __match_args__ = ("actual", "expected")

    def __init__(self, actual: Any, expected: Any):
        super().__init__(f"Final state {actual!r} does not equal expected state {expected!r}")
        self.actual = actual
        self.expected = expected


class PayloadMismatchError(SagaTestError):
    """A dispatched message matched a dispatch mock by type but not by payload."""

    __match_args__ = ("mock", "message")

    def __init__(self, mock: "DispatchMock", message: Any):
        super().__init__(
            f"Dispatched {message_type(message)} with payload {message_payload(message)!r}, "
            f"expected payload {message_payload(mock.message)!r}"
        )
        self.mock = mock
        self.message = message


# Mocks compare by identity so the pool can remove exactly the consumed entry.
@dataclass(frozen=True, eq=False)
class CallMock:
    func: Callable[..., Any]
    value: Any
    args: tuple[Any, ...] | None = None
    kind: Literal["call"] = field(default="call", init=False)


@dataclass(frozen=True, eq=False)
class SelectMock:
    selector: Callable[..., Any]
    value: Any
    args: tuple[Any, ...] | None = None
    kind: Literal["select"] = field(default="select", init=False)


@dataclass(frozen=True, eq=False)
class RunMock:
    target: Any
    value: Any
    kind: Literal["run"] = field(default="run", init=False)


@dataclass(frozen=True, eq=False)
class SpawnMock:
    target: Any
    value: Any
    kind: Literal["spawn"] = field(default="spawn", init=False)


@dataclass(frozen=True, eq=False)
class DispatchMock:
    message: Any
    kind: Literal["dispatch"] = field(default="dispatch", init=False)


Mock = CallMock | SelectMock | RunMock | SpawnMock | DispatchMock


@dataclass(frozen=True)
class ValueMockBuilder[M]:
    """Second half of a mock declaration: the value the effect should produce."""

    build: Callable[[Any], M]

    def receiving(self, value: Any) -> M:
        return self.build(value)


def calls(func: Callable[..., Any], *args: Any) -> ValueMockBuilder[CallMock]:
    """Mock ``env.call(func, ...)``. ``args`` are recorded for failure messages only."""
    recorded = tuple(args) if args else None
    return ValueMockBuilder(lambda value: CallMock(func, value, recorded))


def selects(selector: Callable[..., Any], *args: Any) -> ValueMockBuilder[SelectMock]:
    """Mock ``env.select(selector, ...)``. ``args`` are recorded for failure messages only."""
    recorded = tuple(args) if args else None
    return ValueMockBuilder(lambda value: SelectMock(selector, value, recorded))


def runs(target: Any) -> ValueMockBuilder[RunMock]:
    """Mock ``env.run`` of a function or bound effect."""
    return ValueMockBuilder(lambda value: RunMock(target, value))


def spawns(target: Any) -> ValueMockBuilder[SpawnMock]:
    """Mock ``env.spawn`` of a function or bound effect; the value becomes the task result."""
    return ValueMockBuilder(lambda value: SpawnMock(target, value))


def dispatches(message: Any) -> DispatchMock:
    """Expect a dispatch of a message with this type and an equal payload."""
    return DispatchMock(message)


def describe_mock(mock: Mock) -> str:
    match mock:
        case CallMock(func=func, value=value, args=args):
            extra = "".join(f", {arg!r}" for arg in args or ())
            return f"calls({describe_target(func)}{extra}).receiving({value!r})"
        case SelectMock(selector=selector, value=value, args=args):
            extra = "".join(f", {arg!r}" for arg in args or ())
            return f"selects({describe_target(selector)}{extra}).receiving({value!r})"
        case RunMock(target=target, value=value):
            return f"runs({describe_target(target)}).receiving({value!r})"
        case SpawnMock(target=target, value=value):
            return f"spawns({describe_target(target)}).receiving({value!r})"
        case DispatchMock(message=message):
            return f"dispatches({message!r})"
        case _:
            assert_never(mock)


def _same_target(expected: Any, actual: Any) -> bool:
    return expected is actual or expected == actual


def _matches(mock: Mock, kind: MockKind, target: Any) -> bool:
    match mock:
        case CallMock(func=func):
            return kind == "call" and _same_target(func, target)
        case SelectMock(selector=selector):
            return kind == "select" and _same_target(selector, target)
        case RunMock(target=expected):
            return kind == "run" and _same_target(expected, target)
        case SpawnMock(target=expected):
            return kind == "spawn" and _same_target(expected, target)
        case DispatchMock(message=message):
            return kind == "dispatch" and message_type(message) == message_type(target)
        case _:
            assert_never(mock)


class MockPool:
    """Ordered pool of mocks; each entry can be consumed once."""

    def __init__(self, mocks: Iterable[Mock] = ()):
        self._mocks: list[Mock] = list(mocks)

    def __len__(self) -> int:
        return len(self._mocks)

    def __iter__(self) -> Iterator[Mock]:
        return iter(list(self._mocks))

    def __repr__(self) -> str:
        return f"MockPool([{', '.join(describe_mock(mock) for mock in self._mocks)}])"

    def find(self, kind: MockKind, target: Any) -> Mock | None:
        """Return the first mock in pool order matching ``kind`` and ``target``."""
        for mock in self._mocks:
            if _matches(mock, kind, target):
                return mock
        return None

    def consume(self, mock: Mock) -> None:
        for i, candidate in enumerate(self._mocks):
            if candidate is mock:
                del self._mocks[i]
                logger.debug("Consumed mock %s", describe_mock(mock))
                return
        raise ValueError(f"Mock {describe_mock(mock)} is not in the pool")

    def take(self, kind: MockKind, target: Any) -> Mock | None:
        mock = self.find(kind, target)
        if mock is not None:
            self.consume(mock)
        return mock


def _resolved(value: Any) -> "asyncio.Future[Any]":
    future = asyncio.get_running_loop().create_future()
    future.set_result(value)
    return future


class HarnessEnvironment[S]:
    """Saga environment that serves effects from a mock pool and tracks state locally.

    Args:
        reducer: The real reducer, applied to every dispatched message.
        state: Starting state.
        mocks: Mocks in pool order.
    """

    def __init__(self, reducer: Callable[[S | None, Any], S], state: S, mocks: Iterable[Mock] = ()):
        self._reducer = reducer
        self._state = state
        self._pool = mocks if isinstance(mocks, MockPool) else MockPool(mocks)
        self._awaiting = AwaitingMessages()
        self._spawned: list[asyncio.Future[Any]] = []

    @property
    def state(self) -> S:
        return self._state

    @property
    def pool(self) -> MockPool:
        return self._pool

    @property
    def awaiting(self) -> AwaitingMessages:
        return self._awaiting

    def _mocked_value(self, mock: CallMock | SelectMock | RunMock | SpawnMock, target: Any) -> Any:
        if is_async_target(target):
            return _resolved(mock.value)
        return mock.value

    def dispatch(self, message: Any) -> Any:
        match self._pool.find("dispatch", message):
            case DispatchMock(message=expected) as mock:
                if message_payload(expected) != message_payload(message):
                    raise PayloadMismatchError(mock, message)
                self._pool.consume(mock)

        self._state = self._reducer(self._state, message)
        self._awaiting.notify(message)
        return message

    def select[T](self, selector: Callable[..., T], *args: Any) -> T:
        mock = self._pool.take("select", selector)
        if mock is not None:
            return mock.value
        return selector(self._state, *args)

    def call[T](self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        mock = self._pool.take("call", fn)
        if mock is not None:
            return self._mocked_value(mock, fn)
        logger.debug("No mock for call of %s, calling it", describe_target(fn))
        return fn(*args, **kwargs)

    def run_function[T](self, fn: Callable[..., T], *args: Any) -> T:
        mock = self._pool.take("run", fn)
        if mock is not None:
            return self._mocked_value(mock, fn)
        return fn(self, *args)

    def run_effect[T](self, effect: BoundEffect[T]) -> T:
        mock = self._pool.take("run", effect)
        if mock is not None:
            return self._mocked_value(mock, effect)
        return effect.run(self)

    def run(self, target: Any, *args: Any) -> Any:
        match as_effect(target, args):
            case FunctionEffect(fn=fn, args=fn_args):
                return self.run_function(fn, *fn_args)
            case effect:
                return self.run_effect(effect)

    def spawn(self, target: Any, *args: Any) -> Task[Any]:
        effect = as_effect(target, args)
        identity = effect.fn if isinstance(effect, FunctionEffect) else effect
        mock = self._pool.take("spawn", identity)
        if mock is not None:
            return Task(self._mocked_value(mock, identity))

        result = effect.run(self)
        if inspect.isawaitable(result):
            result = asyncio.ensure_future(result)
            result.add_done_callback(log_task_outcome)
            self._spawned.append(result)
        return Task(result)

    async def take[P](self, creator: MessageCreator[P]) -> P:
        return await self._awaiting.wait_for(creator)

    def cancel_spawned(self) -> int:
        """Cancel spawned work that is still running; return how many were cancelled."""
        cancelled = 0
        for future in self._spawned:
            if not future.done():
                future.cancel()
                cancelled += 1
        if cancelled:
            logger.debug("Cancelled %d spawned task(s) after the saga failed", cancelled)
        return cancelled

    async def settle(self, timeout: float | None) -> None:
        """Give spawned asynchronous work ``timeout`` seconds to finish.

        Work still running afterwards is cancelled. A spawned task that failed
        with anything but ``SagaCancelledError`` re-raises its error here.
        """
        pending = [future for future in self._spawned if not future.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            for future in still_running:
                logger.warning("Cancelling spawned task still running after %ss", timeout)
                future.cancel()

        for future in self._spawned:
            if not future.done() or future.cancelled():
                continue
            error = future.exception()
            if error is not None and not isinstance(error, SagaCancelledError):
                raise error


async def verify_saga[S](
    saga: Saga[Any],
    initial_message: Any,
    mocks: Iterable[Mock],
    initial_state: S | None,
    reducer: Callable[[S | None, Any], S],
    final_state: S,
    *,
    timeout: float | None = None,
    settle_timeout: float | None = 1.0,
) -> HarnessEnvironment[S]:
    """Run ``saga`` for ``initial_message`` against mocks and check the final state.

    Args:
        saga: The saga whose handler is run.
        initial_message: Message that triggers the saga; applied to the state first.
        mocks: Ordered mocks; all of them must be consumed.
        initial_state: Starting state, or None to let the reducer build one.
        reducer: The real reducer.
        final_state: Expected state once the saga completed.
        timeout: Maximum seconds the handler may run.
        settle_timeout: Maximum seconds to wait for spawned asynchronous work.

    Returns:
        The harness environment, for further inspection.

    Raises:
        UnusedMocksError: If mocks remain in the pool.
        StateMismatchError: If the final state differs from ``final_state``.
        PayloadMismatchError: If a dispatch mock matched by type but not payload.
        TimeoutError: If the handler did not finish within ``timeout``.
    """
    state = initial_state if initial_state is not None else reducer(None, SETUP_MESSAGE)
    state = reducer(state, initial_message)

    env = HarnessEnvironment(reducer, state, mocks)
    try:
        await asyncio.wait_for(saga.handler(env, message_payload(initial_message)), timeout)
    except BaseException:
        env.cancel_spawned()
        raise
    await env.settle(settle_timeout)

    if len(env.pool):
        logger.error("Unused mocks after the saga completed: %r", env.pool)
        raise UnusedMocksError(env.pool)
    if env.state != final_state:
        raise StateMismatchError(env.state, final_state)
    return env


_UNSET: Any = object()


@dataclass(frozen=True)
class SagaExpectation:
    """Builder for a ``verify_saga`` run. Every step returns a new expectation."""

    saga: Saga[Any]
    reducer: Callable[[Any, Any], Any] | None = None
    initial_state: Any = None
    final_state: Any = _UNSET
    mocks: tuple[Mock, ...] = ()

    def with_store(self, store: Any) -> "SagaExpectation":
        """Use the store's reducer and its current state as the starting state."""
        return dataclasses.replace(self, reducer=store.reducer, initial_state=store.get_state())

    def with_reducer(self, reducer: Callable[[Any, Any], Any]) -> "SagaExpectation":
        return dataclasses.replace(self, reducer=reducer)

    def with_state(self, state: Any) -> "SagaExpectation":
        return dataclasses.replace(self, initial_state=state)

    def to_have_final_state(self, state: Any) -> "SagaExpectation":
        return dataclasses.replace(self, final_state=state)

    def after_it(self, mocks: Iterable[Mock]) -> "SagaExpectation":
        return dataclasses.replace(self, mocks=tuple(mocks))

    async def when_run_with(self, payload: Any = None, *, timeout: float | None = None) -> HarnessEnvironment[Any]:
        if self.reducer is None:
            raise ValueError("No reducer given; use with_store() or with_reducer()")
        if self.final_state is _UNSET:
            raise ValueError("No final state given; use to_have_final_state()")
        return await verify_saga(
            self.saga,
            self.saga.trigger(payload),
            self.mocks,
            self.initial_state,
            self.reducer,
            self.final_state,
            timeout=timeout,
        )


def expect_saga(saga: Saga[Any]) -> SagaExpectation:
    return SagaExpectation(saga)
