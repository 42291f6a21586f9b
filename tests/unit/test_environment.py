"""Unit tests for the production effect environment."""

import asyncio
from dataclasses import dataclass
from typing import Any

import pytest

from tsaga.cancellation import CancellationToken, SagaCancelledError
from tsaga.effects import FunctionEffect, Task
from tsaga.environment import Environment
from tsaga.messages import MessageCreator
from tsaga.store import Store

add = MessageCreator[int]("ADD")
message_x = MessageCreator[int]("MESSAGE_X")
message_y = MessageCreator[int]("MESSAGE_Y")


def reducer(state: dict[str, int] | None, message: Any) -> dict[str, int]:
    if state is None:
        state = {"total": 0}
    if add.match(message):
        return {"total": state["total"] + message.payload}
    return state


def total_plus(state: dict[str, int], extra: int) -> int:
    return state["total"] + extra


@dataclass(frozen=True)
class AddTwice:
    """Bound effect dispatching the same amount twice."""

    amount: int

    def run(self, env):
        env.dispatch(add(self.amount))
        env.dispatch(add(self.amount))
        return env.select(lambda state: state["total"])


def make_env(token: CancellationToken | None = None) -> Environment[Any]:
    return Environment(Store(reducer), token)


def test_dispatch_and_select():
    env = make_env()
    message = add(5)
    assert env.dispatch(message) is message
    assert env.select(total_plus, 1) == 6


def test_call_forwards_arguments():
    env = make_env()
    assert env.call(lambda a, b=0: a * 10 + b, 4, b=2) == 42


def test_run_function_receives_environment():
    env = make_env()

    def child(child_env, amount):
        assert child_env is env
        child_env.dispatch(add(amount))
        return "done"

    assert env.run(child, 3) == "done"
    assert env.select(total_plus, 0) == 3


def test_run_bound_effect():
    env = make_env()
    assert env.run(AddTwice(2)) == 4
    assert env.run_effect(AddTwice(1)) == 6


def test_run_rejects_arguments_for_bound_effect():
    with pytest.raises(TypeError):
        make_env().run(AddTwice(1), 2)


def test_run_accepts_function_effect():
    env = make_env()
    assert env.run(FunctionEffect(lambda e, x: x + 1, (1,))) == 2


@pytest.mark.parametrize(
    "operation",
    [
        lambda env: env.dispatch(add(1)),
        lambda env: env.select(total_plus, 0),
        lambda env: env.call(print),
        lambda env: env.run(lambda e: None),
        lambda env: env.run_effect(AddTwice(1)),
        lambda env: env.spawn(lambda e: None),
        lambda env: env.create_detached_child_environment(),
    ],
)
def test_every_operation_checks_cancellation(operation):
    token = CancellationToken()
    env = make_env(token)
    token.cancel()
    with pytest.raises(SagaCancelledError):
        operation(env)


def test_calls_before_cancel_are_unaffected():
    token = CancellationToken()
    env = make_env(token)
    env.dispatch(add(1))
    token.cancel()
    with pytest.raises(SagaCancelledError):
        env.dispatch(add(1))
    assert env.store.get_state() == {"total": 1}


def test_attached_run_observes_parent_cancellation():
    """A run-composed child shares the token and fails at its next effect."""
    token = CancellationToken()
    env = make_env(token)

    def child(child_env):
        child_env.dispatch(add(1))
        token.cancel()
        child_env.dispatch(add(1))

    with pytest.raises(SagaCancelledError):
        env.run(child)
    assert env.store.get_state() == {"total": 1}


def test_detached_child_has_independent_token():
    parent_token = CancellationToken()
    env = make_env(parent_token)
    child_env, child_token = env.create_detached_child_environment()

    assert child_token is not parent_token
    assert child_env.cancellation_token is child_token

    parent_token.cancel()
    assert not child_token.canceled
    child_env.dispatch(add(1))

    child_token.cancel()
    with pytest.raises(SagaCancelledError):
        child_env.dispatch(add(1))


def test_cancelling_detached_child_leaves_parent_running():
    env = make_env(CancellationToken())
    _, child_token = env.create_detached_child_environment()
    child_token.cancel()
    env.dispatch(add(1))


def test_spawn_sync_function():
    env = make_env()

    def child(child_env, amount):
        assert child_env is not env
        child_env.dispatch(add(amount))
        return amount * 2

    task = env.spawn(child, 4)

    assert isinstance(task, Task)
    assert task.result == 8
    assert env.select(total_plus, 0) == 4


def test_spawned_task_cancel_sets_child_token_only():
    parent_token = CancellationToken()
    env = make_env(parent_token)
    captured: list[Environment[Any]] = []

    task = env.spawn(lambda child_env: captured.append(child_env))
    task.cancel()

    assert task.canceled
    assert not parent_token.canceled
    with pytest.raises(SagaCancelledError):
        captured[0].dispatch(add(1))


@pytest.mark.asyncio
async def test_spawn_async_function_survives_parent_cancel():
    parent_token = CancellationToken()
    env = make_env(parent_token)

    async def child(child_env):
        await asyncio.sleep(0)
        child_env.dispatch(add(7))
        return "child done"

    task = env.spawn(child)
    parent_token.cancel()

    assert isinstance(task.result, asyncio.Future)
    assert await task.result == "child done"
    assert env.store.get_state() == {"total": 7}


@pytest.mark.asyncio
async def test_cancelled_spawned_task_stops_at_next_effect():
    env = make_env()

    async def child(child_env):
        child_env.dispatch(add(1))
        await asyncio.sleep(0)
        child_env.dispatch(add(1))

    task = env.spawn(child)
    await asyncio.sleep(0)
    task.cancel()

    with pytest.raises(SagaCancelledError):
        await task.result
    assert env.store.get_state() == {"total": 1}


@pytest.mark.asyncio
async def test_take_resolves_with_payload():
    """A take for MESSAGE_X resolves with exactly the dispatched payload."""
    env = make_env()
    waiting = asyncio.ensure_future(env.take(message_x))
    other = asyncio.ensure_future(env.take(message_y))
    await asyncio.sleep(0)

    env.dispatch(message_x(42))

    assert await waiting == 42
    await asyncio.sleep(0)
    assert not other.done()
    other.cancel()


@pytest.mark.asyncio
async def test_take_sees_dispatches_from_child_environments():
    env = make_env()
    child_env, _ = env.create_detached_child_environment()
    waiting = asyncio.ensure_future(env.take(message_x))
    await asyncio.sleep(0)

    child_env.dispatch(message_x(1))

    assert await waiting == 1


@pytest.mark.asyncio
async def test_take_fails_when_cancelled_while_waiting():
    token = CancellationToken()
    env = make_env(token)
    waiting = asyncio.ensure_future(env.take(message_x))
    await asyncio.sleep(0)

    token.cancel()

    with pytest.raises(SagaCancelledError):
        await waiting


@pytest.mark.asyncio
async def test_take_after_cancel_fails_immediately():
    token = CancellationToken()
    env = make_env(token)
    token.cancel()
    with pytest.raises(SagaCancelledError):
        await env.take(message_x)


class CountingStore(Store):
    """Store that tracks how many listeners are currently subscribed."""

    def __init__(self, reducer):
        super().__init__(reducer)
        self.active = 0

    def subscribe(self, listener):
        unsubscribe = super().subscribe(listener)
        self.active += 1

        def counted() -> None:
            self.active -= 1
            unsubscribe()

        return counted


def test_close_detaches_take_registry():
    store = CountingStore(reducer)
    env = Environment(store)
    child_env, _ = env.create_detached_child_environment()
    assert store.active == 1

    child_env.close()
    assert store.active == 1

    env.close()
    env.close()
    assert store.active == 0


def test_checkpoint_error_carries_token():
    token = CancellationToken()
    env = make_env(token)
    token.cancel()
    with pytest.raises(SagaCancelledError) as info:
        env.select(total_plus, 0)
    assert info.value.token is token
