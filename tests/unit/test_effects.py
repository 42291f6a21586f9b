"""Unit tests for effect variants, tasks and saga declarations."""

import functools
from dataclasses import dataclass

import pytest

from tsaga._typing import describe_target, is_async_target
from tsaga.cancellation import CancellationToken
from tsaga.effects import BoundEffect, FunctionEffect, Saga, Task, as_effect, saga
from tsaga.messages import MessageCreator

start = MessageCreator[str]("START")


@dataclass(frozen=True)
class Greet:
    """A bound effect carrying its own argument."""

    name: str

    def run(self, env):
        return f"hello {self.name}"


class AsyncGreet:
    async def run(self, env):
        return "hello"


def plain(env, value):
    return value


async def asynchronous(env):
    return None


def test_as_effect_wraps_functions():
    effect = as_effect(plain, (1,))
    assert effect == FunctionEffect(plain, (1,))
    assert effect.run(object()) == 1


def test_as_effect_passes_bound_effects_through():
    greet = Greet("ada")
    assert as_effect(greet) is greet
    assert isinstance(greet, BoundEffect)


def test_as_effect_rejects_arguments_with_bound_effect():
    with pytest.raises(TypeError, match="carries its own arguments"):
        as_effect(Greet("ada"), ("extra",))


def test_as_effect_rejects_non_callables():
    with pytest.raises(TypeError):
        as_effect(42)


def test_task_cancel_sets_token():
    token = CancellationToken()
    task = Task("result", token)
    assert not task.canceled
    task.cancel()
    assert token.canceled
    assert task.canceled


def test_task_without_token_ignores_cancel():
    task = Task("result")
    task.cancel()
    assert not task.canceled


def test_saga_decorator():
    @saga(start, mode="latest")
    async def handler(env, payload):
        pass

    assert isinstance(handler, Saga)
    assert handler.trigger is start
    assert handler.mode == "latest"
    assert handler.name.endswith("handler")


def test_saga_defaults_to_every():
    async def handler(env, payload):
        pass

    assert Saga(start, handler).mode == "every"


def test_saga_rejects_unknown_mode():
    async def handler(env, payload):
        pass

    with pytest.raises(ValueError, match="Saga mode"):
        Saga(start, handler, "sometimes")  # type: ignore[arg-type]


def test_describe_target():
    assert describe_target(plain) == "plain"
    assert describe_target(FunctionEffect(plain, (1, "a"))) == "plain(1, 'a')"
    assert describe_target(functools.partial(plain, None)) == "partial(plain)"
    assert describe_target(Greet("ada")) == "Greet(name='ada')"


def test_is_async_target():
    assert is_async_target(asynchronous)
    assert not is_async_target(plain)
    assert is_async_target(functools.partial(asynchronous))
    assert is_async_target(AsyncGreet())
    assert not is_async_target(Greet("ada"))
    assert is_async_target(FunctionEffect(asynchronous))
