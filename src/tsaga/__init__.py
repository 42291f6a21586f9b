"""Effect-driven sagas over a single reducer store.

Sagas are async workflows that never touch the store directly. They express
their side effects through an environment (``dispatch``, ``select``, ``call``,
``run``, ``spawn``, ``take``), which checks cooperative cancellation before
every effect and can be swapped for a mocking harness in tests.

Example:

>>> import asyncio
>>> import tsaga
>>>
>>> increment = tsaga.MessageCreator[int]("INCREMENT")
>>> post = tsaga.MessageCreator[str]("POST")
>>>
>>> def reducer(state, message):
...     state = state if state is not None else {"count": 0}
...     if increment.match(message):
...         return {"count": state["count"] + message.payload}
...     return state
>>>
>>> @tsaga.saga(post, mode="latest")
... async def count_characters(env, payload):
...     env.dispatch(increment(len(payload)))
>>>
>>> async def main():
...     store = tsaga.Store(reducer)
...     runtime = tsaga.SagaRuntime(store, [count_characters])
...     store.dispatch(post("hello"))
...     await runtime.join()
...     return store.get_state()
>>>
>>> asyncio.run(main())
{'count': 5}
"""

from .__version__ import __version__
from .cancellation import CancellationToken, SagaCancelledError
from .effects import (
    BoundEffect,
    FunctionEffect,
    Saga,
    SagaEnvironment,
    SagaMode,
    Task,
    as_effect,
    saga,
)
from .environment import Environment
from .messages import (
    AwaitingMessages,
    Message,
    MessageCreator,
    is_type,
    message_creator_factory,
)
from .runtime import SagaRuntime
from .store import Store

__all__ = [
    "AwaitingMessages",
    "BoundEffect",
    "CancellationToken",
    "Environment",
    "FunctionEffect",
    "Message",
    "MessageCreator",
    "Saga",
    "SagaCancelledError",
    "SagaEnvironment",
    "SagaMode",
    "SagaRuntime",
    "Store",
    "Task",
    "__version__",
    "as_effect",
    "is_type",
    "message_creator_factory",
    "saga",
]
