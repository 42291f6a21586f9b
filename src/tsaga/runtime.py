"""Runs registered sagas in response to dispatched messages."""

import asyncio
import logging
import warnings
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .cancellation import CancellationToken, SagaCancelledError
from .effects import Saga
from .environment import Environment
from .messages import message_payload

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _Registration:
    saga: Saga[Any]
    latest: CancellationToken | None = None
    started: int = field(default=0)


class SagaRuntime:
    """Starts saga instances for matching messages dispatched to ``store``.

    Each instance gets a detached environment with its own cancellation token.
    ``"latest"`` sagas cancel the token of the previously started instance
    before starting a new one; ``"every"`` sagas never interact with earlier
    instances. Instances are scheduled on the running event loop, so messages
    that trigger sagas must be dispatched from inside it.

    Example::

        store = Store(reducer)
        runtime = SagaRuntime(store, [post_string_saga])
        store.dispatch(post_string("hello"))
        await runtime.join()
    """

    def __init__(self, store: Any, sagas: Iterable[Saga[Any]] = ()):
        self._store = store
        self._env = Environment(store)
        self._registrations: list[_Registration] = []
        self._instances: dict[asyncio.Task[None], CancellationToken] = {}
        self._errors: list[BaseException] = []
        self._unsubscribe = store.subscribe(self._on_message)
        for saga in sagas:
            self.register(saga)

    @property
    def environment(self) -> Environment[Any]:
        return self._env

    @property
    def running(self) -> int:
        return sum(1 for task in self._instances if not task.done())

    def register(self, saga: Saga[Any]) -> None:
        if any(registration.saga is saga for registration in self._registrations):
            warnings.warn(f"Saga {saga.name} is already registered.", RuntimeWarning, stacklevel=2)
            return
        self._registrations.append(_Registration(saga))
        logger.debug("Registered saga %s on %s (%s)", saga.name, saga.trigger.type, saga.mode)

    def _on_message(self, message: Any) -> None:
        for registration in list(self._registrations):
            if registration.saga.trigger.match(message):
                self._start(registration, message)

    def _start(self, registration: _Registration, message: Any) -> None:
        saga = registration.saga
        if saga.mode == "latest" and registration.latest is not None:
            logger.debug("Cancelling previous instance of saga %s", saga.name)
            registration.latest.cancel()

        child_env, token = self._env.create_detached_child_environment()
        registration.latest = token
        registration.started += 1

        loop = asyncio.get_running_loop()
        task = loop.create_task(
            self._run_instance(saga, child_env, message_payload(message)),
            name=f"saga:{saga.name}#{registration.started}",
        )
        self._instances[task] = token
        task.add_done_callback(self._forget)

    async def _run_instance(self, saga: Saga[Any], env: Environment[Any], payload: Any) -> None:
        logger.debug("Starting saga %s", saga.name)
        try:
            await saga.handler(env, payload)
        except SagaCancelledError:
            logger.debug("Saga %s cancelled", saga.name)
            return
        except Exception:
            logger.exception("Saga %s failed", saga.name)
            raise
        logger.debug("Saga %s finished", saga.name)

    def _forget(self, task: asyncio.Task[None]) -> None:
        self._instances.pop(task, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._errors.append(error)

    async def join(self) -> None:
        """Wait until no saga instance is running.

        Raises:
            Exception: The first error raised by an instance since the last join.
        """
        while pending := [task for task in self._instances if not task.done()]:
            await asyncio.wait(pending)
        # let done callbacks of the last batch run
        await asyncio.sleep(0)

        if self._errors:
            error = self._errors[0]
            self._errors.clear()
            raise error

    def close(self) -> None:
        """Stop reacting to messages and cancel the tokens of all running instances."""
        self._unsubscribe()
        self._env.close()
        for token in self._instances.values():
            token.cancel()
