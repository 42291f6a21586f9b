import functools
import inspect
from typing import Any


def describe_target(target: Any) -> str:
    """Human readable name for a function, selector or bound effect."""
    fn = getattr(target, "fn", None)
    if fn is not None and hasattr(target, "args"):
        # FunctionEffect
        args = ", ".join(repr(arg) for arg in target.args)
        return f"{describe_target(fn)}({args})"

    if isinstance(target, functools.partial):
        return f"partial({describe_target(target.func)})"

    name = getattr(target, "__qualname__", None) or getattr(target, "__name__", None)
    if name is not None:
        return name.replace(".<locals>", "")
    return repr(target)


def is_async_target(target: Any) -> bool:
    """Return True if running ``target`` produces an awaitable.

    Accepts plain callables, bound effects (inspects their ``run`` method) and
    ``functools.partial`` wrappers.
    """
    while isinstance(target, functools.partial):
        target = target.func

    if inspect.iscoroutinefunction(target):
        return True
    if inspect.isfunction(target) or inspect.ismethod(target) or inspect.isbuiltin(target):
        return False

    fn = getattr(target, "fn", None)
    if fn is not None and hasattr(target, "args"):
        return is_async_target(fn)

    run = getattr(target, "run", None)
    if run is not None and not isinstance(target, type):
        return inspect.iscoroutinefunction(run)

    call = getattr(type(target), "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)
