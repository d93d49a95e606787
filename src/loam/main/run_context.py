"""Utilities for storing per-scan logging context using contextvars."""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator


_run_context: ContextVar[Dict[str, Any]] = ContextVar("run_context", default={})


def get_run_context() -> Dict[str, Any]:
    """Return a copy of the current run context."""
    context = _run_context.get()
    # Ensure callers cannot mutate the stored context in place
    return dict(context) if context else {}


def set_run_context(**values: Any) -> Dict[str, Any]:
    """Merge provided values into the stored context.

    Passing ``None`` clears the value for that key.
    """

    current = get_run_context()
    for key, value in values.items():
        if value is None:
            current.pop(key, None)
        else:
            current[key] = value
    _run_context.set(current)
    return current


def clear_run_context() -> None:
    """Remove all stored context for the active task."""

    _run_context.set({})


@contextmanager
def run_context(**values: Any) -> Iterator[Dict[str, Any]]:
    """Bind values for the duration of a block, restoring the previous context after."""
    token = _run_context.set({**get_run_context(), **values})
    try:
        yield get_run_context()
    finally:
        _run_context.reset(token)
