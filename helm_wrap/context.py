"""Utilities for tracing nested operations in the debug log.

Operations such as wrapping a chart run several steps (lock, pull, pack) that
each contain many registry calls. Wrapping each step in `trace_context` prefixes
its debug output with the chain of enclosing steps and records its duration.
"""

import contextvars
from contextlib import contextmanager
import logging
from time import perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []


_STACK: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "trace_stack", default=()
)


def current_label() -> str:
    """Return the label of the innermost active trace, or an empty string."""
    return " > ".join(_STACK.get())


@contextmanager
def trace_context(name: str) -> Generator[str, None, None]:
    """Trace the enclosed block, yielding its full label."""
    token = _STACK.set(_STACK.get() + (name,))
    label = current_label()
    start = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield label
    finally:
        _STACK.reset(token)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, perf_counter() - start)
