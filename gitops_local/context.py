"""Debug trace spans around the phases of a reconcile pass."""

import contextvars
from contextlib import contextmanager
import logging
import time
from typing import Generator

_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []

# Each asyncio task runs in a copy of the context so the spans of concurrent
# Applications never mix.
_spans: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "gitops_local_spans", default=()
)


@contextmanager
def trace_context(name: str) -> Generator[None, None, None]:
    """Log the start and the duration of a named span nested in the current one."""
    spans = _spans.get() + (name,)
    token = _spans.set(spans)
    label = " > ".join(spans)
    start = time.monotonic()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield
    finally:
        _spans.reset(token)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, time.monotonic() - start)
