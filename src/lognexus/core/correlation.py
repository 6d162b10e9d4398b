"""
Correlation context propagation.

Threads a request-scoped correlation id (and its parent) through synchronous
and asynchronous call graphs using a ContextVar owned by the propagator.
Scopes always restore the previous context on exit, including on error.
"""

import functools
import inspect
import re
import secrets
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generator, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# token_urlsafe(9) yields 12 URL-safe characters (72 bits of entropy)
_ID_ENTROPY_BYTES = 9
_CHILD_SUFFIX_BYTES = 4
_MAX_SUFFIX_LENGTH = 16
MIN_ID_LENGTH = 10
MAX_ID_LENGTH = 50
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.~-]")


@dataclass(frozen=True)
class CorrelationContext:
    """Active correlation scope."""
    correlation_id: str
    parent_id: Optional[str]
    start_time: float


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a new URL-safe correlation id.

    Format: ``{prefix}-{random}`` or ``{random}`` when no prefix is given.
    The prefix is sanitized and truncated so the id never exceeds 50 characters.
    """
    token = secrets.token_urlsafe(_ID_ENTROPY_BYTES)
    if not prefix:
        return token

    safe_prefix = _UNSAFE_CHARS.sub("", prefix)
    safe_prefix = safe_prefix[: MAX_ID_LENGTH - len(token) - 1]
    if not safe_prefix:
        return token
    return f"{safe_prefix}-{token}"


def is_valid_id(value: Optional[str]) -> bool:
    """True when ``value`` is URL-safe and between 10 and 50 characters."""
    if not value or not MIN_ID_LENGTH <= len(value) <= MAX_ID_LENGTH:
        return False
    return _UNSAFE_CHARS.search(value) is None


class CorrelationPropagator:
    """
    Owns one correlation ContextVar and the operations over it.

    Each pipeline constructs its own propagator, so two pipelines in the same
    process never observe each other's scopes.
    """

    def __init__(self, name: str = "correlation") -> None:
        self._context: ContextVar[Optional[CorrelationContext]] = ContextVar(name, default=None)

    def generate(self, prefix: Optional[str] = None) -> str:
        """Generate a new correlation id."""
        return generate_id(prefix)

    def current(self) -> Optional[str]:
        """Return the active correlation id, or None when uncorrelated."""
        context = self._context.get()
        return context.correlation_id if context else None

    def current_context(self) -> Optional[CorrelationContext]:
        """Return the full active context, or None."""
        return self._context.get()

    def _enter(self, correlation_id: str) -> Any:
        parent = self._context.get()
        context = CorrelationContext(
            correlation_id=correlation_id,
            parent_id=parent.correlation_id if parent else None,
            start_time=time.time(),
        )
        return self._context.set(context)

    @contextmanager
    def scope(self, correlation_id: Optional[str] = None) -> Generator[str, None, None]:
        """
        Context manager running its body under ``correlation_id``.

        A new id is generated when none is supplied.
        """
        correlation_id = correlation_id or self.generate()
        token = self._enter(correlation_id)
        try:
            yield correlation_id
        finally:
            self._context.reset(token)

    def run(self, correlation_id: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute ``fn`` with ``correlation_id`` active, restoring the prior context afterwards."""
        with self.scope(correlation_id):
            return fn(*args, **kwargs)

    async def run_async(
        self,
        correlation_id: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Await ``fn`` with ``correlation_id`` active."""
        with self.scope(correlation_id):
            return await fn(*args, **kwargs)

    def run_new(self, fn: Callable[..., T], *args: Any, prefix: Optional[str] = None, **kwargs: Any) -> T:
        """Execute ``fn`` under a freshly generated correlation id."""
        return self.run(self.generate(prefix), fn, *args, **kwargs)

    def child(self, suffix: Optional[str] = None) -> str:
        """
        Derive a child id from the active one.

        Without an active context this is a fresh id using ``suffix`` as prefix.
        Running under the child records the current id as its parent.
        The suffix is sanitized and the parent part truncated so the child
        never exceeds 50 characters.
        """
        current_id = self.current()
        if current_id is None:
            return self.generate(suffix)

        suffix = _UNSAFE_CHARS.sub("", suffix or "")[:_MAX_SUFFIX_LENGTH]
        suffix = suffix or secrets.token_urlsafe(_CHILD_SUFFIX_BYTES)
        return f"{current_id[: MAX_ID_LENGTH - len(suffix) - 1]}.{suffix}"

    def bind(self, fn: Callable[..., Any]) -> Callable[..., Any]:
        """
        Wrap ``fn`` so it re-establishes the context captured at bind time.

        Needed when work is scheduled to run after the originating scope exited.
        Coroutine functions get an async wrapper.
        """
        captured = self._context.get()

        if inspect.iscoroutinefunction(fn):
            @functools.wraps(fn)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                token = self._context.set(captured)
                try:
                    return await fn(*args, **kwargs)
                finally:
                    self._context.reset(token)

            return async_wrapper

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            token = self._context.set(captured)
            try:
                return fn(*args, **kwargs)
            finally:
                self._context.reset(token)

        return wrapper

    def elapsed_ms(self) -> Optional[float]:
        """Milliseconds since the active scope started."""
        context = self._context.get()
        if context is None:
            return None
        return (time.time() - context.start_time) * 1000

    def chain_summary(self) -> Dict[str, Any]:
        """Summary of the active correlation chain for debugging."""
        context = self._context.get()
        current_id = context.correlation_id if context else None
        return {
            "current": current_id,
            "parent": context.parent_id if context else None,
            "elapsed_ms": self.elapsed_ms(),
            "depth": current_id.count(".") if current_id else 0,
        }

    def structlog_processor(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        """structlog processor adding the active correlation id to every event."""
        current_id = self.current()
        if current_id is not None:
            event_dict.setdefault("correlation_id", current_id)
        return event_dict
