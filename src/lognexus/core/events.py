"""
Typed events and the observer bus that delivers them.

Every component publishes dataclass messages to an EventBus it was handed at
construction. Handlers are registered per event class and invoked
synchronously; a failing handler is logged and never affects the publisher.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, DefaultDict, Dict, List, Optional, Type, TypeVar

import structlog

from ..models.alerts import ActionRef, TriggeredAlert
from ..models.audit import AuditEntry

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Event:
    """Base class for all bus messages."""


# Rule engine

@dataclass(frozen=True)
class AlertTriggered(Event):
    alert: TriggeredAlert


@dataclass(frozen=True)
class AlertSuppressed(Event):
    rule_id: str
    reason: str  # "cooldown" or "rate_limit"
    conditions_met: List[str]


@dataclass(frozen=True)
class ActionExecuted(Event):
    action: ActionRef
    alert: TriggeredAlert


@dataclass(frozen=True)
class ActionFailed(Event):
    action: ActionRef
    alert: TriggeredAlert
    error: str


# Audit chain

@dataclass(frozen=True)
class AuditLogged(Event):
    entry: AuditEntry


@dataclass(frozen=True)
class AuditEntryArchived(Event):
    entry: AuditEntry
    reason: str  # "memory_limit" or "archive_age"


@dataclass(frozen=True)
class AuditEntryExpired(Event):
    entry: AuditEntry


@dataclass(frozen=True)
class IntegrityChecked(Event):
    is_valid: bool
    total_checked: int
    violations: int


@dataclass(frozen=True)
class AuditTrailCleared(Event):
    count: int


# Optimizer

@dataclass(frozen=True)
class BatchProcessed(Event):
    batch_id: str
    size: int
    duration_ms: float
    cache_hits: int
    errors: int
    priority: str


@dataclass(frozen=True)
class BatchTimedOut(Event):
    batch_id: str
    size: int
    timeout_ms: int


@dataclass(frozen=True)
class BatchFailed(Event):
    batch_id: str
    size: int
    error: str


@dataclass(frozen=True)
class CacheAccessed(Event):
    hit: bool


@dataclass(frozen=True)
class MemoryStatus(Event):
    current_bytes: int
    max_bytes: int
    percentage: float
    gc_triggered: bool


@dataclass(frozen=True)
class MetricsUpdated(Event):
    snapshot: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecordIngested(Event):
    service: str
    level: str


E = TypeVar("E", bound=Event)
Handler = Callable[[Any], None]


class EventBus:
    """
    Explicit publish/subscribe channel.

    Subscribing to ``Event`` receives every message.
    """

    def __init__(self) -> None:
        self._handlers: DefaultDict[Type[Event], List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        """Register ``handler`` for ``event_type``; returns an unsubscribe callable."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: Event) -> None:
        """Deliver ``event`` to handlers of its class (and of its bases)."""
        for event_type in type(event).__mro__:
            if event_type is object:
                break
            for handler in list(self._handlers.get(event_type, ())):
                try:
                    handler(event)
                except Exception as e:
                    logger.error(
                        "Event handler failed",
                        event_type=type(event).__name__,
                        handler=getattr(handler, "__qualname__", repr(handler)),
                        error=str(e),
                        exc_info=True,
                    )

    def handler_count(self, event_type: Optional[Type[Event]] = None) -> int:
        if event_type is None:
            return sum(len(handlers) for handlers in self._handlers.values())
        return len(self._handlers.get(event_type, ()))
