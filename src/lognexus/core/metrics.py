"""
Prometheus metrics collection.

The collector owns its registry and is fed from the event bus, so the
processing components never reference it directly.
"""

import time
from typing import Callable, List, Optional

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info

from .events import (
    ActionFailed,
    AlertSuppressed,
    AlertTriggered,
    AuditEntryArchived,
    AuditEntryExpired,
    AuditLogged,
    BatchFailed,
    BatchProcessed,
    BatchTimedOut,
    CacheAccessed,
    EventBus,
    IntegrityChecked,
    MemoryStatus,
    RecordIngested,
)

logger = structlog.get_logger(__name__)


class MetricsCollector:
    """
    Centralized metrics collection for LogNexus.

    Keep metrics simple, use in-memory counters, let Prometheus handle storage.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._unsubscribers: List[Callable[[], None]] = []

        self.service_info = Info(
            "lognexus_service",
            "LogNexus service information",
            registry=self.registry,
        )
        self.service_info.info({
            "version": "0.1.0",
            "service": "lognexus",
        })

        # Request metrics
        self.requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry,
        )

        self.request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry,
        )

        # Ingestion
        self.records_ingested_total = Counter(
            "records_ingested_total",
            "Total log records ingested",
            ["service", "level"],
            registry=self.registry,
        )

        # Rule engine
        self.alerts_triggered_total = Counter(
            "alerts_triggered_total",
            "Total alerts triggered",
            ["rule_id", "severity"],
            registry=self.registry,
        )

        self.alerts_suppressed_total = Counter(
            "alerts_suppressed_total",
            "Total alert attempts suppressed",
            ["rule_id", "reason"],
            registry=self.registry,
        )

        self.action_failures_total = Counter(
            "alert_action_failures_total",
            "Total alert action dispatch failures",
            ["action"],
            registry=self.registry,
        )

        # Audit chain
        self.audit_entries_total = Counter(
            "audit_entries_total",
            "Total audit entries appended",
            ["event_type"],
            registry=self.registry,
        )

        self.audit_entries_archived_total = Counter(
            "audit_entries_archived_total",
            "Total audit entries handed off for archival",
            ["reason"],
            registry=self.registry,
        )

        self.audit_entries_expired_total = Counter(
            "audit_entries_expired_total",
            "Total audit entries removed by retention",
            registry=self.registry,
        )

        self.integrity_check_failures_total = Counter(
            "audit_integrity_check_failures_total",
            "Total failed audit integrity checks",
            registry=self.registry,
        )

        # Optimizer
        self.batches_processed_total = Counter(
            "batches_processed_total",
            "Total batches processed",
            ["priority"],
            registry=self.registry,
        )

        self.batch_timeouts_total = Counter(
            "batch_timeouts_total",
            "Total batches that timed out",
            registry=self.registry,
        )

        self.batch_failures_total = Counter(
            "batch_failures_total",
            "Total batches that failed",
            registry=self.registry,
        )

        self.batch_size_records = Histogram(
            "batch_size_records",
            "Number of records per processed batch",
            buckets=[1, 5, 10, 25, 50, 100, 250, 500, 1000],
            registry=self.registry,
        )

        self.batch_duration = Histogram(
            "batch_duration_seconds",
            "Batch processing duration in seconds",
            buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0],
            registry=self.registry,
        )

        self.cache_requests_total = Counter(
            "cache_requests_total",
            "Record cache lookups",
            ["result"],
            registry=self.registry,
        )

        self.process_memory_bytes = Gauge(
            "process_memory_bytes",
            "Sampled process memory usage in bytes",
            registry=self.registry,
        )

        self.gc_runs_total = Counter(
            "gc_runs_total",
            "Garbage collections requested by the optimizer",
            registry=self.registry,
        )

        self.uptime_seconds = Gauge(
            "uptime_seconds",
            "Service uptime in seconds",
            registry=self.registry,
        )

        # Track start time for uptime calculation
        self._start_time = time.time()

    def subscribe(self, bus: EventBus) -> None:
        """Attach to every event this collector records."""
        handlers = [
            (RecordIngested, self._on_record_ingested),
            (AlertTriggered, self._on_alert_triggered),
            (AlertSuppressed, self._on_alert_suppressed),
            (ActionFailed, self._on_action_failed),
            (AuditLogged, self._on_audit_logged),
            (AuditEntryArchived, self._on_audit_archived),
            (AuditEntryExpired, self._on_audit_expired),
            (IntegrityChecked, self._on_integrity_checked),
            (BatchProcessed, self._on_batch_processed),
            (BatchTimedOut, self._on_batch_timed_out),
            (BatchFailed, self._on_batch_failed),
            (CacheAccessed, self._on_cache_accessed),
            (MemoryStatus, self._on_memory_status),
        ]
        for event_type, handler in handlers:
            self._unsubscribers.append(bus.subscribe(event_type, handler))

    def unsubscribe(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def record_request(
        self,
        method: str,
        endpoint: str,
        status_code: int,
        duration_seconds: float,
    ) -> None:
        """Record HTTP request metrics."""
        self.requests_total.labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code),
        ).inc()

        self.request_duration.labels(
            method=method,
            endpoint=endpoint,
        ).observe(duration_seconds)

    def update_system_metrics(self) -> None:
        self.uptime_seconds.set(time.time() - self._start_time)

    def _on_record_ingested(self, event: RecordIngested) -> None:
        self.records_ingested_total.labels(service=event.service, level=event.level).inc()

    def _on_alert_triggered(self, event: AlertTriggered) -> None:
        self.alerts_triggered_total.labels(
            rule_id=event.alert.rule_id,
            severity=event.alert.severity.value,
        ).inc()

    def _on_alert_suppressed(self, event: AlertSuppressed) -> None:
        self.alerts_suppressed_total.labels(rule_id=event.rule_id, reason=event.reason).inc()

    def _on_action_failed(self, event: ActionFailed) -> None:
        self.action_failures_total.labels(action=event.action.type.value).inc()

    def _on_audit_logged(self, event: AuditLogged) -> None:
        self.audit_entries_total.labels(event_type=event.entry.event_type.value).inc()

    def _on_audit_archived(self, event: AuditEntryArchived) -> None:
        self.audit_entries_archived_total.labels(reason=event.reason).inc()

    def _on_audit_expired(self, event: AuditEntryExpired) -> None:
        self.audit_entries_expired_total.inc()

    def _on_integrity_checked(self, event: IntegrityChecked) -> None:
        if not event.is_valid:
            self.integrity_check_failures_total.inc()

    def _on_batch_processed(self, event: BatchProcessed) -> None:
        self.batches_processed_total.labels(priority=event.priority).inc()
        self.batch_size_records.observe(event.size)
        self.batch_duration.observe(event.duration_ms / 1000)

    def _on_batch_timed_out(self, event: BatchTimedOut) -> None:
        self.batch_timeouts_total.inc()

    def _on_batch_failed(self, event: BatchFailed) -> None:
        self.batch_failures_total.inc()

    def _on_cache_accessed(self, event: CacheAccessed) -> None:
        self.cache_requests_total.labels(result="hit" if event.hit else "miss").inc()

    def _on_memory_status(self, event: MemoryStatus) -> None:
        self.process_memory_bytes.set(event.current_bytes)
        if event.gc_triggered:
            self.gc_runs_total.inc()
