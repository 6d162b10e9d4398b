"""
Processing pipeline orchestration.

Owns one instance of every processing component and feeds each ingested
record to the three paths:
1. Rule evaluation (alerts dispatched in the background)
2. Audit chain mirroring
3. Buffered batch optimization and delivery
"""

import asyncio
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Set

import structlog

from ..config import Settings
from ..models.alerts import TriggeredAlert
from ..models.log_record import LogDomain, LogRecord
from .actions import ActionDispatcher
from .audit import AuditChain
from .correlation import CorrelationPropagator
from .delivery import DeliverySink, LokiSink
from .events import EventBus, RecordIngested
from .exceptions import LogNexusException
from .optimizer import BatchOptimizer, BatchResult
from .rules import AlertRuleManager

logger = structlog.get_logger(__name__)


@dataclass
class IngestResult:
    """Result of ingesting a group of records."""
    records_accepted: int
    alerts: List[TriggeredAlert] = field(default_factory=list)
    audit_entry_ids: List[str] = field(default_factory=list)


class ProcessingPipeline:
    """
    Fan-out of ingested records to the rule engine, audit chain and optimizer.

    Records without a correlation id are stamped with the active one.
    Buffered records are flushed once ``batch_size`` accumulate, and
    periodically by the flush loop.
    """

    def __init__(
        self,
        settings: Settings,
        bus: Optional[EventBus] = None,
        propagator: Optional[CorrelationPropagator] = None,
        sink: Optional[DeliverySink] = None,
    ) -> None:
        self.settings = settings
        self.bus = bus or EventBus()
        self.propagator = propagator or CorrelationPropagator()

        if sink is None and settings.loki.enabled:
            sink = LokiSink(settings.loki)
        self.sink = sink

        self.dispatcher = ActionDispatcher(self.bus, timeout_seconds=settings.rules.action_timeout_seconds)
        self.rules = AlertRuleManager(self.bus, self.dispatcher)
        self.audit = AuditChain.from_settings(settings.audit, self.bus, propagator=self.propagator)
        self.optimizer = BatchOptimizer(settings.optimizer, self.bus, sink=self.sink)

        domains = settings.audit.ingest_domains
        self._audit_domains = {LogDomain(d) for d in domains} if domains is not None else None

        self._buffer: List[LogRecord] = []
        self._flush_lock = asyncio.Lock()
        self._pending_actions: Set[asyncio.Task[Any]] = set()
        self._flush_task: Optional[asyncio.Task[None]] = None
        self._running = False

        if settings.rules.rules:
            self.rules.load_rules(settings.rules.rules)

        logger.info(
            "Processing pipeline initialized",
            rules=len(self.rules.rule_ids()),
            audit_enabled=settings.audit.enabled,
            delivery_sink=type(self.sink).__name__ if self.sink else None,
        )

    async def start(self) -> None:
        if self._running:
            return
        self._running = True

        start_sink = getattr(self.sink, "start", None)
        if start_sink is not None:
            await start_sink()
        await self.optimizer.start()
        self._flush_task = asyncio.create_task(self._run_flush_loop())

        logger.info("Processing pipeline started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        await self.flush()
        await self.drain_actions()
        await self.optimizer.shutdown()

        stop_sink = getattr(self.sink, "stop", None)
        if stop_sink is not None:
            await stop_sink()

        logger.info("Processing pipeline stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def stamp(self, record: LogRecord) -> LogRecord:
        if record.correlation_id is not None:
            return record
        correlation_id = self.propagator.current()
        if correlation_id is None:
            return record
        return record.model_copy(update={"correlation_id": correlation_id})

    def _should_audit(self, record: LogRecord) -> bool:
        return self._audit_domains is None or record.domain in self._audit_domains

    async def ingest(self, records: Sequence[LogRecord]) -> IngestResult:
        """Feed records to every processing path."""
        result = IngestResult(records_accepted=len(records))

        for record in records:
            record = self.stamp(record)
            self.bus.publish(RecordIngested(service=record.service, level=record.level.value))

            scope = self.propagator.scope(record.correlation_id) if record.correlation_id else nullcontext()
            with scope:
                for evaluation in self.rules.process_record(record):
                    if evaluation.alert is not None:
                        result.alerts.append(evaluation.alert)
                        self._schedule_actions(evaluation.alert)

                if self._should_audit(record):
                    entry_id = self.audit.log_from_record(record)
                    if entry_id:
                        result.audit_entry_ids.append(entry_id)

            self._buffer.append(record)

        if len(self._buffer) >= self.settings.optimizer.batch_size:
            await self.flush()

        return result

    def _schedule_actions(self, alert: TriggeredAlert) -> None:
        task = asyncio.create_task(self.propagator.bind(self.rules.dispatch)(alert))
        self._pending_actions.add(task)
        task.add_done_callback(self._pending_actions.discard)

    async def drain_actions(self) -> None:
        """Wait for in-flight alert actions."""
        if self._pending_actions:
            await asyncio.gather(*list(self._pending_actions), return_exceptions=True)

    async def flush(self) -> List[BatchResult]:
        """Process everything buffered in batches of ``batch_size``."""
        async with self._flush_lock:
            records, self._buffer = self._buffer, []
            if not records:
                return []

            size = min(self.settings.optimizer.batch_size, self.settings.optimizer.max_batch_size)
            results = []
            for i in range(0, len(records), size):
                batch = records[i:i + size]
                try:
                    results.append(await self.optimizer.process_batch(batch))
                except LogNexusException as e:
                    logger.error(
                        "Buffered batch dropped",
                        records=len(batch),
                        error_code=e.error_code,
                        error=str(e),
                    )
            return results

    async def _run_flush_loop(self) -> None:
        interval = self.settings.optimizer.flush_interval_ms / 1000
        while self._running:
            try:
                await asyncio.sleep(interval)
                if self._buffer:
                    await self.flush()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Flush loop error", error=str(e))
