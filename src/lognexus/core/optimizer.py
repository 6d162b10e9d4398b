"""
Batch/cache optimizer.

Processes bounded batches of records with a per-batch timeout, a TTL cache
in front of the record processor, optional delivery to a sink under a bounded
connection pool, and background loops for memory control, cache cleanup and
metrics aggregation.
"""

import asyncio
import gc
import inspect
import math
import os
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import psutil
import structlog

from ..config import OptimizerSettings
from ..models.log_record import LogRecord
from .cache import TTLCache, record_cache_key
from .delivery import DeliverySink, bind_record, render_template
from .events import (
    BatchFailed,
    BatchProcessed,
    BatchTimedOut,
    CacheAccessed,
    EventBus,
    MemoryStatus,
    MetricsUpdated,
)
from .exceptions import BatchSizeExceededError, BatchTimeoutError, ValidationError

logger = structlog.get_logger(__name__)

RecordProcessor = Callable[[LogRecord], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]
RecordFinalizer = Callable[[Any, LogRecord], Dict[str, Any]]


def process_memory_bytes() -> int:
    """Resident set size of the current process."""
    return psutil.Process(os.getpid()).memory_info().rss


class BatchPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


@dataclass
class BatchResult:
    """Outcome of a completed batch."""
    batch_id: str
    results: List[Dict[str, Any]]
    cache_hits: int
    errors: int
    duration_ms: float
    priority: BatchPriority

    @property
    def size(self) -> int:
        return len(self.results)


@dataclass
class OptimizerCounters:
    """Running counters; every reported metric is derived from these."""
    records_processed: int = 0
    batches_processed: int = 0
    batch_records_total: int = 0
    batch_time_total_ms: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0
    errors: int = 0
    timeouts: int = 0
    slow_records: int = 0
    gc_runs: int = 0
    last_gc_time: Optional[float] = None
    memory_usage: int = 0
    max_memory_usage: int = 0
    active_connections: int = 0
    deliveries: int = 0
    delivery_failures: int = 0
    loop_errors: Dict[str, int] = field(default_factory=dict)


def group_records(records: Sequence[LogRecord]) -> List[LogRecord]:
    """Reorder records so those sharing (level, service) are adjacent."""
    groups: Dict[tuple, List[LogRecord]] = {}
    for record in records:
        groups.setdefault((record.level, record.service), []).append(record)
    return [record for group in groups.values() for record in group]


def chunk_records(records: List[LogRecord], chunks: int) -> List[List[LogRecord]]:
    size = math.ceil(len(records) / chunks)
    return [records[i:i + size] for i in range(0, len(records), size)]


class BatchOptimizer:
    """
    Throughput-oriented batch processor.

    A batch that exceeds ``max_batch_size`` fails before any processing. A
    batch that does not finish within its timeout is cancelled and raises
    BatchTimeoutError; partial results are discarded.

    ``processor`` output is cached by record key, so it may only depend on the
    key fields; ``finalizer`` completes it with the fields of each record.
    """

    def __init__(
        self,
        settings: OptimizerSettings,
        bus: Optional[EventBus] = None,
        processor: Optional[RecordProcessor] = None,
        finalizer: Optional[RecordFinalizer] = None,
        sink: Optional[DeliverySink] = None,
        memory_sampler: Callable[[], int] = process_memory_bytes,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.bus = bus or EventBus()
        if processor is None:
            processor, finalizer = render_template, bind_record
        self.processor: RecordProcessor = processor
        self.finalizer = finalizer
        self.sink = sink
        self._memory_sampler = memory_sampler
        self._clock = clock

        self.cache = TTLCache(settings.cache_size, settings.cache_ttl_ms, clock=clock)
        self.counters = OptimizerCounters()
        self._pool = asyncio.Semaphore(settings.max_connections)
        self._start_time = clock()

        self._running = False
        self._tasks: Dict[str, asyncio.Task[None]] = {}

        logger.info(
            "Batch optimizer initialized",
            max_batch_size=settings.max_batch_size,
            batch_timeout_ms=settings.batch_timeout_ms,
            cache_enabled=settings.cache_enabled,
            cache_size=settings.cache_size,
        )

    # Lifecycle

    async def start(self) -> None:
        """Start the memory, cache cleanup and metrics loops."""
        if self._running:
            return
        self._running = True

        self._tasks["memory"] = asyncio.create_task(
            self._run_loop("memory", lambda: self.settings.memory_check_interval_ms, self.check_memory)
        )
        if self.settings.cache_enabled:
            self._tasks["cache_cleanup"] = asyncio.create_task(
                self._run_loop("cache_cleanup", lambda: self.settings.cache_ttl_ms / 2, self.cleanup_cache)
            )
        if self.settings.enable_metrics:
            self._tasks["metrics"] = asyncio.create_task(
                self._run_loop("metrics", lambda: self.settings.metrics_interval_ms, self.publish_metrics)
            )

        logger.info("Batch optimizer started", loops=sorted(self._tasks))

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

        logger.info("Batch optimizer stopped")

    async def shutdown(self) -> None:
        """Stop background loops and drop cached state."""
        await self.stop()
        self.cache.clear()
        logger.info("Batch optimizer shutdown", records_processed=self.counters.records_processed)

    @property
    def is_running(self) -> bool:
        return self._running

    def loop_status(self) -> Dict[str, bool]:
        return {name: not task.done() for name, task in self._tasks.items()}

    async def _run_loop(self, name: str, interval_ms: Callable[[], float], action: Callable[[], Any]) -> None:
        while self._running:
            try:
                await asyncio.sleep(interval_ms() / 1000)
                result = action()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.counters.loop_errors[name] = self.counters.loop_errors.get(name, 0) + 1
                logger.error("Optimizer loop error", loop=name, error=str(e))

    # Batch processing

    async def process_batch(
        self,
        records: Sequence[LogRecord],
        priority: Union[BatchPriority, str] = BatchPriority.NORMAL,
        timeout_ms: Optional[int] = None,
    ) -> BatchResult:
        if len(records) > self.settings.max_batch_size:
            raise BatchSizeExceededError(len(records), self.settings.max_batch_size)

        priority = BatchPriority(priority)
        timeout_ms = timeout_ms or self.settings.batch_timeout_ms
        batch_id = f"batch_{uuid.uuid4().hex[:12]}"
        started = self._clock()

        try:
            result = await asyncio.wait_for(
                self._execute(batch_id, list(records), priority),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            self.counters.timeouts += 1
            logger.warning(
                "Batch processing timeout",
                batch_id=batch_id,
                batch_size=len(records),
                timeout_ms=timeout_ms,
            )
            self.bus.publish(BatchTimedOut(batch_id=batch_id, size=len(records), timeout_ms=timeout_ms))
            raise BatchTimeoutError(batch_id, timeout_ms)
        except Exception as e:
            self.counters.errors += 1
            logger.error("Batch processing failed", batch_id=batch_id, batch_size=len(records), error=str(e))
            self.bus.publish(BatchFailed(batch_id=batch_id, size=len(records), error=str(e)))
            raise

        result.duration_ms = (self._clock() - started) * 1000
        self.counters.batches_processed += 1
        self.counters.batch_records_total += len(records)
        self.counters.batch_time_total_ms += result.duration_ms

        self.bus.publish(BatchProcessed(
            batch_id=batch_id,
            size=len(records),
            duration_ms=result.duration_ms,
            cache_hits=result.cache_hits,
            errors=result.errors,
            priority=priority.value,
        ))
        return result

    async def _execute(self, batch_id: str, records: List[LogRecord], priority: BatchPriority) -> BatchResult:
        ordered = group_records(records)

        if priority == BatchPriority.HIGH and len(ordered) > self.settings.parallel_threshold:
            chunks = chunk_records(ordered, self.settings.parallel_chunks)
            chunk_results = await asyncio.gather(*(self._process_chunk(chunk) for chunk in chunks))
            results = [item for chunk in chunk_results for item in chunk]
        else:
            results = await self._process_chunk(ordered)

        if self.sink is not None:
            outputs = [item["output"] for item in results if "output" in item]
            await self._deliver(batch_id, outputs)

        return BatchResult(
            batch_id=batch_id,
            results=results,
            cache_hits=sum(1 for item in results if item.get("cached")),
            errors=sum(1 for item in results if "error" in item),
            duration_ms=0.0,
            priority=priority,
        )

    async def _process_chunk(self, records: List[LogRecord]) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        for record in records:
            try:
                results.append(await self._process_record(record))
                self.counters.records_processed += 1
            except Exception as e:
                self.counters.errors += 1
                results.append({"id": record.id, "error": str(e) or type(e).__name__})
            # yield so a batch timeout can interrupt CPU-bound processors
            await asyncio.sleep(0)
        return results

    async def _process_record(self, record: LogRecord) -> Dict[str, Any]:
        started = self._clock()
        key = record_cache_key(record)

        if self.settings.cache_enabled:
            cached = self.cache.get(key)
            if cached is not None:
                self.counters.cache_hits += 1
                self.bus.publish(CacheAccessed(hit=True))
                return {"id": record.id, "cached": True, "output": self._finalize(cached, record)}
            self.counters.cache_misses += 1
            self.bus.publish(CacheAccessed(hit=False))

        output = self.processor(record)
        if inspect.isawaitable(output):
            output = await output

        if self.settings.cache_enabled:
            self.cache.set(key, output)

        elapsed_ms = (self._clock() - started) * 1000
        if elapsed_ms > self.settings.slow_processing_threshold_ms:
            self.counters.slow_records += 1
            logger.warning(
                "Slow log processing detected",
                processing_time_ms=round(elapsed_ms, 2),
                threshold_ms=self.settings.slow_processing_threshold_ms,
                level=record.level.value,
            )

        return {"id": record.id, "cached": False, "output": self._finalize(output, record)}

    def _finalize(self, output: Any, record: LogRecord) -> Any:
        if self.finalizer is None:
            return output
        return self.finalizer(output, record)

    async def _deliver(self, batch_id: str, outputs: List[Dict[str, Any]]) -> None:
        if not outputs:
            return
        async with self._pool:
            self.counters.active_connections += 1
            try:
                await self.sink.send(outputs)
                self.counters.deliveries += 1
            except Exception as e:
                self.counters.delivery_failures += 1
                logger.error("Batch delivery failed", batch_id=batch_id, records=len(outputs), error=str(e))
            finally:
                self.counters.active_connections -= 1

    # Background work

    def cleanup_cache(self) -> int:
        removed = self.cache.cleanup_expired()
        if removed:
            logger.debug("Cache cleanup completed", cleaned_entries=removed, remaining_entries=len(self.cache))
        return removed

    def check_memory(self) -> MemoryStatus:
        """Sample memory and request collection above the threshold."""
        current = self._memory_sampler()
        self.counters.memory_usage = current
        self.counters.max_memory_usage = max(self.counters.max_memory_usage, current)

        percentage = current / self.settings.max_memory_bytes * 100
        gc_triggered = False
        if percentage > self.settings.gc_threshold_percent:
            gc_triggered = self._trigger_gc(current)

        status = MemoryStatus(
            current_bytes=current,
            max_bytes=self.settings.max_memory_bytes,
            percentage=percentage,
            gc_triggered=gc_triggered,
        )
        self.bus.publish(status)
        return status

    def _trigger_gc(self, memory_before: int) -> bool:
        if not gc.isenabled():
            logger.info("Garbage collection unavailable, skipping", memory_bytes=memory_before)
            return False

        collected = gc.collect()
        self.counters.gc_runs += 1
        self.counters.last_gc_time = self._clock()
        logger.info(
            "Garbage collection triggered",
            collected_objects=collected,
            memory_before=memory_before,
            memory_after=self._memory_sampler(),
        )
        return True

    def publish_metrics(self) -> Dict[str, Any]:
        snapshot = self.get_metrics()
        self.bus.publish(MetricsUpdated(snapshot=snapshot))
        return snapshot

    def get_metrics(self) -> Dict[str, Any]:
        c = self.counters
        elapsed = self._clock() - self._start_time
        cache_requests = c.cache_hits + c.cache_misses

        return {
            "records_processed": c.records_processed,
            "records_per_second": c.records_processed / elapsed if elapsed > 0 else 0.0,
            "batches_processed": c.batches_processed,
            "average_batch_size": c.batch_records_total / c.batches_processed if c.batches_processed else 0.0,
            "average_processing_time_ms": c.batch_time_total_ms / c.batches_processed if c.batches_processed else 0.0,
            "cache_hits": c.cache_hits,
            "cache_misses": c.cache_misses,
            "cache_hit_rate": c.cache_hits / cache_requests * 100 if cache_requests else 0.0,
            "cache_entries": len(self.cache),
            "errors": c.errors,
            "error_rate": c.errors / c.records_processed * 100 if c.records_processed else 0.0,
            "timeouts": c.timeouts,
            "slow_records": c.slow_records,
            "memory_usage_bytes": c.memory_usage,
            "max_memory_usage_bytes": c.max_memory_usage,
            "gc_runs": c.gc_runs,
            "active_connections": c.active_connections,
            "connection_pool_utilization": c.active_connections / self.settings.max_connections * 100,
            "deliveries": c.deliveries,
            "delivery_failures": c.delivery_failures,
        }

    def get_recommendations(self) -> List[str]:
        metrics = self.get_metrics()
        recommendations = []

        if metrics["error_rate"] > 5:
            recommendations.append("High error rate detected - investigate log processing issues")
        cache_used = self.settings.cache_enabled and metrics["cache_hits"] + metrics["cache_misses"] > 0
        if cache_used and metrics["cache_hit_rate"] < 80:
            recommendations.append("Low cache hit rate - consider increasing cache size or TTL")
        if metrics["average_processing_time_ms"] > 1000:
            recommendations.append("High average processing time - optimize log processing logic")
        if metrics["connection_pool_utilization"] > 90:
            recommendations.append("High connection pool utilization - consider increasing max connections")
        if metrics["slow_records"] > metrics["records_processed"] * 0.1:
            recommendations.append("Many slow records detected - optimize processing algorithms")
        if metrics["memory_usage_bytes"] > self.settings.max_memory_bytes * 0.8:
            recommendations.append("High memory usage - consider reducing batch sizes or enabling GC")

        return recommendations

    def update_config(self, **changes: Any) -> OptimizerSettings:
        """Apply configuration changes; loops pick up new intervals on their next cycle."""
        unknown = sorted(set(changes) - set(OptimizerSettings.model_fields))
        if unknown:
            raise ValidationError("Unknown optimizer settings", details={"fields": unknown})

        old = self.settings
        self.settings = old.model_copy(update=changes)

        if self.settings.cache_size != old.cache_size or self.settings.cache_ttl_ms != old.cache_ttl_ms:
            self.cache.resize(self.settings.cache_size, self.settings.cache_ttl_ms)
        if self.settings.max_connections != old.max_connections:
            self._pool = asyncio.Semaphore(self.settings.max_connections)
        if not self.settings.cache_enabled and old.cache_enabled:
            self.cache.clear()

        logger.info("Optimization config updated", changes=changes)
        return self.settings
