"""
Tests for the batch optimizer.

Batch size limits, timeouts, caching, delivery and memory control.
"""

import asyncio
import json

import pytest

from lognexus.config import OptimizerSettings
from lognexus.core.events import BatchProcessed, BatchTimedOut, MemoryStatus
from lognexus.core.exceptions import BatchSizeExceededError, BatchTimeoutError, DeliveryError, ValidationError
from lognexus.core.optimizer import BatchOptimizer, chunk_records, group_records


class CountingProcessor:
    def __init__(self):
        self.calls = 0

    def __call__(self, record):
        self.calls += 1
        return {"id": record.id, "message": record.message}


class RecordingSink:
    def __init__(self):
        self.batches = []

    async def send(self, lines):
        self.batches.append(lines)


class FailingSink:
    async def send(self, lines):
        raise DeliveryError("sink down")


def make_settings(**overrides):
    values = {
        "max_batch_size": 5,
        "batch_timeout_ms": 5000,
        "max_memory_bytes": 1000,
        "gc_threshold_percent": 80.0,
    }
    values.update(overrides)
    return OptimizerSettings(**values)


@pytest.fixture
def processor():
    return CountingProcessor()


@pytest.fixture
def optimizer(bus, processor, monotonic):
    return BatchOptimizer(make_settings(), bus, processor=processor, memory_sampler=lambda: 100, clock=monotonic)


class TestBatchProcessing:
    """Batch execution."""

    @pytest.mark.asyncio
    async def test_batch_over_limit_rejected_before_processing(self, optimizer, processor, make_record):
        records = [make_record(message=f"m{i}") for i in range(6)]

        with pytest.raises(BatchSizeExceededError) as exc_info:
            await optimizer.process_batch(records)

        assert exc_info.value.status_code == 413
        assert processor.calls == 0
        assert optimizer.get_metrics()["batches_processed"] == 0

    @pytest.mark.asyncio
    async def test_batch_at_limit_processed(self, optimizer, make_record, recorder):
        records = [make_record(message=f"m{i}") for i in range(5)]

        result = await optimizer.process_batch(records)

        assert result.size == 5
        assert result.errors == 0
        assert {item["id"] for item in result.results} == {r.id for r in records}
        assert len(recorder.of_type(BatchProcessed)) == 1

    @pytest.mark.asyncio
    async def test_identical_records_hit_cache(self, optimizer, processor, make_record):
        records = [make_record(level="ERROR", message="db down") for _ in range(3)]

        result = await optimizer.process_batch(records)

        assert processor.calls == 1
        assert result.cache_hits == 2
        metrics = optimizer.get_metrics()
        assert metrics["cache_hits"] == 2
        assert metrics["cache_misses"] == 1

    @pytest.mark.asyncio
    async def test_cache_entry_expires(self, optimizer, processor, make_record, monotonic):
        await optimizer.process_batch([make_record(message="same")])
        monotonic.advance(optimizer.settings.cache_ttl_ms / 1000)
        await optimizer.process_batch([make_record(message="same")])

        assert processor.calls == 2

    @pytest.mark.asyncio
    async def test_cache_disabled(self, bus, processor, make_record):
        optimizer = BatchOptimizer(make_settings(cache_enabled=False), bus, processor=processor)
        await optimizer.process_batch([make_record(message="same"), make_record(message="same")])
        assert processor.calls == 2

    @pytest.mark.asyncio
    async def test_record_error_does_not_fail_batch(self, bus, make_record):
        def processor(record):
            if record.message == "bad":
                raise ValueError("cannot process")
            return {"id": record.id}

        optimizer = BatchOptimizer(make_settings(), bus, processor=processor)
        result = await optimizer.process_batch([make_record(message="good"), make_record(message="bad")])

        assert result.errors == 1
        assert [item for item in result.results if "error" in item][0]["error"] == "cannot process"

    @pytest.mark.asyncio
    async def test_timeout(self, bus, recorder, make_record):
        async def slow(record):
            await asyncio.sleep(1)
            return {}

        optimizer = BatchOptimizer(make_settings(), bus, processor=slow)

        with pytest.raises(BatchTimeoutError):
            await optimizer.process_batch([make_record()], timeout_ms=50)

        assert optimizer.get_metrics()["timeouts"] == 1
        assert len(recorder.of_type(BatchTimedOut)) == 1

    @pytest.mark.asyncio
    async def test_high_priority_parallel_chunks(self, bus, processor, make_record):
        optimizer = BatchOptimizer(
            make_settings(parallel_threshold=2, parallel_chunks=2),
            bus,
            processor=processor,
        )
        records = [make_record(message=f"m{i}") for i in range(5)]

        result = await optimizer.process_batch(records, priority="high")

        assert result.priority.value == "high"
        assert {item["id"] for item in result.results} == {r.id for r in records}

    @pytest.mark.asyncio
    async def test_delivery_to_sink(self, bus, make_record):
        sink = RecordingSink()
        optimizer = BatchOptimizer(make_settings(), bus, sink=sink)

        await optimizer.process_batch([make_record(message="a"), make_record(message="b")])

        assert len(sink.batches) == 1
        assert len(sink.batches[0]) == 2
        assert sink.batches[0][0]["labels"]["service"] == "api"
        assert optimizer.get_metrics()["deliveries"] == 1

    @pytest.mark.asyncio
    async def test_cache_hit_delivers_each_records_own_fields(self, bus, make_record):
        sink = RecordingSink()
        optimizer = BatchOptimizer(make_settings(), bus, sink=sink)
        first = make_record(message="db down", correlation_id="req-1", user_id="u-1")
        second = make_record(message="db down", correlation_id="req-2", offset_ms=1500, domain="security")

        result = await optimizer.process_batch([first, second])

        assert result.cache_hits == 1
        lines = {line["id"]: line for line in sink.batches[0]}
        assert set(lines) == {first.id, second.id}
        gap_ns = int(lines[second.id]["timestamp_ns"]) - int(lines[first.id]["timestamp_ns"])
        assert gap_ns == pytest.approx(1_500_000_000, abs=1_000)
        assert lines[second.id]["labels"]["domain"] == "security"
        assert json.loads(lines[first.id]["line"])["correlation_id"] == "req-1"
        second_line = json.loads(lines[second.id]["line"])
        assert second_line["correlation_id"] == "req-2"
        assert "user_id" not in second_line

    @pytest.mark.asyncio
    async def test_delivery_failure_is_counted(self, bus, make_record):
        optimizer = BatchOptimizer(make_settings(), bus, sink=FailingSink())

        result = await optimizer.process_batch([make_record()])

        assert result.size == 1
        assert optimizer.get_metrics()["delivery_failures"] == 1


class TestMemoryAndConfig:
    """Memory control, metrics and configuration updates."""

    def test_memory_below_threshold(self, optimizer, recorder):
        status = optimizer.check_memory()
        assert status.percentage == pytest.approx(10.0)
        assert status.gc_triggered is False
        assert recorder.of_type(MemoryStatus)[0].current_bytes == 100

    def test_memory_above_threshold_triggers_gc(self, bus, monkeypatch):
        monkeypatch.setattr("gc.isenabled", lambda: True)
        optimizer = BatchOptimizer(make_settings(), bus, memory_sampler=lambda: 900)

        status = optimizer.check_memory()

        assert status.gc_triggered is True
        assert optimizer.get_metrics()["gc_runs"] == 1
        assert optimizer.get_metrics()["max_memory_usage_bytes"] == 900

    def test_recommendations_for_errors(self, optimizer):
        optimizer.counters.records_processed = 10
        optimizer.counters.errors = 5
        assert any("error rate" in r for r in optimizer.get_recommendations())

    def test_no_cache_recommendation_without_traffic(self, optimizer):
        assert optimizer.get_recommendations() == []

    def test_update_config(self, optimizer):
        settings = optimizer.update_config(cache_size=1, max_batch_size=10)
        assert settings.max_batch_size == 10
        assert optimizer.cache.max_size == 1

    def test_update_config_unknown_field(self, optimizer):
        with pytest.raises(ValidationError):
            optimizer.update_config(turbo=True)

    @pytest.mark.asyncio
    async def test_start_and_stop_loops(self, optimizer):
        await optimizer.start()
        assert optimizer.is_running
        assert optimizer.loop_status() == {"memory": True, "cache_cleanup": True, "metrics": True}

        await optimizer.shutdown()
        assert not optimizer.is_running
        assert optimizer.loop_status() == {}


class TestHelpers:
    """Grouping and chunking."""

    def test_group_records_keeps_groups_adjacent(self, make_record):
        a1, b1, a2 = make_record(level="ERROR"), make_record(level="INFO"), make_record(level="ERROR")
        assert group_records([a1, b1, a2]) == [a1, a2, b1]

    def test_chunk_records(self):
        assert chunk_records(list(range(5)), 2) == [[0, 1, 2], [3, 4]]
