"""
Condition evaluation for alert rules.

Sliding time windows, metric extraction and one evaluator per condition
variant. Missing data always degrades to a neutral value (0 / no match).
"""

import json
import re
import statistics
from collections import deque
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Deque, List, Optional, Tuple

from pydantic import BaseModel

from ..models.alerts import (
    AnomalyCondition,
    ChainCondition,
    Condition,
    FrequencyCondition,
    PatternCondition,
    ThresholdCondition,
)
from ..models.log_record import LogLevel, LogRecord

# Threshold metrics taken as the maximum of a performance field
METRIC_FIELDS = {
    "response_time": "performance.duration",
    "memory_usage": "performance.memory_usage",
    "cpu_usage": "performance.cpu_usage",
}

ERROR_LEVELS = (LogLevel.ERROR, LogLevel.FATAL)

# Minimum baseline size before an anomaly verdict is given
MIN_BASELINE_SAMPLES = 5


class TimeWindow:
    """
    Insertion-ordered records bounded by ``[now - span, now]``.

    ``now`` is the newest record timestamp the window has seen, so late
    records never stretch the window backwards.
    """

    def __init__(self, span_ms: int) -> None:
        self.span = timedelta(milliseconds=span_ms)
        self._entries: Deque[LogRecord] = deque()
        self._latest: Optional[datetime] = None

    def add(self, record: LogRecord) -> None:
        self._entries.append(record)
        if self._latest is None or record.timestamp > self._latest:
            self._latest = record.timestamp
        self.prune(self._latest)

    def prune(self, now: datetime) -> None:
        cutoff = now - self.span
        self._entries = deque(e for e in self._entries if e.timestamp >= cutoff)

    @property
    def entries(self) -> List[LogRecord]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


def window_key(condition: Condition) -> Optional[str]:
    """Window identity ``{type}_{span}``; None for conditions without a window."""
    span = window_span_ms(condition)
    if span is None:
        return None
    return f"{condition.type}_{span}"


def window_span_ms(condition: Condition) -> Optional[int]:
    match condition:
        case ThresholdCondition() | PatternCondition() | FrequencyCondition():
            return condition.window_ms
        case ChainCondition():
            return condition.max_chain_time_ms
        case AnomalyCondition():
            return None
    raise TypeError(f"Unsupported condition type: {type(condition).__name__}")


def extract_field(record: Any, path: str) -> Any:
    """Resolve a dotted path over models and dicts; None when absent."""
    value = record
    for part in path.split("."):
        if isinstance(value, BaseModel):
            value = getattr(value, part, None)
        elif isinstance(value, dict):
            value = value.get(part)
        else:
            return None
        if value is None:
            return None
    return value


def numeric_field(record: LogRecord, path: str) -> Optional[float]:
    value = extract_field(record, path)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def field_text(record: LogRecord, path: str) -> Optional[str]:
    """Field value as searchable text; structured values are serialized as JSON."""
    value = extract_field(record, path)
    if value is None:
        return None
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def compute_metric(metric: str, entries: List[LogRecord]) -> float:
    if metric == "error_count":
        return float(sum(1 for e in entries if e.level in ERROR_LEVELS))
    if metric == "warning_count":
        return float(sum(1 for e in entries if e.level == LogLevel.WARN))

    path = METRIC_FIELDS.get(metric)
    if path is None:
        return 0.0
    values = [v for v in (numeric_field(e, path) for e in entries) if v is not None]
    return max(values) if values else 0.0


def compare(actual: float, operator: str, expected: float) -> bool:
    if operator == ">":
        return actual > expected
    if operator == ">=":
        return actual >= expected
    if operator == "<":
        return actual < expected
    if operator == "<=":
        return actual <= expected
    if operator == "==":
        return actual == expected
    return False


@lru_cache(maxsize=256)
def _compile(pattern: str, ignore_case: bool = False) -> "re.Pattern[str]":
    return re.compile(pattern, re.IGNORECASE if ignore_case else 0)


def check_threshold(condition: ThresholdCondition, window: TimeWindow) -> bool:
    value = compute_metric(condition.metric, window.entries)
    return compare(value, condition.operator, condition.threshold)


def check_pattern(condition: PatternCondition, window: TimeWindow) -> bool:
    pattern = _compile(condition.regex, condition.ignore_case)
    matches = 0
    for record in window.entries:
        for path in condition.fields:
            text = field_text(record, path)
            if text is not None and pattern.search(text):
                matches += 1
    return matches >= condition.min_occurrences


def check_frequency(condition: FrequencyCondition, window: TimeWindow) -> bool:
    count = sum(1 for e in window.entries if e.level in condition.levels)
    return count > condition.max_frequency


def _elapsed_ms(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() * 1000


def check_chain(condition: ChainCondition, window: TimeWindow) -> bool:
    """
    Match the ordered event sequence over window records in timestamp order.

    Every record matching the first step opens a candidate match, so a later
    start can still complete after an earlier one stalls. A candidate is dropped
    when its next step arrives past the gap limit or when it runs past
    ``max_chain_time_ms``.
    """
    steps = condition.event_sequence
    patterns = [_compile(step.pattern) for step in steps]
    entries = sorted(window.entries, key=lambda e: e.timestamp)

    # (next step index, first match time, last match time)
    partials: List[Tuple[int, datetime, datetime]] = []

    for record in entries:
        ts = record.timestamp
        advanced: List[Tuple[int, datetime, datetime]] = []

        for index, first_time, last_time in partials:
            if _elapsed_ms(ts, first_time) > condition.max_chain_time_ms:
                continue
            if not patterns[index].search(record.message):
                advanced.append((index, first_time, last_time))
                continue
            gap_limit = steps[index].max_time_from_previous_ms
            if gap_limit is not None and _elapsed_ms(ts, last_time) > gap_limit:
                continue
            if index + 1 == len(steps):
                return True
            advanced.append((index + 1, first_time, ts))

        if patterns[0].search(record.message):
            if len(steps) == 1:
                return True
            advanced.append((1, ts, ts))

        partials = list(dict.fromkeys(advanced))

    return False


class AnomalyBaseline:
    """
    Rolling z-score detector over the last ``historical_window`` values.

    Sensitivity 10 flags deviations beyond 1 standard deviation, sensitivity 1
    beyond 5.5. A flat baseline flags any differing value.
    """

    def __init__(self, condition: AnomalyCondition) -> None:
        self.condition = condition
        self._values: Deque[float] = deque(maxlen=condition.historical_window)

    @property
    def z_threshold(self) -> float:
        return 1.0 + (10 - self.condition.sensitivity) * 0.5

    @property
    def samples(self) -> int:
        return len(self._values)

    def observe(self, value: Optional[float]) -> bool:
        if value is None:
            return False

        anomalous = False
        required = min(MIN_BASELINE_SAMPLES, self.condition.historical_window)
        if len(self._values) >= required:
            mean = statistics.fmean(self._values)
            std = statistics.pstdev(self._values)
            if std == 0:
                anomalous = value != mean
            else:
                anomalous = abs(value - mean) / std > self.z_threshold

        self._values.append(value)
        return anomalous

    def reset(self) -> None:
        self._values.clear()


def anomaly_value(metric: str, record: LogRecord) -> Optional[float]:
    return numeric_field(record, METRIC_FIELDS.get(metric, metric))


def evaluate(
    condition: Condition,
    record: LogRecord,
    window: Optional[TimeWindow],
    baseline: Optional[AnomalyBaseline] = None,
) -> bool:
    """Evaluate one condition; windows must already contain ``record``."""
    match condition:
        case ThresholdCondition():
            return window is not None and check_threshold(condition, window)
        case PatternCondition():
            return window is not None and check_pattern(condition, window)
        case FrequencyCondition():
            return window is not None and check_frequency(condition, window)
        case ChainCondition():
            return window is not None and check_chain(condition, window)
        case AnomalyCondition():
            return baseline is not None and baseline.observe(anomaly_value(condition.metric, record))
    raise TypeError(f"Unsupported condition type: {type(condition).__name__}")
