"""
Alert rule configuration and triggered alert models.

Conditions form a tagged union discriminated on ``type``; unknown types and
empty condition lists are rejected by validation before a rule is activated.
Both snake_case and camelCase keys are accepted in declarative configs.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .log_record import LogDomain, LogLevel, LogRecord


class AlertSeverity(str, Enum):
    """Alert severity levels."""

    LOW = "low"
    INFO = "info"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ActionType(str, Enum):
    """Notification channels an alert can be dispatched to."""

    EMAIL = "email"
    WEBHOOK = "webhook"
    SLACK = "slack"
    SMS = "sms"
    PAGERDUTY = "pagerduty"


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )


def _check_regex(pattern: str) -> str:
    try:
        re.compile(pattern)
    except re.error as e:
        raise ValueError(f"Invalid regular expression '{pattern}': {e}")
    return pattern


class ThresholdCondition(_ConfigModel):
    """Metric computed over a window compared against a threshold."""

    type: Literal["threshold"] = "threshold"
    metric: Literal["error_count", "warning_count", "response_time", "memory_usage", "cpu_usage"]
    threshold: float
    window_ms: int = Field(gt=0)
    operator: Literal[">", ">=", "<", "<=", "=="]


class PatternCondition(_ConfigModel):
    """Regex matches across record fields within a window."""

    type: Literal["pattern"] = "pattern"
    regex: str = Field(min_length=1)
    fields: List[str] = Field(default_factory=lambda: ["message"], min_length=1)
    min_occurrences: int = Field(default=1, ge=1)
    window_ms: int = Field(gt=0)
    ignore_case: bool = False

    @field_validator("regex")
    def validate_regex(cls, v: str) -> str:
        return _check_regex(v)


class FrequencyCondition(_ConfigModel):
    """Count of records at the given levels exceeding a maximum within a window."""

    type: Literal["frequency"] = "frequency"
    levels: List[LogLevel] = Field(min_length=1)
    max_frequency: int = Field(ge=0)
    window_ms: int = Field(gt=0)

    @field_validator("levels", mode="before")
    def parse_levels(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [LogLevel.parse(level) for level in v]
        return v


class AnomalyCondition(_ConfigModel):
    """Current metric value compared against a rolling statistical baseline."""

    type: Literal["anomaly"] = "anomaly"
    metric: str = Field(min_length=1)
    sensitivity: int = Field(ge=1, le=10)
    historical_window: int = Field(ge=2, description="Number of past values in the baseline")


class ChainStep(_ConfigModel):
    """One step of an ordered event sequence."""

    pattern: str = Field(min_length=1)
    max_time_from_previous_ms: Optional[int] = Field(default=None, gt=0)

    @field_validator("pattern")
    def validate_pattern(cls, v: str) -> str:
        return _check_regex(v)


class ChainCondition(_ConfigModel):
    """Ordered sequence of events completing within a bounded time."""

    type: Literal["chain"] = "chain"
    event_sequence: List[ChainStep] = Field(min_length=1)
    max_chain_time_ms: int = Field(gt=0)


Condition = Annotated[
    Union[ThresholdCondition, PatternCondition, FrequencyCondition, AnomalyCondition, ChainCondition],
    Field(discriminator="type"),
]


class RuleFilters(_ConfigModel):
    """
    Allow-lists restricting which records a rule sees.

    A record failing any configured list is invisible to the rule.
    """

    levels: Optional[List[LogLevel]] = None
    domains: Optional[List[LogDomain]] = None
    services: Optional[List[str]] = None
    user_ids: Optional[List[str]] = None

    @field_validator("levels", mode="before")
    def parse_levels(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [LogLevel.parse(level) for level in v]
        return v

    def allows(self, record: LogRecord) -> bool:
        if self.levels is not None and record.level not in self.levels:
            return False
        if self.domains is not None and record.domain not in self.domains:
            return False
        if self.services is not None and record.service not in self.services:
            return False
        if self.user_ids is not None and record.user_id not in self.user_ids:
            return False
        return True


class ActionRef(_ConfigModel):
    """Reference to a notification action."""

    type: ActionType
    config: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True


class AlertRuleConfig(_ConfigModel):
    """Declarative alert rule."""

    id: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1)
    description: str = ""
    severity: AlertSeverity = AlertSeverity.MEDIUM
    conditions: List[Condition] = Field(min_length=1)
    filters: Optional[RuleFilters] = None
    actions: List[ActionRef] = Field(default_factory=list)
    enabled: bool = True
    cooldown_ms: Optional[int] = Field(default=None, ge=0)
    max_alerts_per_hour: Optional[int] = Field(default=None, ge=1)


class TriggeredAlert(BaseModel):
    """A non-suppressed rule trigger. Immutable after creation."""

    rule_id: str
    rule_name: str
    severity: AlertSeverity
    triggered_at: datetime
    trigger_entries: List[LogRecord]
    conditions_met: List[str]
    context: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)
