"""
Pydantic data models package.

Contains all data validation models for:
- Log records and ingestion requests
- Alert rule configuration and triggered alerts
- Audit entries, retention policies and queries
"""

from .alerts import (
    ActionRef,
    ActionType,
    AlertRuleConfig,
    AlertSeverity,
    AnomalyCondition,
    ChainCondition,
    ChainStep,
    Condition,
    FrequencyCondition,
    PatternCondition,
    RuleFilters,
    ThresholdCondition,
    TriggeredAlert,
)
from .audit import (
    AuditAction,
    AuditEntry,
    AuditEventRequest,
    AuditEventType,
    AuditQuery,
    AuditSeverity,
    IntegrityReport,
    IntegrityViolation,
    RetentionPolicy,
)
from .log_record import (
    ErrorInfo,
    ErrorResponse,
    IngestRequest,
    IngestResponse,
    LogDomain,
    LogLevel,
    LogRecord,
    PerformanceInfo,
)

__all__ = [
    # Log record models
    "LogRecord",
    "LogLevel",
    "LogDomain",
    "PerformanceInfo",
    "ErrorInfo",
    "IngestRequest",
    "IngestResponse",
    "ErrorResponse",

    # Alert models
    "AlertRuleConfig",
    "AlertSeverity",
    "ActionRef",
    "ActionType",
    "Condition",
    "ThresholdCondition",
    "PatternCondition",
    "FrequencyCondition",
    "AnomalyCondition",
    "ChainCondition",
    "ChainStep",
    "RuleFilters",
    "TriggeredAlert",

    # Audit models
    "AuditEntry",
    "AuditEventType",
    "AuditAction",
    "AuditSeverity",
    "AuditQuery",
    "AuditEventRequest",
    "RetentionPolicy",
    "IntegrityReport",
    "IntegrityViolation",
]
