"""
Log record data models and validation.

A LogRecord is the core's unit of input. It is frozen once constructed;
the pipeline stamps correlation ids by copying, never by mutation.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LogLevel(str, Enum):
    """Allowed log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    FATAL = "FATAL"

    @classmethod
    def parse(cls, value: Any) -> "LogLevel":
        """Case-insensitive parse accepting WARNING as WARN."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().upper()
        if text == "WARNING":
            text = "WARN"
        return cls(text)


class LogDomain(str, Enum):
    """Functional domain a record belongs to."""

    SYSTEM = "system"
    BUSINESS = "business"
    SECURITY = "security"
    PERFORMANCE = "performance"
    AUDIT = "audit"


class PerformanceInfo(BaseModel):
    """Performance measurements attached to a record."""

    duration: Optional[float] = Field(default=None, description="Operation duration in milliseconds")
    value: Optional[float] = None
    request_size: Optional[int] = None
    response_size: Optional[int] = None
    memory_usage: Optional[float] = None
    cpu_usage: Optional[float] = None
    additional_metrics: Dict[str, float] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class ErrorInfo(BaseModel):
    """Error details attached to a record."""

    message: str
    code: Optional[str] = None
    name: Optional[str] = None
    stack: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class LogRecord(BaseModel):
    """
    Individual log record handed to the processing core.

    Required fields: timestamp, level, message, service.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Record identifier")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the log event occurred",
    )
    level: LogLevel = Field(description="Log level (DEBUG, INFO, WARN, ERROR, FATAL)")
    message: str = Field(min_length=1, max_length=8192, description="Log message content")
    service: str = Field(min_length=1, max_length=64, description="Originating service")
    domain: LogDomain = Field(default=LogDomain.SYSTEM, description="Functional domain")

    correlation_id: Optional[str] = Field(default=None, max_length=128)
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    performance: Optional[PerformanceInfo] = None
    error: Optional[ErrorInfo] = None

    @field_validator("level", mode="before")
    def normalize_level(cls, v: Any) -> LogLevel:
        """Accept lowercase levels and WARNING."""
        try:
            return LogLevel.parse(v)
        except ValueError:
            raise ValueError(f"Unknown log level '{v}'")

    @field_validator("timestamp")
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Naive timestamps are taken as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    model_config = ConfigDict(frozen=True)


class IngestRequest(BaseModel):
    """Ingestion request body."""

    records: List[LogRecord] = Field(min_length=1, max_length=1000, description="Log records to ingest")


class IngestResponse(BaseModel):
    """
    Response from log ingestion endpoint.

    202 Accepted response with acknowledgment.
    """

    message: str = Field(description="Response message")
    records_accepted: int = Field(description="Number of records accepted")
    alerts_triggered: List[str] = Field(default_factory=list, description="Ids of rules that fired")
    request_id: str = Field(description="Unique request identifier")
    correlation_id: Optional[str] = Field(default=None, description="Request correlation id")
    timestamp: datetime = Field(description="Processing timestamp")


class ErrorResponse(BaseModel):
    """
    Standard error response model.
    """

    error: str = Field(description="Error code")
    message: str = Field(description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Additional error details"
    )
