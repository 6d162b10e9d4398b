"""
Audit chain data models.

Covers the event-type catalogue used for compliance mapping (GDPR, SOX, HIPAA),
the hash-linked entry itself, retention policies and query filters.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

AuditResult = Literal["SUCCESS", "FAILURE", "PARTIAL"]


class AuditEventType(str, Enum):
    """Audit event types based on common compliance frameworks."""

    # Authentication & authorization
    USER_LOGIN = "user.login"
    USER_LOGOUT = "user.logout"
    USER_LOGIN_FAILED = "user.login.failed"
    USER_PASSWORD_CHANGED = "user.password.changed"
    USER_PERMISSION_GRANTED = "user.permission.granted"
    USER_PERMISSION_REVOKED = "user.permission.revoked"

    # Data access & manipulation
    DATA_READ = "data.read"
    DATA_CREATE = "data.create"
    DATA_UPDATE = "data.update"
    DATA_DELETE = "data.delete"
    DATA_EXPORT = "data.export"
    DATA_IMPORT = "data.import"

    # System administration
    SYSTEM_CONFIG_CHANGED = "system.config.changed"
    SYSTEM_USER_CREATED = "system.user.created"
    SYSTEM_USER_DELETED = "system.user.deleted"
    SYSTEM_BACKUP_CREATED = "system.backup.created"
    SYSTEM_RESTORE_PERFORMED = "system.restore.performed"

    # Privacy & GDPR
    PRIVACY_DATA_REQUEST = "privacy.data.request"
    PRIVACY_DATA_DELETION = "privacy.data.deletion"
    PRIVACY_CONSENT_GRANTED = "privacy.consent.granted"
    PRIVACY_CONSENT_REVOKED = "privacy.consent.revoked"

    # Financial (SOX)
    FINANCIAL_TRANSACTION = "financial.transaction"
    FINANCIAL_REPORT_GENERATED = "financial.report.generated"
    FINANCIAL_DATA_MODIFIED = "financial.data.modified"

    # Security
    SECURITY_BREACH_DETECTED = "security.breach.detected"
    SECURITY_VULNERABILITY_FOUND = "security.vulnerability.found"
    SECURITY_POLICY_VIOLATION = "security.policy.violation"

    CUSTOM = "custom"


class AuditAction(str, Enum):
    """Actions recorded in audit entries."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    LOGIN = "login"
    LOGOUT = "logout"
    ACCESS = "access"
    EXPORT = "export"
    IMPORT = "import"
    CONFIGURE = "configure"


class AuditSeverity(str, Enum):
    """Audit severity levels."""

    LOW = "low"
    INFO = "info"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditError(BaseModel):
    """Error information for failed actions."""

    code: str
    message: str
    stack: Optional[str] = None


class AuditEntry(BaseModel):
    """
    Hash-linked audit entry.

    ``hash`` is an HMAC over every other field (including ``previous_hash``);
    the genesis entry has ``previous_hash = None``.
    """

    id: str
    timestamp: datetime
    event_type: AuditEventType
    severity: AuditSeverity
    action: AuditAction
    result: AuditResult
    description: str

    # Actor fields
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    resource: Optional[str] = None
    resource_id: Optional[str] = None
    correlation_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    request_data: Optional[Dict[str, Any]] = None
    response_data: Optional[Dict[str, Any]] = None
    error: Optional[AuditError] = None
    location: Optional[Dict[str, Any]] = None
    compliance_tags: List[str] = Field(default_factory=list)

    hash: str = ""
    previous_hash: Optional[str] = None


class RetentionPolicy(BaseModel):
    """
    Retention rule for audit entries.

    Policies are independent: an entry is removed as soon as any policy whose
    filters match it has a retention window that elapsed.
    """

    retention_days: float = Field(gt=0)
    archive_after_days: Optional[float] = Field(default=None, gt=0)
    event_types: Optional[List[AuditEventType]] = None
    severities: Optional[List[AuditSeverity]] = None

    @model_validator(mode="after")
    def check_archive_window(self) -> "RetentionPolicy":
        if self.archive_after_days is not None and self.archive_after_days > self.retention_days:
            raise ValueError("archive_after_days cannot exceed retention_days")
        return self

    def applies_to(self, entry: AuditEntry) -> bool:
        if self.event_types is not None and entry.event_type not in self.event_types:
            return False
        if self.severities is not None and entry.severity not in self.severities:
            return False
        return True


class AuditQuery(BaseModel):
    """Audit query filters. Results are newest-first."""

    event_types: Optional[List[AuditEventType]] = None
    severities: Optional[List[AuditSeverity]] = None
    user_ids: Optional[List[str]] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    actions: Optional[List[AuditAction]] = None
    results: Optional[List[AuditResult]] = None
    resources: Optional[List[str]] = None
    compliance_tags: Optional[List[str]] = None
    offset: int = Field(default=0, ge=0)
    limit: Optional[int] = Field(default=None, ge=1)

    model_config = ConfigDict(extra="forbid")


class IntegrityViolation(BaseModel):
    """One finding of an integrity verification pass."""

    entry_id: str
    index: int
    reason: Literal["hash mismatch", "chain integrity violation"]


class IntegrityReport(BaseModel):
    """Complete tamper report; verification never stops at the first failure."""

    is_valid: bool
    invalid_entries: List[IntegrityViolation] = Field(default_factory=list)
    total_checked: int = 0
    checked_at: datetime


class AuditEventRequest(BaseModel):
    """Explicit audit call submitted over HTTP."""

    event_type: AuditEventType
    action: AuditAction
    severity: AuditSeverity = AuditSeverity.INFO
    result: AuditResult = "SUCCESS"
    description: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    compliance_tags: List[str] = Field(default_factory=list)
