"""
Tamper-evident audit chain.

Each entry carries an HMAC over its canonical JSON form (every field except
``hash``, including ``previous_hash``), linking it to the entry before it.
The chain keeps a bounded in-memory window; entries leaving memory are handed
off through AuditEntryArchived / AuditEntryExpired events.
"""

import hashlib
import hmac
import json
import math
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import structlog
from aiofiles import open as aio_open

from ..models.audit import (
    AuditAction,
    AuditEntry,
    AuditError,
    AuditEventType,
    AuditQuery,
    AuditResult,
    AuditSeverity,
    IntegrityReport,
    IntegrityViolation,
    RetentionPolicy,
)
from ..models.log_record import LogLevel, LogRecord
from .correlation import CorrelationPropagator
from .events import (
    AuditEntryArchived,
    AuditEntryExpired,
    AuditLogged,
    AuditTrailCleared,
    EventBus,
    IntegrityChecked,
)
from .exceptions import ExportFormatError

logger = structlog.get_logger(__name__)

CSV_HEADER = [
    "id", "timestamp", "eventType", "severity", "userId",
    "action", "result", "description", "complianceTags",
]
TAG_DELIMITER = ";"

# Message keywords checked in order when inferring an event type
_EVENT_KEYWORDS = [
    ("login", AuditEventType.USER_LOGIN),
    ("logout", AuditEventType.USER_LOGOUT),
    ("password", AuditEventType.USER_PASSWORD_CHANGED),
    ("created", AuditEventType.DATA_CREATE),
    ("updated", AuditEventType.DATA_UPDATE),
    ("deleted", AuditEventType.DATA_DELETE),
    ("export", AuditEventType.DATA_EXPORT),
    ("import", AuditEventType.DATA_IMPORT),
]

_LEVEL_SEVERITY = {
    LogLevel.DEBUG: AuditSeverity.LOW,
    LogLevel.INFO: AuditSeverity.INFO,
    LogLevel.WARN: AuditSeverity.MEDIUM,
    LogLevel.ERROR: AuditSeverity.HIGH,
    LogLevel.FATAL: AuditSeverity.CRITICAL,
}


def infer_event_type(record: LogRecord) -> AuditEventType:
    message = record.message.lower()
    for keyword, event_type in _EVENT_KEYWORDS:
        if keyword in message:
            return event_type
    return AuditEventType.CUSTOM


def severity_for_level(level: LogLevel) -> AuditSeverity:
    return _LEVEL_SEVERITY.get(level, AuditSeverity.INFO)


def canonical_json(entry: AuditEntry) -> str:
    """Key-sorted JSON of every field except ``hash``."""
    data = entry.model_dump(mode="json", exclude={"hash"})
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def _csv_cell(value: str) -> str:
    if any(ch in value for ch in ',"\n\r'):
        return '"' + value.replace('"', '""') + '"'
    return value


class AuditChain:
    """
    Append-only HMAC hash chain of audit entries.

    Appends are serialized under a lock so ``previous_hash`` linkage follows
    completion order.
    """

    def __init__(
        self,
        bus: Optional[EventBus] = None,
        secret_key: str = "default-secret-key",
        hash_algorithm: str = "sha256",
        max_memory_entries: int = 10000,
        retention_policies: Optional[Sequence[Any]] = None,
        enabled: bool = True,
        enable_integrity_verification: bool = True,
        auto_archive: bool = True,
        propagator: Optional[CorrelationPropagator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if hash_algorithm not in ("sha256", "sha512"):
            raise ValueError(f"Unsupported hash algorithm '{hash_algorithm}'")

        self.bus = bus or EventBus()
        self.enabled = enabled
        self.enable_integrity_verification = enable_integrity_verification
        self.auto_archive = auto_archive
        self.max_memory_entries = max_memory_entries
        self.retention_policies = [RetentionPolicy.model_validate(p) for p in (retention_policies or [])]
        self.propagator = propagator

        self._secret = secret_key.encode("utf-8")
        self._digest = getattr(hashlib, hash_algorithm)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()

        self._entries: List[AuditEntry] = []
        self._last_hash: Optional[str] = None
        # successor id -> hash of its removed predecessor
        self._pruned_predecessors: Dict[str, str] = {}

        self._reset_stats()

        logger.info(
            "Audit chain initialized",
            hash_algorithm=hash_algorithm,
            max_memory_entries=max_memory_entries,
            retention_policies=len(self.retention_policies),
        )

    @classmethod
    def from_settings(cls, settings: Any, bus: EventBus, **kwargs: Any) -> "AuditChain":
        return cls(
            bus=bus,
            secret_key=settings.secret_key,
            hash_algorithm=settings.hash_algorithm,
            max_memory_entries=settings.max_memory_entries,
            retention_policies=settings.retention_policies,
            enabled=settings.enabled,
            enable_integrity_verification=settings.enable_integrity_verification,
            auto_archive=settings.auto_archive,
            **kwargs,
        )

    def _reset_stats(self) -> None:
        self._stats: Dict[str, Any] = {
            "total_entries": 0,
            "entries_by_type": {},
            "entries_by_severity": {s.value: 0 for s in AuditSeverity},
            "entries_by_result": {},
            "oldest_entry": None,
            "newest_entry": None,
            "archived_entries": 0,
            "expired_entries": 0,
            "integrity_checks_passed": 0,
            "integrity_checks_failed": 0,
            "last_integrity_check": None,
        }

    def compute_hash(self, entry: AuditEntry) -> str:
        return hmac.new(self._secret, canonical_json(entry).encode("utf-8"), self._digest).hexdigest()

    @property
    def last_hash(self) -> Optional[str]:
        return self._last_hash

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> List[AuditEntry]:
        with self._lock:
            return list(self._entries)

    def log_event(
        self,
        event_type: AuditEventType,
        action: AuditAction,
        *,
        severity: AuditSeverity = AuditSeverity.INFO,
        result: AuditResult = "SUCCESS",
        description: Optional[str] = None,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        request_data: Optional[Dict[str, Any]] = None,
        response_data: Optional[Dict[str, Any]] = None,
        error: Optional[AuditError] = None,
        location: Optional[Dict[str, Any]] = None,
        compliance_tags: Optional[List[str]] = None,
    ) -> str:
        """
        Append an audit entry and return its id.

        Returns an empty string when the chain is disabled.
        """
        if not self.enabled:
            return ""

        event_type = AuditEventType(event_type)
        if correlation_id is None and self.propagator is not None:
            correlation_id = self.propagator.current()

        with self._lock:
            entry = AuditEntry(
                id=f"audit_{uuid.uuid4().hex}",
                timestamp=self._clock(),
                event_type=event_type,
                severity=severity,
                action=action,
                result=result,
                description=description or f"{event_type.value} performed",
                user_id=user_id,
                user_email=user_email,
                session_id=session_id,
                ip_address=ip_address,
                user_agent=user_agent,
                resource=resource,
                resource_id=resource_id,
                correlation_id=correlation_id,
                context=context or {},
                request_data=request_data,
                response_data=response_data,
                error=error,
                location=location,
                compliance_tags=compliance_tags or [],
                previous_hash=self._last_hash,
            )
            entry.hash = self.compute_hash(entry)
            self._last_hash = entry.hash
            self._entries.append(entry)
            self._update_stats(entry)

            archived = self._enforce_memory_limit()
            expired, aged = self._apply_retention() if self.auto_archive else ([], [])

        self.bus.publish(AuditLogged(entry=entry))
        for removed in archived:
            self.bus.publish(AuditEntryArchived(entry=removed, reason="memory_limit"))
        for removed in aged:
            self.bus.publish(AuditEntryArchived(entry=removed, reason="archive_age"))
        for removed in expired:
            self.bus.publish(AuditEntryExpired(entry=removed))

        logger.debug(
            "Audit event logged",
            entry_id=entry.id,
            event_type=event_type.value,
            severity=entry.severity.value,
        )
        return entry.id

    def log_from_record(
        self,
        record: LogRecord,
        event_type: Optional[AuditEventType] = None,
        action: Optional[AuditAction] = None,
        compliance_tags: Optional[List[str]] = None,
    ) -> str:
        """Mirror a log record into the chain, inferring type and severity."""
        error = None
        if record.error is not None:
            error = AuditError(
                code=record.error.code or record.error.name or "error",
                message=record.error.message,
                stack=record.error.stack,
            )

        return self.log_event(
            event_type or infer_event_type(record),
            action or AuditAction.READ,
            severity=severity_for_level(record.level),
            description=record.message,
            user_id=record.user_id,
            session_id=record.session_id,
            resource=record.service,
            correlation_id=record.correlation_id,
            context=dict(record.context),
            error=error,
            compliance_tags=compliance_tags,
        )

    def _update_stats(self, entry: AuditEntry) -> None:
        stats = self._stats
        stats["total_entries"] += 1
        by_type = stats["entries_by_type"]
        by_type[entry.event_type.value] = by_type.get(entry.event_type.value, 0) + 1
        stats["entries_by_severity"][entry.severity.value] += 1
        by_result = stats["entries_by_result"]
        by_result[entry.result] = by_result.get(entry.result, 0) + 1

        if stats["oldest_entry"] is None or entry.timestamp < stats["oldest_entry"]:
            stats["oldest_entry"] = entry.timestamp
        if stats["newest_entry"] is None or entry.timestamp > stats["newest_entry"]:
            stats["newest_entry"] = entry.timestamp

    def _remove_where(self, predicate: Callable[[AuditEntry], bool]) -> List[AuditEntry]:
        """Remove matching entries, remembering the link each survivor expects."""
        kept: List[AuditEntry] = []
        removed: List[AuditEntry] = []
        removed_predecessor: Optional[AuditEntry] = None

        for entry in self._entries:
            if predicate(entry):
                removed.append(entry)
                self._pruned_predecessors.pop(entry.id, None)
                removed_predecessor = entry
                continue
            if removed_predecessor is not None:
                # an earlier removal already recorded the original link
                self._pruned_predecessors.setdefault(entry.id, removed_predecessor.hash)
                removed_predecessor = None
            kept.append(entry)

        self._entries = kept
        return removed

    def _enforce_memory_limit(self) -> List[AuditEntry]:
        overflow = len(self._entries) - self.max_memory_entries
        if overflow <= 0:
            return []
        oldest = {entry.id for entry in self._entries[:overflow]}
        removed = self._remove_where(lambda entry: entry.id in oldest)
        self._stats["archived_entries"] += len(removed)
        return removed

    def _apply_retention(self) -> Tuple[List[AuditEntry], List[AuditEntry]]:
        """
        Apply every policy independently.

        Returns (expired, archived): entries past a retention window, then
        entries past an archive window.
        """
        now = self._clock()
        expired: List[AuditEntry] = []
        archived: List[AuditEntry] = []

        for policy in self.retention_policies:
            cutoff = now - timedelta(days=policy.retention_days)
            expired.extend(self._remove_where(
                lambda entry, p=policy, c=cutoff: entry.timestamp < c and p.applies_to(entry)
            ))

        for policy in self.retention_policies:
            if policy.archive_after_days is None:
                continue
            cutoff = now - timedelta(days=policy.archive_after_days)
            archived.extend(self._remove_where(
                lambda entry, p=policy, c=cutoff: entry.timestamp < c and p.applies_to(entry)
            ))

        self._stats["expired_entries"] += len(expired)
        self._stats["archived_entries"] += len(archived)
        if expired or archived:
            logger.info("Retention applied", expired=len(expired), archived=len(archived))
        return expired, archived

    def verify(self) -> IntegrityReport:
        """
        Walk the in-memory chain and report every violation.

        Each entry's stored hash is compared with its recomputed hash, and its
        ``previous_hash`` with the hash of the entry before it. Once a link is
        broken every later entry is reported as a chain integrity violation.
        """
        checked_at = self._clock()
        if not self.enable_integrity_verification:
            return IntegrityReport(is_valid=True, total_checked=0, checked_at=checked_at)

        with self._lock:
            entries = list(self._entries)
            pruned = dict(self._pruned_predecessors)

        violations: List[IntegrityViolation] = []
        broken = False
        previous_hash: Optional[str] = None

        for index, entry in enumerate(entries):
            expected_link = pruned.get(entry.id, previous_hash)
            if broken or entry.previous_hash != expected_link:
                violations.append(IntegrityViolation(
                    entry_id=entry.id, index=index, reason="chain integrity violation",
                ))
                broken = True
            if entry.hash != self.compute_hash(entry):
                violations.append(IntegrityViolation(
                    entry_id=entry.id, index=index, reason="hash mismatch",
                ))
                broken = True
            previous_hash = entry.hash

        report = IntegrityReport(
            is_valid=not violations,
            invalid_entries=violations,
            total_checked=len(entries),
            checked_at=checked_at,
        )

        with self._lock:
            key = "integrity_checks_passed" if report.is_valid else "integrity_checks_failed"
            self._stats[key] += 1
            self._stats["last_integrity_check"] = checked_at

        if not report.is_valid:
            logger.warning(
                "Audit chain integrity violations detected",
                violations=len(violations),
                first_entry=violations[0].entry_id,
            )
        self.bus.publish(IntegrityChecked(
            is_valid=report.is_valid,
            total_checked=report.total_checked,
            violations=len(violations),
        ))
        return report

    def query(self, query: Optional[AuditQuery] = None, **filters: Any) -> List[AuditEntry]:
        """Filter in-memory entries; newest first, then offset/limit."""
        if query is None:
            query = AuditQuery(**filters)

        def matches(entry: AuditEntry) -> bool:
            if query.event_types is not None and entry.event_type not in query.event_types:
                return False
            if query.severities is not None and entry.severity not in query.severities:
                return False
            if query.user_ids is not None and entry.user_id not in query.user_ids:
                return False
            if query.start is not None and entry.timestamp < query.start:
                return False
            if query.end is not None and entry.timestamp > query.end:
                return False
            if query.actions is not None and entry.action not in query.actions:
                return False
            if query.results is not None and entry.result not in query.results:
                return False
            if query.resources is not None and entry.resource not in query.resources:
                return False
            if query.compliance_tags is not None and not set(query.compliance_tags) & set(entry.compliance_tags):
                return False
            return True

        with self._lock:
            filtered = [entry for entry in self._entries if matches(entry)]

        filtered.sort(key=lambda entry: entry.timestamp, reverse=True)
        end = query.offset + query.limit if query.limit is not None else None
        return filtered[query.offset:end]

    def get_entry(self, entry_id: str) -> Optional[AuditEntry]:
        with self._lock:
            for entry in self._entries:
                if entry.id == entry_id:
                    return entry
        return None

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
            stats["entries_by_type"] = dict(stats["entries_by_type"])
            stats["entries_by_severity"] = dict(stats["entries_by_severity"])
            stats["entries_by_result"] = dict(stats["entries_by_result"])
            stats["entries_in_memory"] = len(self._entries)

        oldest, newest = stats["oldest_entry"], stats["newest_entry"]
        if oldest is not None and newest is not None:
            days = max(1, math.ceil((newest - oldest).total_seconds() / 86400))
            stats["average_entries_per_day"] = stats["total_entries"] / days
        else:
            stats["average_entries_per_day"] = 0.0

        for key in ("oldest_entry", "newest_entry", "last_integrity_check"):
            if stats[key] is not None:
                stats[key] = stats[key].isoformat()
        return stats

    def export(self, fmt: str = "json") -> str:
        """Compliance export with statistics and an integrity report."""
        if fmt not in ("json", "csv"):
            raise ExportFormatError(fmt)

        entries = self.entries()
        if fmt == "csv":
            lines = [",".join(CSV_HEADER)]
            for entry in entries:
                description = entry.description.replace('"', '""')
                lines.append(",".join([
                    _csv_cell(entry.id),
                    entry.timestamp.isoformat(),
                    entry.event_type.value,
                    entry.severity.value,
                    _csv_cell(entry.user_id or ""),
                    entry.action.value,
                    entry.result,
                    f'"{description}"',
                    _csv_cell(TAG_DELIMITER.join(entry.compliance_tags)),
                ]))
            return "\n".join(lines)

        report = self.verify()
        return json.dumps(
            {
                "export_timestamp": self._clock().isoformat(),
                "trail_stats": self.get_stats(),
                "integrity_check": report.model_dump(mode="json"),
                "entries": [entry.model_dump(mode="json") for entry in entries],
            },
            indent=2,
        )

    async def export_to_file(self, path: str, fmt: str = "json") -> int:
        """Write a compliance export to ``path``; returns characters written."""
        content = self.export(fmt)
        async with aio_open(path, "w", encoding="utf-8") as f:
            await f.write(content)
        logger.info("Audit trail exported", path=path, format=fmt, entries=len(self._entries))
        return len(content)

    def clear_all(self) -> int:
        """Drop every entry and restart the chain from genesis."""
        with self._lock:
            count = len(self._entries)
            self._entries = []
            self._last_hash = None
            self._pruned_predecessors.clear()
            self._reset_stats()

        logger.warning("Audit trail cleared", entries_removed=count)
        self.bus.publish(AuditTrailCleared(count=count))
        return count
