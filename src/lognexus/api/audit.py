"""
Audit trail endpoints.

- POST /v1/audit/events: append an audit event
- GET /v1/audit/entries: query in-memory entries
- GET /v1/audit/verify: verify chain integrity
- GET /v1/audit/export: compliance export (json or csv)
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Response

from ..core.auth import authenticate_admin_token
from ..core.exceptions import LogNexusException
from ..core.pipeline import ProcessingPipeline
from ..models.audit import (
    AuditAction,
    AuditEventRequest,
    AuditEventType,
    AuditQuery,
    AuditSeverity,
    IntegrityReport,
)
from ..models.log_record import ErrorResponse
from .dependencies import get_pipeline

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/audit", dependencies=[Depends(authenticate_admin_token)])

_EXPORT_MEDIA_TYPES = {"json": "application/json", "csv": "text/csv"}


@router.post(
    "/events",
    status_code=201,
    responses={401: {"model": ErrorResponse, "description": "Unauthorized - admin token required"}},
    summary="Append audit event",
)
async def log_audit_event(
    event: AuditEventRequest,
    pipeline: ProcessingPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    entry_id = pipeline.audit.log_event(**event.model_dump())
    if not entry_id:
        raise LogNexusException("Audit chain is disabled", status_code=409, error_code="audit_disabled")
    return {"id": entry_id, "hash": pipeline.audit.last_hash}


@router.get("/entries", summary="Query audit entries")
async def query_entries(
    event_type: Optional[List[AuditEventType]] = Query(None),
    severity: Optional[List[AuditSeverity]] = Query(None),
    action: Optional[List[AuditAction]] = Query(None),
    user_id: Optional[List[str]] = Query(None),
    resource: Optional[List[str]] = Query(None),
    compliance_tag: Optional[List[str]] = Query(None),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    offset: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1),
    pipeline: ProcessingPipeline = Depends(get_pipeline),
) -> List[Dict[str, Any]]:
    """Newest first."""
    query = AuditQuery(
        event_types=event_type,
        severities=severity,
        actions=action,
        user_ids=user_id,
        resources=resource,
        compliance_tags=compliance_tag,
        start=start,
        end=end,
        offset=offset,
        limit=limit,
    )
    return [entry.model_dump(mode="json") for entry in pipeline.audit.query(query)]


@router.get(
    "/entries/{entry_id}",
    responses={404: {"model": ErrorResponse, "description": "Entry not found"}},
    summary="Get audit entry",
)
async def get_entry(entry_id: str, pipeline: ProcessingPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    entry = pipeline.audit.get_entry(entry_id)
    if entry is None:
        raise LogNexusException(
            f"Audit entry '{entry_id}' not found",
            status_code=404,
            error_code="audit_entry_not_found",
            details={"entry_id": entry_id},
        )
    return entry.model_dump(mode="json")


@router.get("/verify", response_model=IntegrityReport, summary="Verify chain integrity")
async def verify_chain(pipeline: ProcessingPipeline = Depends(get_pipeline)) -> IntegrityReport:
    return pipeline.audit.verify()


@router.get("/stats", summary="Audit trail statistics")
async def audit_stats(pipeline: ProcessingPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    return pipeline.audit.get_stats()


@router.get(
    "/export",
    responses={400: {"model": ErrorResponse, "description": "Unsupported export format"}},
    summary="Compliance export",
    description="""
    Export the in-memory audit trail.

    **Formats:**
    - json: entries plus trail statistics and an integrity report
    - csv: one row per entry, compliance tags joined with ';'
    """,
)
async def export_trail(
    format: str = Query("json"),
    pipeline: ProcessingPipeline = Depends(get_pipeline),
) -> Response:
    content = pipeline.audit.export(format)
    logger.info("Audit trail export requested", format=format, size_bytes=len(content))
    return Response(content=content, media_type=_EXPORT_MEDIA_TYPES[format])
