"""
Log ingestion API endpoints.

Main endpoint: POST /v1/logs:ingest
"""

import uuid
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends

from ..core.auth import authenticate_token
from ..core.pipeline import ProcessingPipeline
from ..models.log_record import ErrorResponse, IngestRequest, IngestResponse
from .dependencies import get_pipeline

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post(
    "/logs:ingest",
    response_model=IngestResponse,
    status_code=202,
    responses={
        401: {"model": ErrorResponse, "description": "Unauthorized"},
        413: {"model": ErrorResponse, "description": "Batch size exceeded"},
        422: {"description": "Invalid record"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
    summary="Ingest log records",
    description="""
    Ingest a group of structured log records.

    **Processing:**
    1. Authentication
    2. Correlation stamping (records without an id inherit the request's)
    3. Alert rule evaluation (actions dispatched in the background)
    4. Audit chain mirroring
    5. Buffered batch optimization and delivery
    6. Acknowledgment (202 response)

    **Request Requirements:**
    - Bearer token authentication required
    - 1-1000 records per request
    - Required fields: level, message, service
    """,
)
async def ingest_logs(
    request: IngestRequest,
    pipeline: ProcessingPipeline = Depends(get_pipeline),
    token: str = Depends(authenticate_token),
) -> IngestResponse:
    """
    Ingest log records.
    """
    request_id = str(uuid.uuid4())
    start_time = datetime.now(timezone.utc)

    logger.info(
        "Processing log ingestion request",
        request_id=request_id,
        token=token[:8] + "...",
        records_count=len(request.records),
    )

    result = await pipeline.ingest(request.records)

    logger.info(
        "Log ingestion completed successfully",
        request_id=request_id,
        records_accepted=result.records_accepted,
        alerts_triggered=len(result.alerts),
        processing_time_ms=(datetime.now(timezone.utc) - start_time).total_seconds() * 1000,
    )

    return IngestResponse(
        message="Logs accepted for processing",
        records_accepted=result.records_accepted,
        alerts_triggered=[alert.rule_id for alert in result.alerts],
        request_id=request_id,
        correlation_id=pipeline.propagator.current(),
        timestamp=start_time,
    )
