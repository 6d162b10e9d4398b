"""
Metrics endpoints.

- /metrics: Prometheus text format for scraping
- /v1/metrics: JSON snapshot of optimizer, rule engine and audit statistics
"""

from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..core.pipeline import ProcessingPipeline
from .dependencies import get_pipeline

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="""
    Prometheus metrics endpoint in standard text format.

    **Key Metrics:**
    - records_ingested_total{service,level} - Records ingested
    - alerts_triggered_total{rule_id,severity} - Alerts fired
    - alerts_suppressed_total{rule_id,reason} - Cooldown and rate-limit suppressions
    - audit_entries_total{event_type} - Audit chain appends
    - batches_processed_total{priority} - Optimizer batches
    - cache_requests_total{result} - Record cache hits and misses
    - http_request_duration_seconds - Request latency histogram
    """,
)
async def get_metrics(request: Request) -> Response:
    metrics_collector = getattr(request.app.state, "metrics", None)

    if not metrics_collector:
        logger.warning("Metrics collector not initialized")
        return Response(
            content="# Metrics collector not initialized\n",
            media_type=CONTENT_TYPE_LATEST,
        )

    metrics_collector.update_system_metrics()
    metrics_data = generate_latest(metrics_collector.registry)

    logger.debug("Metrics scraped successfully", size_bytes=len(metrics_data))

    return Response(content=metrics_data, media_type=CONTENT_TYPE_LATEST)


@router.get("/v1/metrics", summary="Processing metrics snapshot")
async def get_metrics_snapshot(pipeline: ProcessingPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    return {
        "optimizer": pipeline.optimizer.get_metrics(),
        "recommendations": pipeline.optimizer.get_recommendations(),
        "rules": pipeline.rules.get_stats(),
        "audit": pipeline.audit.get_stats(),
        "buffered_records": pipeline.buffered,
    }
