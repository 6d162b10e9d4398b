"""
Alert rule management endpoints.

All operations require the admin token. Rule bodies use the declarative
rule format and accept snake_case or camelCase keys.
"""

from typing import Any, Dict, List

import structlog
from fastapi import APIRouter, Body, Depends, Response, status

from ..core.auth import authenticate_admin_token
from ..core.pipeline import ProcessingPipeline
from ..core.rules import AlertRule
from ..models.log_record import ErrorResponse
from .dependencies import get_pipeline

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/alerts", dependencies=[Depends(authenticate_admin_token)])

_ERRORS = {
    400: {"model": ErrorResponse, "description": "Invalid rule configuration"},
    401: {"model": ErrorResponse, "description": "Unauthorized - admin token required"},
    404: {"model": ErrorResponse, "description": "Rule not found"},
}


def _describe(rule: AlertRule) -> Dict[str, Any]:
    return {
        "config": rule.config.model_dump(mode="json", by_alias=True),
        "stats": rule.get_stats(),
    }


@router.post(
    "/rules",
    status_code=201,
    responses={**_ERRORS, 409: {"model": ErrorResponse, "description": "Rule id already registered"}},
    summary="Register alert rule",
)
async def create_rule(
    config: Dict[str, Any] = Body(...),
    pipeline: ProcessingPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    rule = pipeline.rules.add_rule(config)
    return _describe(rule)


@router.get("/rules", summary="List alert rules")
async def list_rules(pipeline: ProcessingPipeline = Depends(get_pipeline)) -> List[Dict[str, Any]]:
    return [_describe(rule) for rule in pipeline.rules.rules()]


@router.get("/stats", summary="Rule engine statistics")
async def rule_stats(pipeline: ProcessingPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    return pipeline.rules.get_stats()


@router.get("/rules/{rule_id}", responses=_ERRORS, summary="Get alert rule")
async def get_rule(rule_id: str, pipeline: ProcessingPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    return _describe(pipeline.rules.require_rule(rule_id))


@router.patch(
    "/rules/{rule_id}",
    responses=_ERRORS,
    summary="Update alert rule",
    description="""
    Apply a partial update to a rule.

    Windows and anomaly baselines are rebuilt only when conditions change.
    The rule id cannot be changed.
    """,
)
async def update_rule(
    rule_id: str,
    changes: Dict[str, Any] = Body(...),
    pipeline: ProcessingPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    rule = pipeline.rules.require_rule(rule_id)
    rule.update_config(changes)
    return _describe(rule)


@router.delete("/rules/{rule_id}", status_code=204, responses=_ERRORS, summary="Remove alert rule")
async def delete_rule(rule_id: str, pipeline: ProcessingPipeline = Depends(get_pipeline)) -> Response:
    pipeline.rules.require_rule(rule_id)
    pipeline.rules.remove_rule(rule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/rules/{rule_id}/reset", responses=_ERRORS, summary="Reset rule state")
async def reset_rule(rule_id: str, pipeline: ProcessingPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    """Clear windows, baselines, cooldown and rate-limit state."""
    rule = pipeline.rules.require_rule(rule_id)
    rule.reset()
    return _describe(rule)
