"""Shared FastAPI dependencies."""

from fastapi import Request

from ..core.exceptions import LogNexusException
from ..core.pipeline import ProcessingPipeline


async def get_pipeline(request: Request) -> ProcessingPipeline:
    """Dependency to get the processing pipeline from app state."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise LogNexusException(
            "Processing pipeline not initialized",
            status_code=503,
            error_code="service_unavailable",
        )
    return pipeline
