"""
API endpoints package.

Contains FastAPI routers for all service endpoints:
- /v1/logs:ingest - Record ingestion
- /v1/alerts/rules - Alert rule management
- /v1/audit - Audit events, queries, verification and export
- /metrics, /v1/metrics - Prometheus and JSON metrics
- /healthz, /readyz - Health checks
"""
from .alerts import router as alerts_router
from .audit import router as audit_router
from .healthz import router as healthz_router
from .logs import router as logs_router
from .metrics import router as metrics_router

__all__ = ["alerts_router", "audit_router", "healthz_router", "logs_router", "metrics_router"]
