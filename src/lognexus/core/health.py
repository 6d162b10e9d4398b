"""
Health checker for the processing pipeline.

Performs health checks for:
- Pipeline and optimizer background loops
- Process memory against the configured ceiling
- Audit chain integrity
- Loki connectivity (when delivery is enabled)
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from .pipeline import ProcessingPipeline

logger = structlog.get_logger(__name__)


@dataclass
class HealthCheck:
    """Individual health check result."""
    name: str
    status: str  # "healthy", "unhealthy", "unknown"
    message: str
    details: Dict[str, Any]
    last_check: float


@dataclass
class HealthStatus:
    """Overall health status."""
    is_healthy: bool
    checks: Dict[str, HealthCheck]
    failed_checks: List[str]
    timestamp: float


class HealthChecker:
    """
    Health checker for a ProcessingPipeline.

    Monitors:
    - Background services (pipeline running, optimizer loops alive)
    - Memory (below the optimizer's memory ceiling)
    - Audit chain (verification passes)
    - Loki readiness, only when a Loki sink is configured
    """

    def __init__(self, pipeline: ProcessingPipeline):
        self.pipeline = pipeline
        self._session: Optional[aiohttp.ClientSession] = None

        logger.info("Health Checker initialized")

    async def start(self) -> None:
        if self.pipeline.settings.loki.enabled:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))
        logger.info("Health Checker started")

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("Health Checker stopped")

    async def check_all(self) -> HealthStatus:
        """Perform all health checks and return overall status."""
        checks = {}
        failed_checks = []

        check_names = ["services", "memory", "audit"]
        coroutines = [
            asyncio.to_thread(self._check_services),
            asyncio.to_thread(self._check_memory),
            asyncio.to_thread(self._check_audit_integrity),
        ]
        if self.pipeline.settings.loki.enabled:
            check_names.append("loki")
            coroutines.append(self._check_loki_connectivity())

        check_results = await asyncio.gather(*coroutines, return_exceptions=True)

        for name, result in zip(check_names, check_results):
            if isinstance(result, Exception):
                checks[name] = HealthCheck(
                    name=name,
                    status="unhealthy",
                    message=f"Check failed: {str(result)}",
                    details={"error": str(result), "error_type": type(result).__name__},
                    last_check=time.time(),
                )
                failed_checks.append(name)
            elif isinstance(result, HealthCheck):
                checks[name] = result
                if result.status != "healthy":
                    failed_checks.append(name)

        return HealthStatus(
            is_healthy=len(failed_checks) == 0,
            checks=checks,
            failed_checks=failed_checks,
            timestamp=time.time(),
        )

    def _check_services(self) -> HealthCheck:
        """Pipeline running and every optimizer loop alive."""
        loops = self.pipeline.optimizer.loop_status()
        stopped = sorted(name for name, alive in loops.items() if not alive)
        running = self.pipeline.is_running and self.pipeline.optimizer.is_running

        if running and not stopped:
            status = "healthy"
            message = "Processing services are running"
        elif not running:
            status = "unhealthy"
            message = "Processing pipeline is not running"
        else:
            status = "unhealthy"
            message = f"Optimizer loops stopped: {', '.join(stopped)}"

        return HealthCheck(
            name="services",
            status=status,
            message=message,
            details={
                "pipeline_running": self.pipeline.is_running,
                "optimizer_running": self.pipeline.optimizer.is_running,
                "loops": loops,
                "buffered_records": self.pipeline.buffered,
            },
            last_check=time.time(),
        )

    def _check_memory(self) -> HealthCheck:
        sample = self.pipeline.optimizer.check_memory()

        if sample.current_bytes < sample.max_bytes:
            status = "healthy"
            message = f"Memory OK: {sample.percentage:.1f}% of ceiling"
        else:
            status = "unhealthy"
            message = f"Memory above ceiling: {sample.percentage:.1f}%"

        return HealthCheck(
            name="memory",
            status=status,
            message=message,
            details={
                "current_bytes": sample.current_bytes,
                "max_bytes": sample.max_bytes,
                "percentage": round(sample.percentage, 1),
                "gc_triggered": sample.gc_triggered,
            },
            last_check=time.time(),
        )

    def _check_audit_integrity(self) -> HealthCheck:
        audit = self.pipeline.audit
        if not audit.enabled or not audit.enable_integrity_verification:
            return HealthCheck(
                name="audit",
                status="healthy",
                message="Audit integrity verification disabled",
                details={"enabled": audit.enabled},
                last_check=time.time(),
            )

        report = audit.verify()
        return HealthCheck(
            name="audit",
            status="healthy" if report.is_valid else "unhealthy",
            message="Audit chain intact" if report.is_valid else "Audit chain integrity violated",
            details={
                "total_checked": report.total_checked,
                "violations": len(report.invalid_entries),
            },
            last_check=time.time(),
        )

    async def _check_loki_connectivity(self) -> HealthCheck:
        """Check if Loki is reachable and responding."""
        if not self._session:
            return HealthCheck(
                name="loki",
                status="unhealthy",
                message="Health checker not started",
                details={},
                last_check=time.time(),
            )

        ready_url = f"{self.pipeline.settings.loki.base_url.rstrip('/')}/ready"
        try:
            async with self._session.get(ready_url) as response:
                if response.status == 200:
                    return HealthCheck(
                        name="loki",
                        status="healthy",
                        message="Loki is reachable",
                        details={"url": ready_url, "status_code": response.status},
                        last_check=time.time(),
                    )
                return HealthCheck(
                    name="loki",
                    status="unhealthy",
                    message=f"Loki returned status {response.status}",
                    details={"url": ready_url, "status_code": response.status},
                    last_check=time.time(),
                )
        except aiohttp.ClientError as e:
            logger.warning("Loki connectivity check failed", error=str(e))
            return HealthCheck(
                name="loki",
                status="unhealthy",
                message=f"Cannot reach Loki: {str(e)}",
                details={"error": str(e), "url": ready_url},
                last_check=time.time(),
            )
