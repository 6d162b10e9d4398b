"""
Record normalisation and delivery sinks.

The optimizer turns each record into a delivery line and hands completed
batches to a sink. LokiSink pushes them to Grafana Loki.
"""

import json
from typing import Any, Dict, List, Optional, Protocol

import aiohttp
import structlog

from ..config import LokiSettings
from ..models.log_record import LogRecord
from .exceptions import DeliveryError

logger = structlog.get_logger(__name__)


def render_template(record: LogRecord) -> Dict[str, Any]:
    """
    Part of a delivery line fixed by the record cache key.

    Only this part is cached; everything tied to one record is added by
    ``bind_record``.
    """
    return {"labels": {"service": record.service, "level": record.level.value}}


def bind_record(template: Dict[str, Any], record: LogRecord) -> Dict[str, Any]:
    """
    Complete a cached template with the fields of ``record``.

    Labels stay low-cardinality (service, level, domain); everything else goes
    into the JSON line.
    """
    line: Dict[str, Any] = {"message": record.message}
    if record.correlation_id:
        line["correlation_id"] = record.correlation_id
    if record.user_id:
        line["user_id"] = record.user_id
    if record.context:
        line["context"] = record.context
    if record.performance is not None:
        line["performance"] = record.performance.model_dump(exclude_none=True)
    if record.error is not None:
        line["error"] = record.error.model_dump(exclude_none=True)

    return {
        "id": record.id,
        "timestamp_ns": str(int(record.timestamp.timestamp() * 1_000_000_000)),
        "labels": {**template["labels"], "domain": record.domain.value},
        "line": json.dumps(line, sort_keys=True, default=str),
    }


def to_loki_streams(lines: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Group delivery lines into Loki push streams.

    Loki expects:
    {"streams": [{"stream": {labels}, "values": [["timestamp_ns", "line"], ...]}]}
    """
    streams: Dict[str, Dict[str, Any]] = {}
    for item in lines:
        labels = item["labels"]
        stream_key = "|".join(f"{k}={v}" for k, v in sorted(labels.items()))
        if stream_key not in streams:
            streams[stream_key] = {"stream": labels, "values": []}
        streams[stream_key]["values"].append([item["timestamp_ns"], item["line"]])
    return list(streams.values())


class DeliverySink(Protocol):
    async def send(self, lines: List[Dict[str, Any]]) -> None:
        ...


class LokiSink:
    """Pushes delivery lines to Grafana Loki."""

    def __init__(self, settings: LokiSettings):
        self.settings = settings
        self.session: Optional[aiohttp.ClientSession] = None

        logger.info("Loki sink initialized", loki_url=settings.push_url)

    async def start(self) -> None:
        if self.session is not None:
            return
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.settings.timeout_seconds)
        )
        logger.info("Loki sink started")

    async def stop(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None
        logger.info("Loki sink stopped")

    async def send(self, lines: List[Dict[str, Any]]) -> None:
        if not lines:
            return
        if self.session is None:
            raise DeliveryError("Loki sink not started")

        payload = {"streams": to_loki_streams(lines)}
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "lognexus-delivery/0.1",
        }

        async with self.session.post(self.settings.push_url, json=payload, headers=headers) as response:
            if response.status != 204:
                error_text = await response.text()
                logger.error("Loki returned error", status=response.status, error=error_text)
                raise DeliveryError(
                    f"Loki returned {response.status}",
                    details={"status": response.status, "error": error_text[:500]},
                )

        logger.debug("Successfully sent to Loki", streams_count=len(payload["streams"]))
