"""
Alert action dispatch.

Each ActionType maps to a channel. Dispatch is best-effort: every enabled
action runs concurrently and a failing channel is reported as an
ActionFailed event without affecting the others.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Protocol

import aiohttp
import structlog

from ..models.alerts import ActionRef, ActionType, TriggeredAlert
from .events import ActionExecuted, ActionFailed, EventBus
from .exceptions import DeliveryError

logger = structlog.get_logger(__name__)


class ActionChannel(Protocol):
    async def send(self, action: ActionRef, alert: TriggeredAlert) -> None:
        ...


def alert_payload(alert: TriggeredAlert) -> Dict[str, Any]:
    """JSON-safe alert body."""
    return alert.model_dump(mode="json")


class LoggingChannel:
    """Records the notification in the service log only."""

    async def send(self, action: ActionRef, alert: TriggeredAlert) -> None:
        logger.warning(
            "Alert notification",
            channel=action.type.value,
            rule_id=alert.rule_id,
            rule_name=alert.rule_name,
            severity=alert.severity.value,
            conditions_met=alert.conditions_met,
            target=action.config.get("to") or action.config.get("target"),
        )


class WebhookChannel:
    """POSTs the alert JSON to ``action.config['url']``."""

    url_keys = ("url",)

    def __init__(self, timeout_seconds: float = 10.0) -> None:
        self.timeout_seconds = timeout_seconds

    def _url(self, action: ActionRef) -> str:
        for key in self.url_keys:
            url = action.config.get(key)
            if url:
                return url
        raise DeliveryError(
            f"{action.type.value} action requires one of: {', '.join(self.url_keys)}",
            details={"action": action.type.value},
        )

    def build_payload(self, action: ActionRef, alert: TriggeredAlert) -> Dict[str, Any]:
        return alert_payload(alert)

    async def send(self, action: ActionRef, alert: TriggeredAlert) -> None:
        url = self._url(action)
        payload = self.build_payload(action, alert)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "lognexus-alerts/0.1",
        }
        headers.update(action.config.get("headers") or {})

        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json=payload, headers=headers) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise DeliveryError(
                        f"{action.type.value} endpoint returned {response.status}",
                        details={"status": response.status, "error": error_text[:500]},
                    )

        logger.debug("Alert delivered", channel=action.type.value, rule_id=alert.rule_id)


class SlackChannel(WebhookChannel):
    """Slack incoming-webhook message."""

    url_keys = ("webhook_url", "url")

    def build_payload(self, action: ActionRef, alert: TriggeredAlert) -> Dict[str, Any]:
        lines = [
            f":rotating_light: *{alert.rule_name}*",
            f"*Severity*: `{alert.severity.value}`",
            f"*Conditions*: {', '.join(alert.conditions_met)}",
            f"*Triggered at*: {alert.triggered_at.isoformat()}",
        ]
        for record in alert.trigger_entries[:5]:
            lines.append(f"• `{record.level.value}` {record.service}: {record.message}")

        payload: Dict[str, Any] = {"text": "\n".join(lines)}
        if action.config.get("channel"):
            payload["channel"] = action.config["channel"]
        return payload


class ActionDispatcher:
    """Routes alert actions to their channels and reports the outcome on the bus."""

    def __init__(
        self,
        bus: EventBus,
        timeout_seconds: float = 10.0,
        channels: Optional[Dict[ActionType, ActionChannel]] = None,
    ) -> None:
        self.bus = bus
        self.timeout_seconds = timeout_seconds
        self._fallback: ActionChannel = LoggingChannel()
        self._channels: Dict[ActionType, ActionChannel] = {
            ActionType.WEBHOOK: WebhookChannel(timeout_seconds),
            ActionType.SLACK: SlackChannel(timeout_seconds),
        }
        if channels:
            self._channels.update(channels)

    def register(self, action_type: ActionType, channel: ActionChannel) -> None:
        self._channels[action_type] = channel

    def channel_for(self, action_type: ActionType) -> ActionChannel:
        return self._channels.get(action_type, self._fallback)

    async def dispatch(self, action: ActionRef, alert: TriggeredAlert) -> bool:
        """Run one action; failures are published, never raised."""
        channel = self.channel_for(action.type)
        try:
            await asyncio.wait_for(channel.send(action, alert), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            return self._failed(action, alert, f"timed out after {self.timeout_seconds}s")
        except Exception as e:
            return self._failed(action, alert, str(e) or type(e).__name__)

        self.bus.publish(ActionExecuted(action=action, alert=alert))
        return True

    def _failed(self, action: ActionRef, alert: TriggeredAlert, error: str) -> bool:
        logger.error(
            "Alert action failed",
            action=action.type.value,
            rule_id=alert.rule_id,
            error=error,
        )
        self.bus.publish(ActionFailed(action=action, alert=alert, error=error))
        return False

    async def dispatch_all(self, alert: TriggeredAlert, actions: Iterable[ActionRef]) -> List[bool]:
        """Run every enabled action concurrently."""
        enabled = [action for action in actions if action.enabled]
        if not enabled:
            return []
        return list(await asyncio.gather(*(self.dispatch(action, alert) for action in enabled)))
