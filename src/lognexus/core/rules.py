"""
Alert rule engine.

An AlertRule owns its sliding windows, anomaly baselines, cooldown and hourly
rate state. Records are evaluated synchronously under a per-rule lock; the
manager then dispatches actions for triggered alerts asynchronously.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from ..models.alerts import AlertRuleConfig, AnomalyCondition, TriggeredAlert
from ..models.log_record import LogRecord
from .actions import ActionDispatcher
from .conditions import AnomalyBaseline, TimeWindow, evaluate, window_key, window_span_ms
from .events import AlertSuppressed, AlertTriggered, EventBus
from .exceptions import DuplicateRuleError, RuleConfigurationError, RuleNotFoundError

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RuleState(str, Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    SUPPRESSED = "suppressed"
    TRIGGERED = "triggered"


@dataclass
class RuleStats:
    """Running counters for one rule."""
    total_triggered: int = 0
    total_suppressed: int = 0
    suppressed_by_reason: Dict[str, int] = field(default_factory=dict)
    triggers_by_condition: Dict[str, int] = field(default_factory=dict)
    evaluation_errors: int = 0
    last_triggered: Optional[datetime] = None


@dataclass
class RuleEvaluation:
    """Outcome of a record that met at least one condition."""
    rule_id: str
    conditions_met: List[str]
    alert: Optional[TriggeredAlert] = None
    suppressed_reason: Optional[str] = None

    @property
    def triggered(self) -> bool:
        return self.alert is not None


def parse_rule_config(config: Any) -> AlertRuleConfig:
    """Validate a declarative rule, translating validation failures."""
    if isinstance(config, AlertRuleConfig):
        return config
    try:
        return AlertRuleConfig.model_validate(config)
    except PydanticValidationError as e:
        rule_id = config.get("id") if isinstance(config, dict) else None
        raise RuleConfigurationError(
            f"Invalid alert rule configuration{f' for {rule_id!r}' if rule_id else ''}",
            details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        )


class AlertRule:
    """
    One long-lived rule cycling Idle -> Evaluating -> Suppressed|Triggered -> Idle.

    Windows are keyed by ``{condition type}_{span}`` so conditions of the same
    type and span share one window. Every window receives a record before any
    condition is evaluated.
    """

    def __init__(
        self,
        config: AlertRuleConfig,
        bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.bus = bus or EventBus()
        self._clock = clock or utc_now
        self._lock = threading.Lock()
        self.state = RuleState.IDLE
        self.last_outcome = RuleState.IDLE
        self.stats = RuleStats()

        self._hourly: Deque[datetime] = deque()
        self._daily: Deque[datetime] = deque()
        self._last_triggered: Optional[datetime] = None

        self._apply_config(config)

    def _apply_config(self, config: AlertRuleConfig) -> None:
        self._config = config
        self._windows: Dict[str, TimeWindow] = {}
        self._baselines: Dict[int, AnomalyBaseline] = {}

        for index, condition in enumerate(config.conditions):
            key = window_key(condition)
            if key is not None and key not in self._windows:
                self._windows[key] = TimeWindow(window_span_ms(condition))
            if isinstance(condition, AnomalyCondition):
                self._baselines[index] = AnomalyBaseline(condition)

    @property
    def config(self) -> AlertRuleConfig:
        return self._config

    @property
    def id(self) -> str:
        return self._config.id

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def window_keys(self) -> List[str]:
        return list(self._windows)

    def window(self, key: str) -> Optional[TimeWindow]:
        return self._windows.get(key)

    def process_record(self, record: LogRecord) -> Optional[RuleEvaluation]:
        """
        Evaluate a record against this rule.

        Returns None when the rule is disabled, filtered the record out, or no
        condition was met.
        """
        with self._lock:
            result = self._evaluate(record)

        if result is None:
            return None
        if result.alert is not None:
            self.bus.publish(AlertTriggered(alert=result.alert))
        else:
            self.bus.publish(AlertSuppressed(
                rule_id=self.id,
                reason=result.suppressed_reason or "",
                conditions_met=result.conditions_met,
            ))
        return result

    def _evaluate(self, record: LogRecord) -> Optional[RuleEvaluation]:
        config = self._config
        if not config.enabled:
            return None
        if config.filters is not None and not config.filters.allows(record):
            return None

        self.state = RuleState.EVALUATING
        try:
            for window in self._windows.values():
                window.add(record)

            conditions_met = self._check_conditions(record)
            if not conditions_met:
                self.last_outcome = RuleState.IDLE
                return None

            now = self._clock()
            reason = self._suppression_reason(now)
            if reason is not None:
                self.stats.total_suppressed += 1
                self.stats.suppressed_by_reason[reason] = self.stats.suppressed_by_reason.get(reason, 0) + 1
                self.last_outcome = RuleState.SUPPRESSED
                logger.debug("Alert suppressed", rule_id=config.id, reason=reason)
                return RuleEvaluation(config.id, conditions_met, suppressed_reason=reason)

            alert = TriggeredAlert(
                rule_id=config.id,
                rule_name=config.name,
                severity=config.severity,
                triggered_at=now,
                trigger_entries=[record],
                conditions_met=conditions_met,
                context={
                    "rule_description": config.description,
                    "correlation_id": record.correlation_id,
                    "total_triggered": self.stats.total_triggered + 1,
                },
            )
            self._record_trigger(now, conditions_met)
            self.last_outcome = RuleState.TRIGGERED
            logger.info(
                "Alert triggered",
                rule_id=config.id,
                severity=config.severity.value,
                conditions_met=conditions_met,
            )
            return RuleEvaluation(config.id, conditions_met, alert=alert)
        finally:
            self.state = RuleState.IDLE

    def _check_conditions(self, record: LogRecord) -> List[str]:
        met: List[str] = []
        for index, condition in enumerate(self._config.conditions):
            key = window_key(condition)
            window = self._windows.get(key) if key is not None else None
            try:
                if evaluate(condition, record, window, self._baselines.get(index)):
                    met.append(condition.type)
            except Exception as e:
                self.stats.evaluation_errors += 1
                logger.warning(
                    "Condition evaluation failed",
                    rule_id=self.id,
                    condition_type=condition.type,
                    error=str(e),
                )
        return met

    def _suppression_reason(self, now: datetime) -> Optional[str]:
        config = self._config
        if config.cooldown_ms and self._last_triggered is not None:
            if now < self._last_triggered + timedelta(milliseconds=config.cooldown_ms):
                return "cooldown"

        if config.max_alerts_per_hour:
            while self._hourly and self._hourly[0] <= now - HOUR:
                self._hourly.popleft()
            if len(self._hourly) >= config.max_alerts_per_hour:
                return "rate_limit"
        return None

    def _record_trigger(self, now: datetime, conditions_met: List[str]) -> None:
        self._last_triggered = now
        self._hourly.append(now)
        self._daily.append(now)
        self.stats.total_triggered += 1
        self.stats.last_triggered = now
        for condition_type in conditions_met:
            self.stats.triggers_by_condition[condition_type] = (
                self.stats.triggers_by_condition.get(condition_type, 0) + 1
            )

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            while self._daily and self._daily[0] <= now - DAY:
                self._daily.popleft()
            return {
                "rule_id": self.id,
                "enabled": self.enabled,
                "state": self.state.value,
                "last_outcome": self.last_outcome.value,
                "total_triggered": self.stats.total_triggered,
                "total_suppressed": self.stats.total_suppressed,
                "suppressed_by_reason": dict(self.stats.suppressed_by_reason),
                "triggers_by_condition": dict(self.stats.triggers_by_condition),
                "evaluation_errors": self.stats.evaluation_errors,
                "last_triggered": self.stats.last_triggered.isoformat() if self.stats.last_triggered else None,
                "triggers_last_24h": len(self._daily),
                "window_sizes": {key: len(window) for key, window in self._windows.items()},
            }

    def update_config(self, changes: Dict[str, Any]) -> AlertRuleConfig:
        """
        Apply a partial update. Identity cannot change.

        Windows and baselines are rebuilt only when the conditions change.
        """
        if "id" in changes and changes["id"] != self.id:
            raise RuleConfigurationError("Rule id cannot be changed", details={"rule_id": self.id})

        aliases = {f.alias: name for name, f in AlertRuleConfig.model_fields.items() if f.alias}
        changes = {aliases.get(key, key): value for key, value in changes.items()}

        merged = self._config.model_dump()
        merged.update(changes)
        new_config = parse_rule_config(merged)

        with self._lock:
            conditions_changed = new_config.conditions != self._config.conditions
            if conditions_changed:
                self._apply_config(new_config)
            else:
                self._config = new_config

        logger.info("Rule updated", rule_id=self.id, fields=sorted(changes), conditions_changed=conditions_changed)
        return new_config

    def set_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._config = self._config.model_copy(update={"enabled": enabled})
        logger.info("Rule enabled" if enabled else "Rule disabled", rule_id=self.id)

    def reset(self) -> None:
        """Clear windows, baselines, cooldown and rate-limit state."""
        with self._lock:
            self._apply_config(self._config)
            self._hourly.clear()
            self._last_triggered = None
        logger.info("Rule reset", rule_id=self.id)


class AlertRuleManager:
    """Registry of rules; evaluates each record against every rule."""

    def __init__(
        self,
        bus: EventBus,
        dispatcher: Optional[ActionDispatcher] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.bus = bus
        self.dispatcher = dispatcher or ActionDispatcher(bus)
        self._clock = clock or utc_now
        self._rules: Dict[str, AlertRule] = {}
        self._lock = threading.Lock()

    def add_rule(self, config: Any) -> AlertRule:
        """Register a rule; invalid or duplicate configurations are rejected."""
        rule_config = parse_rule_config(config)
        with self._lock:
            if rule_config.id in self._rules:
                raise DuplicateRuleError(rule_config.id)
            rule = AlertRule(rule_config, bus=self.bus, clock=self._clock)
            self._rules[rule_config.id] = rule

        logger.info(
            "Rule registered",
            rule_id=rule_config.id,
            conditions=[c.type for c in rule_config.conditions],
            actions=len(rule_config.actions),
        )
        return rule

    def load_rules(self, configs: Iterable[Any]) -> List[AlertRule]:
        return [self.add_rule(config) for config in configs]

    def remove_rule(self, rule_id: str) -> bool:
        with self._lock:
            removed = self._rules.pop(rule_id, None) is not None
        if removed:
            logger.info("Rule removed", rule_id=rule_id)
        return removed

    def get_rule(self, rule_id: str) -> Optional[AlertRule]:
        return self._rules.get(rule_id)

    def require_rule(self, rule_id: str) -> AlertRule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    def rule_ids(self) -> List[str]:
        return list(self._rules)

    def rules(self) -> List[AlertRule]:
        with self._lock:
            return list(self._rules.values())

    def process_record(self, record: LogRecord) -> List[RuleEvaluation]:
        """Evaluate a record against every rule without dispatching actions."""
        results = []
        for rule in self.rules():
            result = rule.process_record(record)
            if result is not None:
                results.append(result)
        return results

    async def handle_record(self, record: LogRecord) -> List[TriggeredAlert]:
        """Evaluate a record and dispatch actions for every triggered alert."""
        alerts = [result.alert for result in self.process_record(record) if result.alert is not None]
        for alert in alerts:
            await self.dispatch(alert)
        return alerts

    async def dispatch(self, alert: TriggeredAlert) -> List[bool]:
        """Run the enabled actions of the rule that produced ``alert``."""
        rule = self._rules.get(alert.rule_id)
        if rule is None:
            return []
        return await self.dispatcher.dispatch_all(alert, rule.config.actions)

    def get_stats(self) -> Dict[str, Any]:
        rules = self.rules()
        return {
            "total_rules": len(rules),
            "enabled_rules": sum(1 for rule in rules if rule.enabled),
            "total_alerts_triggered": sum(rule.stats.total_triggered for rule in rules),
            "total_alerts_suppressed": sum(rule.stats.total_suppressed for rule in rules),
        }
