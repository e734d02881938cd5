"""Threshold alerts with hysteresis.

A rule enters TRIGGERED after K consecutive breaching samples and returns
to NORMAL after K consecutive non-breaching samples. Each transition yields
exactly one notification. Unavailable values leave the state untouched.
"""

from __future__ import annotations

import fnmatch
import operator
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

import structlog

from perfwatch.config import AlertRuleConfig
from perfwatch.snapshot import DerivedSnapshot

log = structlog.get_logger()

_GLOB_CHARS = frozenset("*?[")


class Comparator(str, Enum):
    GT = ">"
    GE = ">="
    LT = "<"
    LE = "<="

    @property
    def op(self) -> Callable[[float, float], bool]:
        return {
            Comparator.GT: operator.gt,
            Comparator.GE: operator.ge,
            Comparator.LT: operator.lt,
            Comparator.LE: operator.le,
        }[self]


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class AlertState(str, Enum):
    NORMAL = "normal"
    TRIGGERED = "triggered"


@dataclass(frozen=True)
class AlertRule:
    name: str
    key: str  # exact metric key or glob, e.g. "disk.*.util_pct"
    comparator: Comparator
    threshold: float
    samples: int = 3  # K consecutive samples to enter or clear
    severity: Severity = Severity.WARNING

    def __post_init__(self) -> None:
        if self.samples < 1:
            raise ValueError(f"samples must be >= 1, got {self.samples}")

    @classmethod
    def from_config(cls, cfg: AlertRuleConfig) -> AlertRule:
        return cls(
            name=cfg.name,
            key=cfg.key,
            comparator=Comparator(cfg.comparator),
            threshold=cfg.threshold,
            samples=cfg.samples,
            severity=Severity(cfg.severity),
        )

    @property
    def is_glob(self) -> bool:
        return any(c in _GLOB_CHARS for c in self.key)

    def matching_keys(self, keys: Iterable[str]) -> list[str]:
        if not self.is_glob:
            return [self.key]
        return sorted(k for k in keys if fnmatch.fnmatchcase(k, self.key))

    def breached(self, value: float) -> bool:
        return self.comparator.op(value, self.threshold)


@dataclass(frozen=True)
class RuleStatus:
    state: AlertState = AlertState.NORMAL
    breach_streak: int = 0
    clear_streak: int = 0


@dataclass(frozen=True)
class AlertNotification:
    rule: str
    key: str
    kind: str  # "entered" or "cleared"
    severity: Severity
    value: float
    comparator: str
    threshold: float

    @property
    def entered(self) -> bool:
        return self.kind == "entered"

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule,
            "key": self.key,
            "kind": self.kind,
            "severity": self.severity.value,
            "value": self.value,
            "comparator": self.comparator,
            "threshold": self.threshold,
        }


def _notify(rule: AlertRule, key: str, kind: str, value: float) -> AlertNotification:
    return AlertNotification(
        rule=rule.name,
        key=key,
        kind=kind,
        severity=rule.severity,
        value=value,
        comparator=rule.comparator.value,
        threshold=rule.threshold,
    )


def evaluate(
    rule: AlertRule,
    status: RuleStatus,
    value: float | None,
    key: str | None = None,
) -> tuple[RuleStatus, AlertNotification | None]:
    """Advance one rule's state by one sample. Pure: returns the new status.

    Args:
        rule: The threshold rule
        status: Status after the previous sample
        value: This sample's value, or None when unavailable
        key: Concrete metric key (for glob rules); defaults to rule.key

    Returns:
        (new status, notification on a state change or None)
    """
    if value is None:
        return status, None

    key = key or rule.key
    if rule.breached(value):
        streak = status.breach_streak + 1
        if status.state is AlertState.NORMAL and streak >= rule.samples:
            return (
                RuleStatus(AlertState.TRIGGERED, breach_streak=streak),
                _notify(rule, key, "entered", value),
            )
        return replace(status, breach_streak=streak, clear_streak=0), None

    streak = status.clear_streak + 1
    if status.state is AlertState.TRIGGERED and streak >= rule.samples:
        return (
            RuleStatus(AlertState.NORMAL, clear_streak=streak),
            _notify(rule, key, "cleared", value),
        )
    return replace(status, breach_streak=0, clear_streak=streak), None


class AlertEvaluator:
    """Applies every rule to every matching key of each derived snapshot."""

    def __init__(self, rules: Iterable[AlertRule]) -> None:
        self.rules = list(rules)
        self._statuses: dict[tuple[str, str], RuleStatus] = {}

    @classmethod
    def from_config(cls, rules: Iterable[AlertRuleConfig]) -> AlertEvaluator:
        return cls(AlertRule.from_config(r) for r in rules)

    def status(self, rule_name: str, key: str) -> RuleStatus:
        return self._statuses.get((rule_name, key), RuleStatus())

    @property
    def active(self) -> list[tuple[AlertRule, str]]:
        """Rules currently TRIGGERED, most severe first."""
        by_name = {r.name: r for r in self.rules}
        result = [
            (by_name[name], key)
            for (name, key), status in self._statuses.items()
            if status.state is AlertState.TRIGGERED and name in by_name
        ]
        result.sort(key=lambda rk: (rk[0].severity is not Severity.CRITICAL, rk[1]))
        return result

    def update(self, derived: DerivedSnapshot) -> list[AlertNotification]:
        """Evaluate all rules against one snapshot, returning this tick's notifications."""
        notifications: list[AlertNotification] = []
        for rule in self.rules:
            for key in rule.matching_keys(derived.values):
                marker = (rule.name, key)
                status, notification = evaluate(
                    rule, self._statuses.get(marker, RuleStatus()), derived.get(key), key
                )
                self._statuses[marker] = status
                if notification is not None:
                    notifications.append(notification)
                    log.info(
                        "alert_" + notification.kind,
                        rule=rule.name,
                        key=key,
                        severity=rule.severity.value,
                        value=round(notification.value, 2),
                        threshold=rule.threshold,
                    )
        return notifications
