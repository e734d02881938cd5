"""Tests for threshold alerts with hysteresis."""

import pytest
from conftest import make_derived

from perfwatch.alerts import (
    AlertEvaluator,
    AlertRule,
    AlertState,
    Comparator,
    RuleStatus,
    Severity,
    evaluate,
)
from perfwatch.config import AlertRuleConfig, Config


def cpu_rule(samples: int = 3, severity: Severity = Severity.WARNING) -> AlertRule:
    return AlertRule("cpu", "cpu.busy_pct", Comparator.GE, 80.0, samples, severity)


def run(rule: AlertRule, values: list[float | None]) -> list[str | None]:
    """Feed values through evaluate(), returning the notification kind per sample."""
    status = RuleStatus()
    kinds = []
    for value in values:
        status, notification = evaluate(rule, status, value)
        kinds.append(notification.kind if notification else None)
    return kinds


class TestEvaluate:
    """Tests for the pure state transition."""

    def test_needs_k_consecutive_breaches(self):
        """A non-breaching sample resets the streak."""
        kinds = run(cpu_rule(), [90, 90, 79, 90, 90, 90])

        assert kinds == [None, None, None, None, None, "entered"]

    def test_clears_after_k_normal_samples(self):
        """Leaving TRIGGERED also needs K consecutive samples."""
        kinds = run(cpu_rule(), [90, 90, 90, 50, 50, 90, 50, 50, 50])

        assert kinds == [None, None, "entered", None, None, None, None, None, "cleared"]

    def test_one_notification_per_transition(self):
        """Staying triggered does not repeat the notification."""
        kinds = run(cpu_rule(samples=1), [90, 95, 99, 100])

        assert kinds == ["entered", None, None, None]

    def test_unavailable_leaves_state_untouched(self):
        """None neither breaks nor extends a streak."""
        kinds = run(cpu_rule(), [90, None, 90, None, 90])

        assert kinds == [None, None, None, None, "entered"]

    def test_less_than_comparator(self):
        """LT rules breach below the threshold."""
        rule = AlertRule("avail", "mem.available", Comparator.LT, 100.0, 1)

        status, notification = evaluate(rule, RuleStatus(), 50.0)

        assert notification is not None and notification.entered
        assert status.state is AlertState.TRIGGERED

    def test_notification_details(self):
        """Notifications carry what a reader needs to act on them."""
        rule = cpu_rule(samples=1, severity=Severity.CRITICAL)

        _, notification = evaluate(rule, RuleStatus(), 97.5)

        assert notification.to_dict() == {
            "rule": "cpu",
            "key": "cpu.busy_pct",
            "kind": "entered",
            "severity": "critical",
            "value": 97.5,
            "comparator": ">=",
            "threshold": 80.0,
        }

    def test_samples_must_be_positive(self):
        """K=0 is rejected."""
        with pytest.raises(ValueError):
            cpu_rule(samples=0)


class TestEvaluator:
    """Tests for applying rules to snapshots."""

    def test_glob_rule_tracks_each_key(self):
        """disk.*.util_pct evaluates every matching device separately."""
        rule = AlertRule("disk", "disk.*.util_pct", Comparator.GE, 70.0, 1)
        evaluator = AlertEvaluator([rule])

        notifications = evaluator.update(
            make_derived({"disk.sda.util_pct": 95.0, "disk.sdb.util_pct": 10.0})
        )

        assert [n.key for n in notifications] == ["disk.sda.util_pct"]
        assert evaluator.status("disk", "disk.sdb.util_pct").state is AlertState.NORMAL

    def test_active_critical_first(self):
        """active lists critical alerts before warnings."""
        evaluator = AlertEvaluator(
            [
                AlertRule("mem", "mem.used_pct", Comparator.GE, 50.0, 1, Severity.WARNING),
                AlertRule("cpu", "cpu.busy_pct", Comparator.GE, 50.0, 1, Severity.CRITICAL),
            ]
        )
        evaluator.update(make_derived({"mem.used_pct": 60.0, "cpu.busy_pct": 60.0}))

        assert [(rule.name, key) for rule, key in evaluator.active] == [
            ("cpu", "cpu.busy_pct"),
            ("mem", "mem.used_pct"),
        ]

    def test_missing_key_is_unavailable(self):
        """A rule on a key absent from the snapshot never fires."""
        evaluator = AlertEvaluator([cpu_rule(samples=1)])

        assert evaluator.update(make_derived({})) == []
        assert evaluator.active == []

    def test_from_config(self):
        """Config rules convert to typed rules."""
        evaluator = AlertEvaluator.from_config(
            [AlertRuleConfig("q", "disk.*.queue_depth", ">", 5.0, 2, "critical")]
        )

        rule = evaluator.rules[0]
        assert rule.comparator is Comparator.GT
        assert rule.severity is Severity.CRITICAL
        assert rule.is_glob

    def test_default_disk_queue_rules_use_in_flight(self):
        """The default disk queue rules count requests in flight."""
        evaluator = AlertEvaluator.from_config(Config().alerts.rules)
        busy = {"disk.sda.in_flight": 25.0, "disk.sda.queue_depth": 0.5}

        notifications = []
        for i in range(3):
            notifications += evaluator.update(make_derived(busy, timestamp=1_700_000_000.0 + i))

        fired = {(n.rule, n.key) for n in notifications if n.entered}
        assert fired == {
            ("disk_queue_warn", "disk.sda.in_flight"),
            ("disk_queue_crit", "disk.sda.in_flight"),
        }
