"""Tests for the coverage and test quality gate."""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from shared.config import CoverageConfig, CoverageThresholds
from shared.models import (
    AlertLevel,
    AlertType,
    CoverageRecord,
    CoverageStatus,
    TestResults,
)
from shared.storage import InMemoryStore

from gate.coverage.quality_gate import GATE_DISABLED, MISSING_COVERAGE, CoverageQualityGate

T0 = datetime(2026, 5, 1, 12, 0)


def _coverage(
    commit: str = "abc123",
    line: float | None = 85.0,
    branch: float | None = 75.0,
    function: float | None = 90.0,
    covered: int | None = 850,
    total: int | None = 1000,
    minutes: int = 0,
) -> CoverageRecord:
    return CoverageRecord(
        project_id="proj",
        commit_id=commit,
        line_coverage=line,
        branch_coverage=branch,
        function_coverage=function,
        covered_lines=covered,
        total_lines=total,
        timestamp=T0 + timedelta(minutes=minutes),
    )


def _make_gate(*records: CoverageRecord, **config) -> tuple[CoverageQualityGate, InMemoryStore, MagicMock]:
    store = InMemoryStore()
    for r in records:
        store.save_coverage(r)
    notifier = MagicMock()
    gate = CoverageQualityGate(store, notifier, CoverageConfig(**config))
    return gate, store, notifier


# --- Thresholds ---


class TestQualityGate:
    def test_passes_above_defaults(self):
        gate, store, _ = _make_gate(_coverage())
        decision = gate.check_quality_gate("proj", "abc123")
        assert decision.passed
        assert decision.violations == []
        assert store.coverage["abc123"].status == CoverageStatus.PASSED

    def test_equal_to_threshold_passes(self):
        gate, _, _ = _make_gate(_coverage(line=80.0))
        decision = gate.check_quality_gate("proj", "abc123", line_threshold=80.0)
        assert decision.passed

    def test_just_below_threshold_fails(self):
        gate, store, _ = _make_gate(_coverage(line=79.99))
        decision = gate.check_quality_gate("proj", "abc123", line_threshold=80.0)
        assert not decision.passed
        assert len(decision.violations) == 1
        assert decision.violations[0].description == (
            "line coverage 79.99% below threshold 80.00%"
        )
        assert decision.violations[0].actual_value == "79.99"
        assert decision.violations[0].expected_value == "80.00"
        assert store.coverage["abc123"].status == CoverageStatus.FAILED

    def test_every_metric_checked(self):
        gate, _, _ = _make_gate(_coverage(line=50.0, branch=40.0, function=30.0))
        decision = gate.check_quality_gate("proj", "abc123")
        assert decision.rules() == ["line_coverage", "branch_coverage", "function_coverage"]
        assert decision.violations[1].description == (
            "branch coverage 40.00% below threshold 70.00%"
        )

    def test_configured_defaults_used(self):
        gate, _, _ = _make_gate(
            _coverage(line=85.0),
            thresholds=CoverageThresholds(line=90.0, branch=0.0, function=0.0),
        )
        decision = gate.check_quality_gate("proj", "abc123")
        assert decision.rules() == ["line_coverage"]

    def test_explicit_threshold_overrides_default(self):
        gate, _, _ = _make_gate(_coverage(line=85.0))
        assert not gate.check_quality_gate("proj", "abc123", line_threshold=95.0).passed

    def test_missing_metric_not_gated(self):
        gate, _, _ = _make_gate(_coverage(branch=None))
        assert gate.check_quality_gate("proj", "abc123", branch_threshold=99.0).passed

    def test_threshold_recorded(self):
        gate, store, _ = _make_gate(_coverage())
        gate.check_quality_gate("proj", "abc123", line_threshold=60.0)
        assert store.coverage["abc123"].threshold == 60.0


class TestMissingCoverage:
    def test_missing_record_is_violation(self):
        gate, _, _ = _make_gate()
        decision = gate.check_quality_gate("proj", "ghost")
        assert not decision.passed
        assert decision.rules() == [MISSING_COVERAGE]


class TestGateDisabled:
    def test_disabled_passes_without_io(self):
        store = MagicMock()
        gate = CoverageQualityGate(store, MagicMock(), CoverageConfig(enabled=False))
        decision = gate.check_quality_gate("proj", "abc123")
        assert decision.passed
        assert decision.messages == [GATE_DISABLED]
        store.get_coverage.assert_not_called()
        store.update_coverage_status.assert_not_called()


# --- New code coverage ---


class TestNewCodeCoverage:
    def test_no_new_code(self):
        gate, _, _ = _make_gate()
        result = gate.check_new_code_coverage("proj", "abc123", 0)
        assert result.passed
        assert result.message == "no new code"
        assert result.new_covered_lines == 0

    def test_insufficient_history(self):
        gate, _, _ = _make_gate(_coverage())
        result = gate.check_new_code_coverage("proj", "abc123", 50)
        assert result.passed
        assert result.message == "insufficient history"
        assert result.new_covered_lines == 0

    def test_delta_meets_threshold(self):
        gate, _, _ = _make_gate(
            _coverage("old", covered=800, minutes=0),
            _coverage("new", covered=890, minutes=10),
        )
        result = gate.check_new_code_coverage("proj", "new", 100)
        assert result.passed
        assert result.new_covered_lines == 90
        assert result.coverage_rate == pytest.approx(90.0)

    def test_delta_below_threshold(self):
        gate, _, _ = _make_gate(
            _coverage("old", covered=800, minutes=0),
            _coverage("new", covered=850, minutes=10),
        )
        result = gate.check_new_code_coverage("proj", "new", 100)
        assert not result.passed
        assert result.new_covered_lines == 50
        assert "50.00% below threshold 80.00%" in result.message

    def test_negative_delta_clamped(self):
        gate, _, _ = _make_gate(
            _coverage("old", covered=900, minutes=0),
            _coverage("new", covered=850, minutes=10),
        )
        result = gate.check_new_code_coverage("proj", "new", 20)
        assert result.new_covered_lines == 0
        assert not result.passed

    def test_configured_new_code_threshold(self):
        gate, _, _ = _make_gate(
            _coverage("old", covered=800, minutes=0),
            _coverage("new", covered=850, minutes=10),
            new_code_threshold=50.0,
        )
        assert gate.check_new_code_coverage("proj", "new", 100).passed

    def test_missing_current_record(self):
        gate, _, _ = _make_gate(
            _coverage("a", minutes=0),
            _coverage("b", minutes=10),
        )
        result = gate.check_new_code_coverage("proj", "ghost", 10)
        assert not result.passed
        assert result.message == MISSING_COVERAGE

    def test_unknown_commit_fails_before_history_check(self):
        gate, _, _ = _make_gate(_coverage("other"))
        result = gate.check_new_code_coverage("proj", "ghost", 50)
        assert not result.passed
        assert result.message == MISSING_COVERAGE
        assert result.new_code_lines == 50

    def test_unknown_commit_with_empty_history(self):
        gate, _, _ = _make_gate()
        result = gate.check_new_code_coverage("proj", "ghost", 50)
        assert not result.passed
        assert result.message == MISSING_COVERAGE

    def test_incomplete_counts(self):
        gate, _, _ = _make_gate(
            _coverage("old", covered=None, minutes=0),
            _coverage("new", covered=850, minutes=10),
        )
        result = gate.check_new_code_coverage("proj", "new", 10)
        assert not result.passed
        assert result.message == "incomplete coverage data"


# --- Test failures ---


class TestTestFailures:
    def test_all_passing_never_dispatches(self):
        gate, _, notifier = _make_gate(strict_mode=True)
        result = gate.check_test_failures("proj", "abc", TestResults(total=10, passed=10))
        assert result.passed
        assert not result.deployment_blocked
        notifier.send.assert_not_called()

    def test_failures_without_strict_mode(self):
        gate, _, notifier = _make_gate(strict_mode=False)
        result = gate.check_test_failures(
            "proj", "abc", TestResults(total=10, passed=5, failed=5)
        )
        assert not result.passed
        assert not result.deployment_blocked
        notifier.send.assert_not_called()

    def test_failures_in_strict_mode_block(self):
        gate, _, notifier = _make_gate(strict_mode=True)
        result = gate.check_test_failures(
            "proj", "abc", TestResults(total=10, passed=7, failed=3)
        )
        assert not result.passed
        assert result.deployment_blocked
        notifier.send.assert_called_once()
        alert = notifier.send.call_args.args[0]
        assert alert.type == AlertType.QUALITY_GATE_FAILURE
        assert alert.level == AlertLevel.HIGH
        assert "3" in alert.message


class TestBlockDeployment:
    def test_always_sends_alert(self):
        gate, _, notifier = _make_gate(strict_mode=False)
        gate.block_deployment("proj", "abc", "security hold")
        notifier.send.assert_called_once()
        alert = notifier.send.call_args.args[0]
        assert alert.type == AlertType.QUALITY_GATE_FAILURE
        assert alert.message == "security hold"
        assert alert.related_entity_id == "abc"


class TestQualityGateStats:
    def test_counts_outcomes(self):
        gate, _, _ = _make_gate(
            _coverage("a", line=90.0, minutes=0),
            _coverage("b", line=10.0, minutes=5),
            _coverage("c", line=95.0, minutes=10),
        )
        for commit in ("a", "b", "c"):
            gate.check_quality_gate("proj", commit)
        stats = gate.get_quality_gate_stats("proj", T0, T0 + timedelta(hours=1))
        assert stats.passed == 2
        assert stats.failed == 1
        assert stats.total == 3
        assert stats.pass_rate == pytest.approx(200 / 3)

    def test_empty_period(self):
        gate, _, _ = _make_gate()
        stats = gate.get_quality_gate_stats("proj", T0, T0)
        assert stats.total == 0
        assert stats.pass_rate == 0.0
