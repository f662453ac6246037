"""Tests for shared data models."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from shared.models import (
    Alert,
    AlertLevel,
    AlertType,
    BugRecord,
    BugSeverity,
    BugStatus,
    DeveloperStats,
    EmergencyBypassRecord,
    GateDecision,
    MergeRequestSnapshot,
    QualityGateStats,
    TestResults,
    ViolationRecord,
    as_utc,
)


# --- Merge requests ---


class TestMergeRequestSnapshot:
    def test_changed_lines(self):
        mr = MergeRequestSnapshot(
            id="1", project_id="p", author_id="a", target_branch="main", additions=300, deletions=201
        )
        assert mr.changed_lines == 501


# --- Bugs ---


class TestBugRecord:
    def test_severity_normalized(self):
        assert BugRecord(id="1", project_id="p", severity="HIGH").severity == BugSeverity.HIGH

    def test_blocker_maps_to_critical(self):
        assert BugRecord(id="1", project_id="p", severity="blocker").severity == BugSeverity.CRITICAL

    def test_blank_severity_is_none(self):
        assert BugRecord(id="1", project_id="p", severity=" ").severity is None

    def test_unknown_severity_rejected(self):
        with pytest.raises(ValidationError):
            BugRecord(id="1", project_id="p", severity="apocalyptic")

    def test_is_open(self):
        assert BugRecord(id="1", project_id="p").is_open
        assert not BugRecord(id="1", project_id="p", status=BugStatus.CLOSED).is_open

    def test_created_at_stored_in_utc(self):
        bug = BugRecord.model_validate(
            {"id": "1", "project_id": "p", "created_at": "2026-06-01T10:00:00+02:00"}
        )
        assert bug.created_at == datetime(2026, 6, 1, 8, 0, tzinfo=timezone.utc)
        assert bug.created_at.utcoffset() == timedelta(0)

    def test_zulu_and_naive_timestamps_compare(self):
        zulu = BugRecord.model_validate(
            {"id": "1", "project_id": "p", "created_at": "2026-06-01T10:00:00Z"}
        )
        naive = BugRecord(id="2", project_id="p", created_at=datetime(2026, 6, 1, 10, 0))
        assert zulu.created_at == naive.created_at

    def test_default_created_at_is_aware(self):
        assert BugRecord(id="1", project_id="p").created_at.tzinfo is not None


class TestAsUtc:
    def test_naive_read_as_utc(self):
        assert as_utc(datetime(2026, 1, 1, 12, 0)) == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_offset_converted(self):
        value = datetime(2026, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=-5)))
        converted = as_utc(value)
        assert converted.hour == 17
        assert converted.tzinfo == timezone.utc


# --- Gate decisions ---


class TestGateDecision:
    def test_passes_without_violations(self):
        assert GateDecision(subject="1").passed

    def test_fails_with_violations(self):
        decision = GateDecision(
            violations=[ViolationRecord(rule="Insufficient reviewers", description="x")]
        )
        assert not decision.passed
        assert decision.rules() == ["Insufficient reviewers"]

    def test_violation_severity_restricted(self):
        with pytest.raises(ValidationError):
            ViolationRecord(rule="x", description="y", severity="urgent")

    def test_violation_severity_default(self):
        assert ViolationRecord(rule="x", description="y").severity == "high"

    def test_passed_is_serialized(self):
        assert GateDecision().model_dump()["passed"] is True


class TestTestResults:
    def test_negative_counts_rejected(self):
        with pytest.raises(ValidationError):
            TestResults(failed=-1)


class TestQualityGateStats:
    def test_pass_rate(self):
        stats = QualityGateStats(
            project_id="p", start=datetime(2026, 1, 1), end=datetime(2026, 2, 1), passed=3, total=4
        )
        assert stats.pass_rate == 75.0


class TestDeveloperStats:
    def test_negative_score_rejected(self):
        with pytest.raises(ValidationError):
            DeveloperStats(developer_id="u", efficiency_score=-1.0)


# --- Alerts ---


class TestAlertLevel:
    @pytest.mark.parametrize("severity", list(BugSeverity))
    def test_from_severity_same_name(self, severity):
        assert AlertLevel.from_severity(severity).value == severity.value

    def test_from_missing_severity(self):
        assert AlertLevel.from_severity(None) == AlertLevel.LOW


class TestAlert:
    def test_frozen(self):
        alert = Alert(
            type=AlertType.MERGE_BLOCKED,
            level=AlertLevel.INFO,
            project_id="p",
            title="t",
            message="m",
        )
        with pytest.raises(ValidationError):
            alert.title = "changed"

    def test_alert_type_wire_values(self):
        assert AlertType.QUALITY_GATE_FAILURE.value == "quality-gate-failure"
        assert AlertType.THRESHOLD_VIOLATION.value == "threshold-violation"
        assert AlertType.MERGE_BLOCKED.value == "merge-blocked"


class TestEmergencyBypassRecord:
    def test_frozen(self):
        record = EmergencyBypassRecord(id="b", mr_id="1", authorized_by="root")
        with pytest.raises(ValidationError):
            record.reason = "edited"
