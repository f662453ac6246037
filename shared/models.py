"""Shared data models for merge-gates.

Core Pydantic models used across the review gate, coverage gate, bug SLA
monitor, and alert dispatcher. String values of the enums are the wire
format used by the store and by published alerts.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, computed_field, field_validator


def as_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime. Naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Stored and compared in UTC; naive input is read as UTC.
UTCDateTime = Annotated[datetime, AfterValidator(as_utc)]

ViolationSeverity = Literal["critical", "high", "medium", "low"]


# --- Enums ---


class MergeRequestStatus(str, Enum):
    """Lifecycle state of a merge request."""

    OPENED = "opened"
    MERGED = "merged"
    CLOSED = "closed"


class ReviewStatus(str, Enum):
    """Outcome of a single reviewer action."""

    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    COMMENTED = "commented"


class CoverageStatus(str, Enum):
    """Quality gate outcome recorded on a coverage report."""

    PASSED = "PASSED"
    FAILED = "FAILED"


class BugSeverity(str, Enum):
    """Bug severity, used to pick the SLA timeout."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class BugStatus(str, Enum):
    OPENED = "opened"
    CLOSED = "closed"


class AlertType(str, Enum):
    """Categories of outbound alerts."""

    SECURITY_VULNERABILITY = "security-vulnerability"
    PERFORMANCE_ISSUE = "performance-issue"
    QUALITY_GATE_FAILURE = "quality-gate-failure"
    THRESHOLD_VIOLATION = "threshold-violation"
    MERGE_BLOCKED = "merge-blocked"


class AlertLevel(str, Enum):
    """Alert urgency. Each level maps to a fixed numeric priority (1 highest)."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def priority(self) -> int:
        return _LEVEL_PRIORITY[self]

    @classmethod
    def from_severity(cls, severity: "BugSeverity | None") -> "AlertLevel":
        """Map a bug severity onto the alert level of the same name."""
        if severity is None:
            return cls.LOW
        return cls(severity.value)


_LEVEL_PRIORITY: dict[AlertLevel, int] = {
    AlertLevel.CRITICAL: 1,
    AlertLevel.HIGH: 2,
    AlertLevel.MEDIUM: 3,
    AlertLevel.LOW: 4,
    AlertLevel.INFO: 5,
}


# --- Source Control Records ---


class MergeRequestSnapshot(BaseModel):
    """A merge request as currently known to the store."""

    id: str
    project_id: str
    author_id: str
    source_branch: str = ""
    target_branch: str
    title: str = ""
    additions: int = 0
    deletions: int = 0
    status: MergeRequestStatus = MergeRequestStatus.OPENED
    created_at: UTCDateTime = Field(default_factory=utcnow)
    merged_at: UTCDateTime | None = None

    @property
    def changed_lines(self) -> int:
        return self.additions + self.deletions


class ReviewRecord(BaseModel):
    """One reviewer action on a merge request."""

    mr_id: str
    reviewer_id: str
    status: ReviewStatus
    reviewed_at: UTCDateTime = Field(default_factory=utcnow)
    comment: str = ""


class EmergencyBypassRecord(BaseModel):
    """Audit record of an admin-authorized merge bypass. Immutable."""

    model_config = ConfigDict(frozen=True)

    id: str
    mr_id: str
    project_id: str = ""
    authorized_by: str
    reason: str = ""
    authorized_at: UTCDateTime = Field(default_factory=utcnow)


class EmergencyBypassResult(BaseModel):
    mr_id: str
    authorized: bool
    bypass: EmergencyBypassRecord | None = None
    message: str = ""


class CoverageRecord(BaseModel):
    """Coverage report for a single commit."""

    project_id: str
    commit_id: str
    line_coverage: float | None = None
    branch_coverage: float | None = None
    function_coverage: float | None = None
    total_lines: int | None = None
    covered_lines: int | None = None
    status: CoverageStatus | None = None
    threshold: float | None = None
    timestamp: UTCDateTime = Field(default_factory=utcnow)


class BugRecord(BaseModel):
    """The bug-relevant subset of an issue."""

    id: str
    project_id: str
    title: str = ""
    issue_type: str = "bug"
    severity: BugSeverity | None = None
    priority: str = ""
    status: BugStatus = BugStatus.OPENED
    assignee_id: str = ""
    assignee_name: str = ""
    created_at: UTCDateTime = Field(default_factory=utcnow)
    closed_at: UTCDateTime | None = None
    resolved_at: UTCDateTime | None = None
    response_time_minutes: int | None = None
    resolution_time_minutes: int | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: Any) -> Any:
        # Trackers also report "blocker", which carries the critical SLA.
        if isinstance(value, str):
            value = value.strip().lower()
            if not value:
                return None
            if value == "blocker":
                return BugSeverity.CRITICAL.value
        return value

    @property
    def is_open(self) -> bool:
        return self.status == BugStatus.OPENED


# --- Gate Models ---


class ViolationRecord(BaseModel):
    """One reason a gate failed."""

    rule: str
    description: str
    actual_value: str = ""
    expected_value: str = ""
    severity: ViolationSeverity = "high"


class GateDecision(BaseModel):
    """Outcome of a single gate evaluation.

    ``passed`` is derived from the violation list, so a decision can never
    pass while carrying violations.
    """

    subject: str = ""
    violations: list[ViolationRecord] = Field(default_factory=list)
    messages: list[str] = Field(default_factory=list)
    evaluated_at: UTCDateTime = Field(default_factory=utcnow)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def passed(self) -> bool:
        return not self.violations

    def rules(self) -> list[str]:
        """Names of the violated rules, in evaluation order."""
        return [v.rule for v in self.violations]


class NewCodeResult(BaseModel):
    passed: bool
    message: str
    new_code_lines: int = 0
    new_covered_lines: int = 0
    coverage_rate: float = 0.0


class TestResults(BaseModel):
    """Summary of a test run as reported by CI."""

    __test__ = False

    total: int = Field(default=0, ge=0)
    passed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)


class TestFailureResult(BaseModel):
    __test__ = False

    passed: bool
    message: str
    deployment_blocked: bool = False


class QualityGateStats(BaseModel):
    """Pass/fail counts of coverage gate outcomes over a period."""

    project_id: str
    start: UTCDateTime
    end: UTCDateTime
    passed: int = 0
    failed: int = 0
    total: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def pass_rate(self) -> float:
        return self.passed / self.total * 100 if self.total else 0.0


class ReviewCoverageStats(BaseModel):
    """How thoroughly a project's merge requests were reviewed."""

    project_id: str
    start: UTCDateTime
    end: UTCDateTime
    calculated_at: UTCDateTime = Field(default_factory=utcnow)
    total_merge_requests: int = 0
    reviewed_merge_requests: int = 0
    approved_merge_requests: int = 0
    rejected_merge_requests: int = 0
    total_reviews: int = 0
    review_coverage_rate: float = 0.0
    approval_rate: float = 0.0
    rejection_rate: float = 0.0
    average_review_time_hours: float = 0.0
    average_reviews_per_mr: float = 0.0


# --- Bug Efficiency Models ---


class GroupStats(BaseModel):
    """Bug statistics for one severity or priority bucket."""

    key: str
    count: int = 0
    closed_count: int = 0
    resolution_rate: float = 0.0
    average_resolution_time_hours: float = 0.0
    average_response_time_hours: float = 0.0
    timeout_count: int = 0


class DeveloperStats(BaseModel):
    developer_id: str
    developer_name: str = ""
    count: int = 0
    closed_count: int = 0
    resolution_rate: float = 0.0
    average_resolution_time_hours: float = 0.0
    average_response_time_hours: float = 0.0
    efficiency_score: float = Field(default=0.0, ge=0.0)


class EfficiencyStats(BaseModel):
    """Bug fixing efficiency over a time window."""

    project_id: str | None = None
    assignee_id: str | None = None
    start: UTCDateTime
    end: UTCDateTime
    calculated_at: UTCDateTime = Field(default_factory=utcnow)

    total_bugs: int = 0
    closed_bugs: int = 0
    open_bugs: int = 0
    resolution_rate: float = 0.0

    average_resolution_time_hours: float = 0.0
    min_resolution_time_hours: float = 0.0
    max_resolution_time_hours: float = 0.0
    median_resolution_time_hours: float = 0.0

    average_response_time_hours: float = 0.0
    min_response_time_hours: float = 0.0
    max_response_time_hours: float = 0.0
    median_response_time_hours: float = 0.0

    severity_stats: list[GroupStats] = Field(default_factory=list)
    priority_stats: list[GroupStats] = Field(default_factory=list)
    developer_stats: list[DeveloperStats] = Field(default_factory=list)
    efficiency_issues: list[str] = Field(default_factory=list)


class EfficiencyComparison(BaseModel):
    """Change in bug fixing efficiency between two periods."""

    project_id: str | None = None
    period1: EfficiencyStats
    period2: EfficiencyStats
    fix_time_improvement: float | None = None  # percent, positive = faster
    response_time_improvement: float | None = None
    resolution_rate_change: float = 0.0
    bug_count_change: int = 0
    overall_assessment: str = "stable"  # "improved", "stable", "declined"
    compared_at: UTCDateTime = Field(default_factory=utcnow)


class TimeoutScanResult(BaseModel):
    """Summary of one bug SLA scan."""

    skipped: bool = False
    scanned: int = 0
    alerts_sent: int = 0
    timed_out_bug_ids: list[str] = Field(default_factory=list)


# --- Alert Models ---


class Alert(BaseModel):
    """A structured notification published by the alert dispatcher."""

    model_config = ConfigDict(frozen=True)

    type: AlertType
    level: AlertLevel
    project_id: str
    related_entity_id: str | None = None
    title: str
    message: str
    timestamp: UTCDateTime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def priority(self) -> int:
        return self.level.priority
