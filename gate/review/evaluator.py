"""Review gate for merges into protected branches.

Rules evaluated for a merge request targeting a protected branch:
  - Enough distinct reviewers (more for large changes, measured as
    additions + deletions)
  - At least one reviewer whose latest action is an approval
  - No reviewer whose latest action is a change request
  - The author has not approved their own merge request

Every rule is checked; violations accumulate rather than short-circuit.

Emergency bypass is an audited, admin-only override. It creates an audit
record and notifies, but never alters a computed decision; the actor that
performs the merge consults the audit trail.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from shared.config import ReviewConfig, get_config
from shared.errors import AuthorizationError, DisabledError, NotFoundError
from shared.models import (
    Alert,
    AlertLevel,
    AlertType,
    EmergencyBypassRecord,
    EmergencyBypassResult,
    GateDecision,
    MergeRequestSnapshot,
    ReviewCoverageStats,
    ReviewRecord,
    ReviewStatus,
    ViolationRecord,
)
from shared.storage import GateStore

from alerts.dispatcher import Notifier

logger = logging.getLogger(__name__)

REVIEW_NOT_REQUIRED = "review not required for this branch"


def latest_review_by_reviewer(reviews: list[ReviewRecord]) -> dict[str, ReviewRecord]:
    """Map each reviewer to their most recent review."""
    latest: dict[str, ReviewRecord] = {}
    for review in sorted(reviews, key=lambda r: r.reviewed_at, reverse=True):
        if review.reviewer_id not in latest:
            latest[review.reviewer_id] = review
    return latest


class ReviewGateEvaluator:
    """Decides whether a merge request satisfies review policy.

    Args:
        store: Source of merge requests and reviews; sink for bypass records.
        notifier: Best-effort alert sender.
        config: Review policy. Uses defaults if not provided.
    """

    def __init__(
        self,
        store: GateStore,
        notifier: Notifier,
        config: ReviewConfig | None = None,
    ) -> None:
        if config is None:
            config = get_config().review
        self.config = config
        self.store = store
        self.notifier = notifier

    def is_protected(self, branch: str) -> bool:
        return branch in set(self.config.protected_branches)

    def required_reviewers(self, mr: MergeRequestSnapshot) -> int:
        if mr.changed_lines > self.config.large_mr_threshold:
            return self.config.large_mr_min_reviewers
        return self.config.min_reviewers

    def evaluate_merge(self, mr_id: str) -> GateDecision:
        """Evaluate review policy for a merge request.

        Raises:
            NotFoundError: If the merge request does not exist.
        """
        logger.info("Checking merge rules for MR %s", mr_id)
        mr = self.store.get_merge_request(mr_id)
        if mr is None:
            raise NotFoundError("merge request", mr_id)

        if not self.is_protected(mr.target_branch):
            return GateDecision(subject=mr_id, messages=[REVIEW_NOT_REQUIRED])

        reviews = self.store.list_reviews(mr.id)
        latest = latest_review_by_reviewer(reviews)
        violations: list[ViolationRecord] = []
        messages: list[str] = []

        # Reviewer count
        required = self.required_reviewers(mr)
        if mr.changed_lines > self.config.large_mr_threshold:
            messages.append(
                f"Large change ({mr.changed_lines} lines) requires {required} reviewers"
            )
        if len(latest) < required:
            violations.append(
                ViolationRecord(
                    rule="Insufficient reviewers",
                    description=f"Requires at least {required} reviewers",
                    actual_value=str(len(latest)),
                    expected_value=str(required),
                    severity="high",
                )
            )

        approvers = [rid for rid, r in latest.items() if r.status == ReviewStatus.APPROVED]
        if self.config.require_approval and not approvers:
            violations.append(
                ViolationRecord(
                    rule="Missing required approvals",
                    description="At least one approval is required",
                    actual_value="0",
                    expected_value="1",
                    severity="high",
                )
            )

        # Only the latest action of each reviewer counts here
        blockers = sorted(
            rid for rid, r in latest.items() if r.status == ReviewStatus.CHANGES_REQUESTED
        )
        if blockers:
            violations.append(
                ViolationRecord(
                    rule="Unresolved change requests",
                    description=(
                        "All change requests must be resolved "
                        f"(requested by: {', '.join(blockers)})"
                    ),
                    actual_value=str(len(blockers)),
                    expected_value="0",
                    severity="medium",
                )
            )

        if self.config.block_self_approval and any(
            r.reviewer_id == mr.author_id and r.status == ReviewStatus.APPROVED for r in reviews
        ):
            violations.append(
                ViolationRecord(
                    rule="Self-approval not allowed",
                    description="Author cannot approve their own merge request",
                    actual_value=mr.author_id,
                    expected_value="approver other than the author",
                    severity="critical",
                )
            )

        decision = GateDecision(subject=mr_id, violations=violations, messages=messages)

        if decision.passed:
            logger.info("Merge approved for MR %s", mr_id)
        else:
            logger.warning("Merge blocked for MR %s: %s", mr_id, decision.rules())
            if self.config.alert_on_block:
                self._send_merge_blocked_alert(mr, decision)

        return decision

    def authorize_emergency_bypass(
        self,
        mr_id: str,
        acting_user_id: str,
        reason: str,
    ) -> EmergencyBypassResult:
        """Record an admin-authorized bypass of the review gate.

        Raises:
            DisabledError: If emergency bypass is switched off.
            AuthorizationError: If the acting user is not an admin.
            NotFoundError: If the merge request does not exist.
        """
        logger.info("Authorizing emergency bypass for MR %s by %s", mr_id, acting_user_id)

        if not self.config.emergency_bypass_enabled:
            raise DisabledError("emergency bypass")

        if acting_user_id not in set(self.config.admin_users):
            raise AuthorizationError(acting_user_id)

        mr = self.store.get_merge_request(mr_id)
        if mr is None:
            raise NotFoundError("merge request", mr_id)

        record = EmergencyBypassRecord(
            id=str(uuid.uuid4()),
            mr_id=mr_id,
            project_id=mr.project_id,
            authorized_by=acting_user_id,
            reason=reason,
        )
        self.store.append_bypass(record)
        logger.warning(
            "Emergency bypass authorized: mr=%s admin=%s reason=%s", mr_id, acting_user_id, reason
        )

        self.notifier.send(
            Alert(
                type=AlertType.MERGE_BLOCKED,
                level=AlertLevel.INFO,
                project_id=mr.project_id,
                related_entity_id=mr_id,
                title="Emergency bypass authorized",
                message=(
                    f"Merge request {mr_id} was granted an emergency bypass "
                    f"by {acting_user_id}: {reason}"
                ),
                metadata={"bypass_id": record.id, "authorized_by": acting_user_id},
            )
        )

        return EmergencyBypassResult(
            mr_id=mr_id,
            authorized=True,
            bypass=record,
            message="Emergency bypass authorized successfully",
        )

    def list_bypasses(self, mr_id: str) -> list[EmergencyBypassRecord]:
        """Audit trail of bypasses granted for a merge request."""
        return self.store.list_bypasses(mr_id)

    def calculate_review_coverage(
        self,
        project_id: str,
        start: datetime,
        end: datetime,
    ) -> ReviewCoverageStats:
        """Summarize how many of a project's merge requests were reviewed."""
        merge_requests = self.store.list_merge_requests(project_id, start, end)
        stats = ReviewCoverageStats(project_id=project_id, start=start, end=end)

        review_hours = 0.0
        for mr in merge_requests:
            reviews = self.store.list_reviews(mr.id)
            if not reviews:
                continue
            stats.reviewed_merge_requests += 1
            stats.total_reviews += len(reviews)

            first = min(reviews, key=lambda r: r.reviewed_at)
            review_hours += max(0.0, (first.reviewed_at - mr.created_at).total_seconds() / 3600)

            statuses = {r.status for r in reviews}
            if ReviewStatus.APPROVED in statuses:
                stats.approved_merge_requests += 1
            if ReviewStatus.CHANGES_REQUESTED in statuses:
                stats.rejected_merge_requests += 1

        total = len(merge_requests)
        stats.total_merge_requests = total
        if total:
            stats.review_coverage_rate = stats.reviewed_merge_requests / total * 100
            stats.approval_rate = stats.approved_merge_requests / total * 100
            stats.rejection_rate = stats.rejected_merge_requests / total * 100
        if stats.reviewed_merge_requests:
            stats.average_review_time_hours = review_hours / stats.reviewed_merge_requests
            stats.average_reviews_per_mr = stats.total_reviews / stats.reviewed_merge_requests

        logger.info(
            "Review coverage for project %s: %.2f%% over %d merge requests",
            project_id,
            stats.review_coverage_rate,
            total,
        )
        return stats

    def _send_merge_blocked_alert(self, mr: MergeRequestSnapshot, decision: GateDecision) -> None:
        self.notifier.send(
            Alert(
                type=AlertType.MERGE_BLOCKED,
                level=AlertLevel.HIGH,
                project_id=mr.project_id,
                related_entity_id=mr.id,
                title="Merge blocked",
                message=(
                    f"Merge request {mr.id} was blocked by review rules: "
                    + "; ".join(decision.rules())
                ),
                metadata={"violations": decision.rules()},
            )
        )
