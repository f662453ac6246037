"""Coverage and test quality gate for a single commit.

Three independent checks:
  - Coverage thresholds: line/branch/function percentages must not be
    strictly below their thresholds. The outcome is written back to the
    coverage report as PASSED/FAILED.
  - New-code coverage: lines newly covered since the previous report,
    relative to the number of new lines. The newly covered count is the
    delta between the covered-line counts of the two most recent reports,
    not a line-level diff of the new code.
  - Test failures: any failure fails the check; only strict mode turns a
    failure into a deployment block with an alert.
"""

from __future__ import annotations

import logging
from datetime import datetime

from shared.config import CoverageConfig, get_config
from shared.models import (
    Alert,
    AlertLevel,
    AlertType,
    CoverageRecord,
    CoverageStatus,
    GateDecision,
    NewCodeResult,
    QualityGateStats,
    TestFailureResult,
    TestResults,
    ViolationRecord,
)
from shared.storage import GateStore

from alerts.dispatcher import Notifier

logger = logging.getLogger(__name__)

GATE_DISABLED = "quality gate disabled"
MISSING_COVERAGE = "missing coverage data"


class CoverageQualityGate:
    """Evaluates coverage and test results for a commit.

    Args:
        store: Source of coverage reports; receives the status write-back.
        notifier: Best-effort alert sender.
        config: Coverage configuration. Uses defaults if not provided.
    """

    def __init__(
        self,
        store: GateStore,
        notifier: Notifier,
        config: CoverageConfig | None = None,
    ) -> None:
        if config is None:
            config = get_config().coverage
        self.config = config
        self.store = store
        self.notifier = notifier

    def check_quality_gate(
        self,
        project_id: str,
        commit_id: str,
        line_threshold: float | None = None,
        branch_threshold: float | None = None,
        function_threshold: float | None = None,
    ) -> GateDecision:
        """Check a commit's coverage against thresholds.

        Explicit thresholds override the configured defaults per metric.
        """
        if not self.config.enabled:
            logger.info("Coverage quality gate disabled, skipping %s", commit_id)
            return GateDecision(subject=commit_id, messages=[GATE_DISABLED])

        defaults = self.config.thresholds
        thresholds = {
            "line": defaults.line if line_threshold is None else line_threshold,
            "branch": defaults.branch if branch_threshold is None else branch_threshold,
            "function": defaults.function if function_threshold is None else function_threshold,
        }
        logger.info(
            "Checking coverage quality gate: project=%s commit=%s thresholds=%s",
            project_id,
            commit_id,
            thresholds,
        )

        coverage = self.store.get_coverage(commit_id)
        if coverage is None:
            logger.warning("No coverage data for commit %s", commit_id)
            return GateDecision(
                subject=commit_id,
                violations=[
                    ViolationRecord(
                        rule=MISSING_COVERAGE,
                        description=f"Commit {commit_id} has no test coverage data",
                        actual_value="none",
                        expected_value="coverage report",
                        severity="critical",
                    )
                ],
            )

        violations = self._threshold_violations(coverage, thresholds)
        decision = GateDecision(
            subject=commit_id,
            violations=violations,
            messages=["quality gate passed" if not violations else "quality gate failed"],
        )

        status = CoverageStatus.PASSED if decision.passed else CoverageStatus.FAILED
        self.store.update_coverage_status(commit_id, status, thresholds["line"])

        logger.info(
            "Coverage quality gate done: project=%s commit=%s passed=%s violations=%d",
            project_id,
            commit_id,
            decision.passed,
            len(violations),
        )
        return decision

    @staticmethod
    def _threshold_violations(
        coverage: CoverageRecord, thresholds: dict[str, float]
    ) -> list[ViolationRecord]:
        actuals = {
            "line": coverage.line_coverage,
            "branch": coverage.branch_coverage,
            "function": coverage.function_coverage,
        }
        violations: list[ViolationRecord] = []
        for metric, actual in actuals.items():
            expected = thresholds[metric]
            # Metrics absent from the report are not gated
            if actual is None or actual >= expected:
                continue
            violations.append(
                ViolationRecord(
                    rule=f"{metric}_coverage",
                    description=(
                        f"{metric} coverage {actual:.2f}% below threshold {expected:.2f}%"
                    ),
                    actual_value=f"{actual:.2f}",
                    expected_value=f"{expected:.2f}",
                    severity="high",
                )
            )
        return violations

    def check_new_code_coverage(
        self,
        project_id: str,
        commit_id: str,
        new_code_lines: int,
    ) -> NewCodeResult:
        """Check that newly added code is covered by tests."""
        logger.info(
            "Checking new code coverage: project=%s commit=%s new_lines=%d",
            project_id,
            commit_id,
            new_code_lines,
        )
        if new_code_lines <= 0:
            return NewCodeResult(passed=True, message="no new code")

        current = self.store.get_coverage(commit_id)
        if current is None:
            logger.warning("No coverage data for commit %s", commit_id)
            return NewCodeResult(
                passed=False, message=MISSING_COVERAGE, new_code_lines=new_code_lines
            )

        history = self.store.coverage_history(project_id)
        if len(history) < 2:
            logger.info("Not enough coverage history for project %s", project_id)
            return NewCodeResult(
                passed=True, message="insufficient history", new_code_lines=new_code_lines
            )

        previous = next(
            (c for c in history if c.commit_id != commit_id and c.timestamp <= current.timestamp),
            None,
        )
        if previous is None:
            return NewCodeResult(
                passed=True, message="insufficient history", new_code_lines=new_code_lines
            )

        if current.covered_lines is None or previous.covered_lines is None:
            logger.warning("Incomplete coverage data for commit %s", commit_id)
            return NewCodeResult(
                passed=False, message="incomplete coverage data", new_code_lines=new_code_lines
            )

        new_covered = max(0, current.covered_lines - previous.covered_lines)
        rate = new_covered / new_code_lines * 100
        threshold = self.config.new_code_threshold
        passed = rate >= threshold
        if passed:
            message = f"new code coverage {rate:.2f}% meets threshold {threshold:.2f}%"
        else:
            message = f"new code coverage {rate:.2f}% below threshold {threshold:.2f}%"

        logger.info(
            "New code coverage: project=%s commit=%s rate=%.2f passed=%s",
            project_id,
            commit_id,
            rate,
            passed,
        )
        return NewCodeResult(
            passed=passed,
            message=message,
            new_code_lines=new_code_lines,
            new_covered_lines=new_covered,
            coverage_rate=rate,
        )

    def check_test_failures(
        self,
        project_id: str,
        commit_id: str,
        test_results: TestResults,
    ) -> TestFailureResult:
        """Check a test run. In strict mode a failure blocks deployment."""
        logger.info(
            "Checking test failures: project=%s commit=%s total=%d failed=%d",
            project_id,
            commit_id,
            test_results.total,
            test_results.failed,
        )
        if test_results.failed == 0:
            return TestFailureResult(passed=True, message="all tests passed")

        reason = f"{test_results.failed} failing test case(s)"
        if not self.config.strict_mode:
            logger.warning("Test failures detected, not blocking outside strict mode: %s", reason)
            return TestFailureResult(passed=False, message=reason, deployment_blocked=False)

        self.block_deployment(project_id, commit_id, reason)
        return TestFailureResult(passed=False, message=reason, deployment_blocked=True)

    def block_deployment(self, project_id: str, commit_id: str, reason: str) -> None:
        """Announce that deployment of a commit is blocked."""
        logger.warning(
            "Blocking deployment: project=%s commit=%s reason=%s", project_id, commit_id, reason
        )
        self.notifier.send(
            Alert(
                type=AlertType.QUALITY_GATE_FAILURE,
                level=AlertLevel.HIGH,
                project_id=project_id,
                related_entity_id=commit_id,
                title="Deployment blocked",
                message=reason,
            )
        )

    def get_quality_gate_stats(
        self,
        project_id: str,
        start: datetime,
        end: datetime,
    ) -> QualityGateStats:
        """Count gate outcomes recorded on a project's coverage reports."""
        records = self.store.coverage_between(project_id, start, end)
        return QualityGateStats(
            project_id=project_id,
            start=start,
            end=end,
            passed=sum(1 for r in records if r.status == CoverageStatus.PASSED),
            failed=sum(1 for r in records if r.status == CoverageStatus.FAILED),
            total=len(records),
        )
