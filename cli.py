"""Unified CLI for merge-gates.

Runs the review gate, coverage gate, and bug SLA monitor against the
configured store.

Usage:
    python -m cli merge-check <mr-id>
    python -m cli bypass <mr-id> --user USER --reason REASON
    python -m cli coverage-gate <project> <commit> [--line N] [--branch N] [--function N]
    python -m cli new-code <project> <commit> <new-lines>
    python -m cli test-failures <project> <commit> --total N --failed N [--passed N] [--skipped N]
    python -m cli efficiency --start DATE --end DATE [--project P] [--assignee A]
    python -m cli sla-scan [--watch]
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

from gate.services import GateServices, build_services
from shared.config import load_config
from shared.errors import GateError
from shared.models import EfficiencyStats, GateDecision, TestResults


def _build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="merge-gates",
        description="Merge and release quality gates",
    )
    parser.add_argument("--config", default=None, help="Path to config file")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- merge-check ---
    sp_merge = subparsers.add_parser("merge-check", help="Evaluate review policy for an MR")
    sp_merge.add_argument("mr_id", help="Merge request id")

    # --- bypass ---
    sp_bypass = subparsers.add_parser("bypass", help="Authorize an emergency bypass")
    sp_bypass.add_argument("mr_id", help="Merge request id")
    sp_bypass.add_argument("--user", required=True, help="Acting admin user id")
    sp_bypass.add_argument("--reason", default="", help="Why the bypass is needed")

    # --- coverage-gate ---
    sp_cov = subparsers.add_parser("coverage-gate", help="Check coverage thresholds")
    sp_cov.add_argument("project_id")
    sp_cov.add_argument("commit_id")
    sp_cov.add_argument("--line", type=float, default=None, help="Line coverage threshold")
    sp_cov.add_argument("--branch", type=float, default=None, help="Branch coverage threshold")
    sp_cov.add_argument(
        "--function", type=float, default=None, help="Function coverage threshold"
    )

    # --- new-code ---
    sp_new = subparsers.add_parser("new-code", help="Check coverage of newly added code")
    sp_new.add_argument("project_id")
    sp_new.add_argument("commit_id")
    sp_new.add_argument("new_lines", type=int, help="Number of new code lines")

    # --- test-failures ---
    sp_tests = subparsers.add_parser("test-failures", help="Check a test run for failures")
    sp_tests.add_argument("project_id")
    sp_tests.add_argument("commit_id")
    sp_tests.add_argument("--total", type=int, default=0)
    sp_tests.add_argument("--passed", type=int, default=0)
    sp_tests.add_argument("--failed", type=int, default=0)
    sp_tests.add_argument("--skipped", type=int, default=0)

    # --- efficiency ---
    sp_eff = subparsers.add_parser("efficiency", help="Bug fixing efficiency report")
    sp_eff.add_argument("--start", required=True, type=datetime.fromisoformat)
    sp_eff.add_argument("--end", required=True, type=datetime.fromisoformat)
    sp_eff.add_argument("--project", default="", help="Filter by project")
    sp_eff.add_argument("--assignee", default="", help="Filter by assignee")

    # --- sla-scan ---
    sp_scan = subparsers.add_parser("sla-scan", help="Scan open bugs for SLA timeouts")
    sp_scan.add_argument(
        "--watch", action="store_true", help="Keep scanning on the configured interval"
    )

    return parser


def _load_services(args: argparse.Namespace) -> GateServices:
    config_path = Path(args.config) if args.config else None
    return build_services(load_config(config_path=config_path))


def _print_decision(decision: GateDecision) -> str:
    """Format a GateDecision for display. Returns the formatted string."""
    lines = [f"Gate: {'PASSED' if decision.passed else 'FAILED'}  ({decision.subject})"]
    for msg in decision.messages:
        lines.append(f"  {msg}")
    if decision.violations:
        lines.append("")
        lines.append("Violations:")
        for v in decision.violations:
            lines.append(f"  - [{v.severity}] {v.rule}: {v.description}")
    return "\n".join(lines)


def _print_efficiency(stats: EfficiencyStats) -> str:
    """Format EfficiencyStats for display. Returns the formatted string."""
    lines = [
        f"Bugs:            {stats.total_bugs} ({stats.closed_bugs} closed, {stats.open_bugs} open)",
        f"Resolution rate: {stats.resolution_rate:.2f}%",
        f"Resolution time: avg {stats.average_resolution_time_hours:.2f}h  "
        f"min {stats.min_resolution_time_hours:.2f}h  "
        f"max {stats.max_resolution_time_hours:.2f}h",
        f"Response time:   avg {stats.average_response_time_hours:.2f}h",
    ]

    if stats.severity_stats:
        lines.append("")
        lines.append("By severity:")
        for g in stats.severity_stats:
            lines.append(
                f"  {g.key:<10} {g.count:>4} bugs  {g.resolution_rate:6.2f}% resolved  "
                f"{g.timeout_count} over SLA"
            )

    if stats.developer_stats:
        lines.append("")
        lines.append("By developer:")
        for d in stats.developer_stats:
            name = d.developer_name or d.developer_id
            lines.append(f"  {name:<20} {d.closed_count:>4} closed  score {d.efficiency_score:.1f}")

    if stats.efficiency_issues:
        lines.append("")
        lines.append("Issues:")
        for issue in stats.efficiency_issues:
            lines.append(f"  - {issue}")

    return "\n".join(lines)


def cmd_merge_check(args: argparse.Namespace) -> int:
    """Evaluate review policy for a merge request."""
    services = _load_services(args)
    decision = services.review.evaluate_merge(args.mr_id)
    print(_print_decision(decision))
    return 0 if decision.passed else 1


def cmd_bypass(args: argparse.Namespace) -> int:
    """Authorize an emergency bypass."""
    services = _load_services(args)
    result = services.review.authorize_emergency_bypass(args.mr_id, args.user, args.reason)
    print(result.message)
    if result.bypass is not None:
        print(f"Audit record: {result.bypass.id}")
    return 0


def cmd_coverage_gate(args: argparse.Namespace) -> int:
    """Check coverage thresholds for a commit."""
    services = _load_services(args)
    decision = services.coverage.check_quality_gate(
        args.project_id, args.commit_id, args.line, args.branch, args.function
    )
    print(_print_decision(decision))
    return 0 if decision.passed else 1


def cmd_new_code(args: argparse.Namespace) -> int:
    """Check coverage of newly added code."""
    services = _load_services(args)
    result = services.coverage.check_new_code_coverage(
        args.project_id, args.commit_id, args.new_lines
    )
    print(f"New code: {'PASSED' if result.passed else 'FAILED'}  {result.message}")
    print(f"  new lines: {result.new_code_lines}  newly covered: {result.new_covered_lines}")
    return 0 if result.passed else 1


def cmd_test_failures(args: argparse.Namespace) -> int:
    """Check a test run for failures."""
    services = _load_services(args)
    results = TestResults(
        total=args.total, passed=args.passed, failed=args.failed, skipped=args.skipped
    )
    outcome = services.coverage.check_test_failures(args.project_id, args.commit_id, results)
    print(f"Tests: {'PASSED' if outcome.passed else 'FAILED'}  {outcome.message}")
    if outcome.deployment_blocked:
        print("Deployment: BLOCKED")
    return 0 if outcome.passed else 1


def cmd_efficiency(args: argparse.Namespace) -> int:
    """Print a bug fixing efficiency report."""
    services = _load_services(args)
    stats = services.bug_sla.calculate_efficiency(
        args.project or None, args.assignee or None, args.start, args.end
    )
    print(_print_efficiency(stats))
    return 0


def cmd_sla_scan(args: argparse.Namespace) -> int:
    """Scan open bugs for SLA timeouts, once or continuously."""
    services = _load_services(args)
    if args.watch:
        try:
            services.bug_sla.run_forever()
        except KeyboardInterrupt:
            pass
        return 0

    result = services.bug_sla.scan_for_timeouts()
    print(f"Scanned {result.scanned} open bugs, {result.alerts_sent} over SLA.")
    for bug_id in result.timed_out_bug_ids:
        print(f"  - #{bug_id}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point. Returns exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "merge-check": cmd_merge_check,
        "bypass": cmd_bypass,
        "coverage-gate": cmd_coverage_gate,
        "new-code": cmd_new_code,
        "test-failures": cmd_test_failures,
        "efficiency": cmd_efficiency,
        "sla-scan": cmd_sla_scan,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        return handler(args)
    except GateError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
