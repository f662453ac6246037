"""Tests for the unified CLI."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from cli import _build_parser, _print_decision, _print_efficiency, main
from gate.services import build_services
from shared.config import CoverageConfig, MergeGatesConfig, ReviewConfig
from shared.models import (
    BugRecord,
    CoverageRecord,
    EfficiencyStats,
    GateDecision,
    MergeRequestSnapshot,
    ViolationRecord,
)
from shared.storage import InMemoryStore


# --- Helper ---


def _make_services(**coverage):
    store = InMemoryStore()
    store.save_merge_request(
        MergeRequestSnapshot(id="1", project_id="proj", author_id="alice", target_branch="main")
    )
    store.save_merge_request(
        MergeRequestSnapshot(id="2", project_id="proj", author_id="alice", target_branch="feature")
    )
    store.save_coverage(
        CoverageRecord(project_id="proj", commit_id="abc", line_coverage=50.0)
    )
    store.save_bug(
        BugRecord(
            id="7",
            project_id="proj",
            severity="critical",
            created_at=datetime.now(timezone.utc) - timedelta(hours=9),
        )
    )
    config = MergeGatesConfig(
        review=ReviewConfig(emergency_bypass_enabled=True, admin_users=["root"]),
        coverage=CoverageConfig(**coverage),
    )
    return build_services(config=config, store=store, notifier=MagicMock())


def _run(argv, services=None):
    services = services or _make_services()
    with patch("cli._load_services", return_value=services):
        return main(argv)


# --- Parser tests ---


class TestBuildParser:
    def test_merge_check_args(self):
        args = _build_parser().parse_args(["merge-check", "42"])
        assert args.command == "merge-check"
        assert args.mr_id == "42"

    def test_coverage_gate_thresholds(self):
        args = _build_parser().parse_args(
            ["coverage-gate", "proj", "abc", "--line", "90", "--branch", "60"]
        )
        assert args.line == 90.0
        assert args.branch == 60.0
        assert args.function is None

    def test_efficiency_dates(self):
        args = _build_parser().parse_args(
            ["efficiency", "--start", "2026-01-01", "--end", "2026-02-01T12:00"]
        )
        assert args.start == datetime(2026, 1, 1)
        assert args.end == datetime(2026, 2, 1, 12, 0)

    def test_config_arg(self):
        args = _build_parser().parse_args(["--config", "/path/to/config.yaml", "sla-scan"])
        assert args.config == "/path/to/config.yaml"
        assert args.watch is False


# --- Formatter tests ---


class TestPrintDecision:
    def test_passed(self):
        assert "PASSED" in _print_decision(GateDecision(subject="1"))

    def test_violations_listed(self):
        decision = GateDecision(
            subject="1",
            violations=[
                ViolationRecord(
                    rule="Insufficient reviewers", description="Requires at least 2 reviewers"
                )
            ],
        )
        output = _print_decision(decision)
        assert "FAILED" in output
        assert "[high] Insufficient reviewers: Requires at least 2 reviewers" in output


class TestPrintEfficiency:
    def test_issues_listed(self):
        stats = EfficiencyStats(
            start=datetime(2026, 1, 1),
            end=datetime(2026, 2, 1),
            total_bugs=3,
            efficiency_issues=["Resolution rate too low: 0.00% (minimum 50.00%)"],
        )
        output = _print_efficiency(stats)
        assert "Bugs:            3" in output
        assert "Resolution rate too low" in output


# --- Commands ---


class TestCommands:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1

    def test_merge_check_blocked(self, capsys):
        assert _run(["merge-check", "1"]) == 1
        assert "Insufficient reviewers" in capsys.readouterr().out

    def test_merge_check_unprotected(self, capsys):
        assert _run(["merge-check", "2"]) == 0
        assert "review not required" in capsys.readouterr().out

    def test_unknown_mr_exit_code(self, capsys):
        assert _run(["merge-check", "404"]) == 2
        assert "Merge request not found: 404" in capsys.readouterr().err

    def test_bypass(self, capsys):
        assert _run(["bypass", "1", "--user", "root", "--reason", "outage"]) == 0
        assert "Audit record:" in capsys.readouterr().out

    def test_bypass_non_admin(self, capsys):
        assert _run(["bypass", "1", "--user", "mallory"]) == 2

    def test_coverage_gate(self, capsys):
        assert _run(["coverage-gate", "proj", "abc"]) == 1
        assert "line coverage 50.00% below threshold 80.00%" in capsys.readouterr().out
        assert _run(["coverage-gate", "proj", "abc", "--line", "40"]) == 0

    def test_new_code(self, capsys):
        assert _run(["new-code", "proj", "abc", "0"]) == 0
        assert "no new code" in capsys.readouterr().out

    def test_test_failures_strict(self, capsys):
        services = _make_services(strict_mode=True)
        argv = ["test-failures", "proj", "abc", "--total", "4", "--passed", "3", "--failed", "1"]
        assert _run(argv, services) == 1
        assert "Deployment: BLOCKED" in capsys.readouterr().out
        services.notifier.send.assert_called_once()

    def test_efficiency(self, capsys):
        now = datetime.now(timezone.utc)
        argv = [
            "efficiency",
            "--start",
            (now - timedelta(days=1)).isoformat(),
            "--end",
            (now + timedelta(days=1)).isoformat(),
            "--project",
            "proj",
        ]
        assert _run(argv) == 0
        assert "1 open" in capsys.readouterr().out

    def test_sla_scan(self, capsys):
        assert _run(["sla-scan"]) == 0
        output = capsys.readouterr().out
        assert "1 over SLA" in output
        assert "#7" in output
