"""Bug SLA monitor.

Scans open bugs for SLA timeouts and raises one alert per timed-out bug.
Scans are single-flight per monitor: a scan requested while another is
still running is skipped. Bug records are never modified.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta

from shared.config import BugSlaConfig, get_config
from shared.models import (
    Alert,
    AlertLevel,
    AlertType,
    BugRecord,
    EfficiencyComparison,
    EfficiencyStats,
    TimeoutScanResult,
    as_utc,
    utcnow,
)
from shared.storage import GateStore

from alerts.dispatcher import Notifier
from sla.efficiency import is_timed_out, summarize

logger = logging.getLogger(__name__)


def _improvement(before: float, after: float) -> float | None:
    """Percent reduction from before to after. None if either is unknown."""
    if before <= 0 or after <= 0:
        return None
    return (before - after) / before * 100


class BugSlaMonitor:
    """Watches bug SLA timers and computes fixing efficiency.

    Args:
        store: Source of bug records.
        notifier: Best-effort alert sender.
        config: Bug SLA configuration. Uses defaults if not provided.
    """

    def __init__(
        self,
        store: GateStore,
        notifier: Notifier,
        config: BugSlaConfig | None = None,
    ) -> None:
        if config is None:
            config = get_config().bug_sla
        self.config = config
        self.store = store
        self.notifier = notifier
        self._scan_lock = threading.Lock()

    def timeout_hours(self, bug: BugRecord) -> int:
        return self.config.timeout_hours.for_severity(bug.severity)

    def scan_for_timeouts(self, now: datetime | None = None) -> TimeoutScanResult:
        """Alert on every open bug that has exceeded its severity's SLA."""
        if not self._scan_lock.acquire(blocking=False):
            logger.warning("Bug SLA scan already running, skipping")
            return TimeoutScanResult(skipped=True)

        try:
            now = as_utc(now) if now is not None else utcnow()
            logger.info("Starting bug SLA scan")
            bugs = self.store.list_open_bugs()
            result = TimeoutScanResult(scanned=len(bugs))

            for bug in bugs:
                if not is_timed_out(bug, self.config.timeout_hours, now):
                    continue
                self._send_timeout_alert(bug, now)
                result.alerts_sent += 1
                result.timed_out_bug_ids.append(bug.id)

            logger.info(
                "Bug SLA scan completed: scanned=%d timed_out=%d", result.scanned, result.alerts_sent
            )
            return result
        finally:
            self._scan_lock.release()

    def _send_timeout_alert(self, bug: BugRecord, now: datetime) -> None:
        elapsed_hours = (now - bug.created_at).total_seconds() / 3600
        threshold = self.timeout_hours(bug)
        severity = bug.severity.value if bug.severity else "unclassified"
        assignee = bug.assignee_name or bug.assignee_id or "unassigned"
        self.notifier.send(
            Alert(
                type=AlertType.THRESHOLD_VIOLATION,
                level=AlertLevel.from_severity(bug.severity),
                project_id=bug.project_id,
                related_entity_id=bug.id,
                title=f"Bug #{bug.id} exceeded {severity} SLA",
                message=(
                    f"Bug #{bug.id} '{bug.title}' ({severity} severity) has been open for "
                    f"{elapsed_hours:.1f} hours, SLA is {threshold} hours. "
                    f"Assigned to: {assignee}"
                ),
                metadata={
                    "elapsed_hours": round(elapsed_hours, 2),
                    "timeout_hours": threshold,
                    "assignee_id": bug.assignee_id,
                },
            )
        )

    def run_forever(self, stop: threading.Event | None = None) -> None:
        """Scan on a fixed interval until ``stop`` is set."""
        stop = stop or threading.Event()
        interval = self.config.scan_interval_seconds
        logger.info("Bug SLA monitor started, interval=%ss", interval)
        while not stop.is_set():
            try:
                self.scan_for_timeouts()
            except Exception:
                logger.exception("Bug SLA scan failed")
            stop.wait(interval)
        logger.info("Bug SLA monitor stopped")

    def calculate_efficiency(
        self,
        project_id: str | None,
        assignee_id: str | None,
        start: datetime,
        end: datetime,
        now: datetime | None = None,
    ) -> EfficiencyStats:
        """Bug fixing efficiency for bugs created in [start, end]."""
        logger.info(
            "Calculating bug fix efficiency: project=%s assignee=%s start=%s end=%s",
            project_id,
            assignee_id,
            start,
            end,
        )
        bugs = self.store.list_bugs(
            project_id=project_id or None,
            assignee_id=assignee_id or None,
            start=start,
            end=end,
        )
        stats = summarize(
            bugs,
            self.config,
            start,
            end,
            project_id=project_id,
            assignee_id=assignee_id,
            now=now,
        )
        logger.info(
            "Bug fix efficiency: total=%d avg_resolution=%.2fh",
            stats.total_bugs,
            stats.average_resolution_time_hours,
        )
        return stats

    def compare_efficiency(
        self,
        project_id: str | None,
        period1: tuple[datetime, datetime],
        period2: tuple[datetime, datetime],
    ) -> EfficiencyComparison:
        """Compare efficiency of a later period against an earlier one."""
        first = self.calculate_efficiency(project_id, None, *period1)
        second = self.calculate_efficiency(project_id, None, *period2)

        fix = _improvement(first.average_resolution_time_hours, second.average_resolution_time_hours)
        response = _improvement(
            first.average_response_time_hours, second.average_response_time_hours
        )
        rate_change = second.resolution_rate - first.resolution_rate

        signals = [v for v in (fix, response, rate_change) if v is not None]
        gains = sum(1 for v in signals if v > 0)
        losses = sum(1 for v in signals if v < 0)
        if gains > losses:
            assessment = "improved"
        elif losses > gains:
            assessment = "declined"
        else:
            assessment = "stable"

        return EfficiencyComparison(
            project_id=project_id,
            period1=first,
            period2=second,
            fix_time_improvement=fix,
            response_time_improvement=response,
            resolution_rate_change=rate_change,
            bug_count_change=second.total_bugs - first.total_bugs,
            overall_assessment=assessment,
        )

    def get_long_pending_bugs(
        self,
        project_id: str | None = None,
        hours_threshold: int = 72,
        now: datetime | None = None,
    ) -> list[BugRecord]:
        """Open bugs older than ``hours_threshold``, oldest first."""
        now = as_utc(now) if now is not None else utcnow()
        cutoff = now - timedelta(hours=hours_threshold)
        bugs = [
            b
            for b in self.store.list_open_bugs()
            if b.created_at < cutoff and (not project_id or b.project_id == project_id)
        ]
        return sorted(bugs, key=lambda b: b.created_at)
