"""Bug fixing efficiency statistics.

Pure aggregation over bug records; no store access. Times are recorded on
bugs in minutes and reported in hours. Averages only consider closed bugs
that carry the corresponding timing.
"""

from __future__ import annotations

import statistics
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from shared.config import BugSlaConfig, BugTimeouts
from shared.models import (
    BugRecord,
    BugStatus,
    DeveloperStats,
    EfficiencyStats,
    GroupStats,
    as_utc,
    utcnow,
)


def _hours(minutes: Iterable[int]) -> list[float]:
    return [m / 60.0 for m in minutes]


def resolution_hours(bugs: Iterable[BugRecord]) -> list[float]:
    return _hours(
        b.resolution_time_minutes
        for b in bugs
        if b.status == BugStatus.CLOSED and b.resolution_time_minutes is not None
    )


def response_hours(bugs: Iterable[BugRecord]) -> list[float]:
    return _hours(
        b.response_time_minutes
        for b in bugs
        if b.status == BugStatus.CLOSED and b.response_time_minutes is not None
    )


def _mean(values: list[float]) -> float:
    return statistics.fmean(values) if values else 0.0


def is_timed_out(bug: BugRecord, timeouts: BugTimeouts, now: datetime) -> bool:
    """True if an open bug has been open longer than its severity's SLA."""
    if not bug.is_open:
        return False
    return as_utc(now) - bug.created_at > timedelta(hours=timeouts.for_severity(bug.severity))


def group_stats(
    key: str, bugs: list[BugRecord], timeouts: BugTimeouts, now: datetime
) -> GroupStats:
    closed = sum(1 for b in bugs if b.status == BugStatus.CLOSED)
    return GroupStats(
        key=key,
        count=len(bugs),
        closed_count=closed,
        resolution_rate=closed / len(bugs) * 100 if bugs else 0.0,
        average_resolution_time_hours=_mean(resolution_hours(bugs)),
        average_response_time_hours=_mean(response_hours(bugs)),
        timeout_count=sum(1 for b in bugs if is_timed_out(b, timeouts, now)),
    )


def _group_by(
    bugs: Iterable[BugRecord], key: Callable[[BugRecord], str]
) -> dict[str, list[BugRecord]]:
    groups: dict[str, list[BugRecord]] = {}
    for bug in bugs:
        k = key(bug)
        if k:
            groups.setdefault(k, []).append(bug)
    return groups


def developer_score(closed_count: int, average_resolution_hours: float | None) -> float:
    """Efficiency score: grows with throughput and with resolution speed.

    Ten points per closed bug, plus a speed bonus of
    100 / (1 + average resolution hours) once anything is closed.
    """
    score = closed_count * 10.0
    if closed_count and average_resolution_hours is not None:
        score += 100.0 / (1.0 + max(0.0, average_resolution_hours))
    return score


def developer_stats(bugs: list[BugRecord]) -> list[DeveloperStats]:
    """Per-assignee stats, highest efficiency score first."""
    result: list[DeveloperStats] = []
    for developer_id, dev_bugs in _group_by(bugs, lambda b: b.assignee_id).items():
        closed = sum(1 for b in dev_bugs if b.status == BugStatus.CLOSED)
        res_hours = resolution_hours(dev_bugs)
        avg_res = _mean(res_hours)
        result.append(
            DeveloperStats(
                developer_id=developer_id,
                developer_name=dev_bugs[0].assignee_name,
                count=len(dev_bugs),
                closed_count=closed,
                resolution_rate=closed / len(dev_bugs) * 100,
                average_resolution_time_hours=avg_res,
                average_response_time_hours=_mean(response_hours(dev_bugs)),
                efficiency_score=developer_score(closed, avg_res if res_hours else None),
            )
        )
    result.sort(key=lambda d: d.efficiency_score, reverse=True)
    return result


def efficiency_issues(stats: EfficiencyStats, config: BugSlaConfig) -> list[str]:
    """Advisory findings when aggregate figures exceed the soft limits."""
    issues: list[str] = []
    if stats.total_bugs == 0:
        return issues

    if stats.average_response_time_hours > config.max_average_response_hours:
        issues.append(
            f"Average response time too long: {stats.average_response_time_hours:.2f}h "
            f"(limit {config.max_average_response_hours:.2f}h)"
        )
    if stats.average_resolution_time_hours > config.max_average_resolution_hours:
        issues.append(
            f"Average resolution time too long: {stats.average_resolution_time_hours:.2f}h "
            f"(limit {config.max_average_resolution_hours:.2f}h)"
        )
    if stats.resolution_rate < config.min_resolution_rate:
        issues.append(
            f"Resolution rate too low: {stats.resolution_rate:.2f}% "
            f"(minimum {config.min_resolution_rate:.2f}%)"
        )
    for group in stats.severity_stats:
        if group.timeout_count:
            issues.append(f"{group.timeout_count} {group.key} bug(s) exceeded their SLA")
    return issues


def summarize(
    bugs: list[BugRecord],
    config: BugSlaConfig,
    start: datetime,
    end: datetime,
    project_id: str | None = None,
    assignee_id: str | None = None,
    now: datetime | None = None,
) -> EfficiencyStats:
    """Build efficiency statistics for an already selected set of bugs."""
    now = as_utc(now) if now is not None else utcnow()
    timeouts = config.timeout_hours
    stats = EfficiencyStats(project_id=project_id, assignee_id=assignee_id, start=start, end=end)
    if not bugs:
        return stats

    stats.total_bugs = len(bugs)
    stats.closed_bugs = sum(1 for b in bugs if b.status == BugStatus.CLOSED)
    stats.open_bugs = stats.total_bugs - stats.closed_bugs
    stats.resolution_rate = stats.closed_bugs / stats.total_bugs * 100

    res = resolution_hours(bugs)
    if res:
        stats.average_resolution_time_hours = _mean(res)
        stats.min_resolution_time_hours = min(res)
        stats.max_resolution_time_hours = max(res)
        stats.median_resolution_time_hours = statistics.median(res)

    resp = response_hours(bugs)
    if resp:
        stats.average_response_time_hours = _mean(resp)
        stats.min_response_time_hours = min(resp)
        stats.max_response_time_hours = max(resp)
        stats.median_response_time_hours = statistics.median(resp)

    by_severity = _group_by(bugs, lambda b: b.severity.value if b.severity else "")
    stats.severity_stats = sorted(
        (group_stats(k, v, timeouts, now) for k, v in by_severity.items()),
        key=lambda g: g.average_resolution_time_hours,
    )
    by_priority = _group_by(bugs, lambda b: b.priority)
    stats.priority_stats = sorted(
        (group_stats(k, v, timeouts, now) for k, v in by_priority.items()),
        key=lambda g: g.key,
    )

    if not assignee_id:
        stats.developer_stats = developer_stats(bugs)

    stats.efficiency_issues = efficiency_issues(stats, config)
    return stats
