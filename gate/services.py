"""Wiring of the gate services from configuration.

All services share one store and one alert dispatcher.
"""

from __future__ import annotations

from dataclasses import dataclass

from shared.config import MergeGatesConfig, get_config
from shared.storage import GateStore, create_store

from alerts.dispatcher import AlertDispatcher, Notifier
from gate.coverage.quality_gate import CoverageQualityGate
from gate.review.evaluator import ReviewGateEvaluator
from sla.monitor import BugSlaMonitor


@dataclass
class GateServices:
    store: GateStore
    notifier: Notifier
    review: ReviewGateEvaluator
    coverage: CoverageQualityGate
    bug_sla: BugSlaMonitor


def build_services(
    config: MergeGatesConfig | None = None,
    store: GateStore | None = None,
    notifier: Notifier | None = None,
) -> GateServices:
    """Build every service from one configuration.

    Args:
        config: Full configuration. Uses the cached cascading config if not provided.
        store: Store to use instead of the configured one.
        notifier: Notifier to use instead of the configured dispatcher.
    """
    if config is None:
        config = get_config()
    if store is None:
        store = create_store(config.storage)
    if notifier is None:
        notifier = AlertDispatcher(config=config.alerts)

    return GateServices(
        store=store,
        notifier=notifier,
        review=ReviewGateEvaluator(store, notifier, config.review),
        coverage=CoverageQualityGate(store, notifier, config.coverage),
        bug_sla=BugSlaMonitor(store, notifier, config.bug_sla),
    )
