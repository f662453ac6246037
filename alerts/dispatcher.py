"""Best-effort alert dispatch.

Evaluators compute their decision first and only then notify. Sending an
alert never raises: serialization and transport failures are logged and
dropped, so notification infrastructure cannot change a gate outcome.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol, runtime_checkable

from shared.config import AlertsConfig, get_config
from shared.models import Alert

from alerts.channels import AlertChannel, create_channel

logger = logging.getLogger(__name__)


@runtime_checkable
class Notifier(Protocol):
    """A non-failing notification capability."""

    def send(self, alert: Alert) -> None: ...


class AlertDispatcher:
    """Publishes alerts on a single fixed topic.

    Args:
        channel: Transport to publish on. Built from config if not provided.
        topic: Topic name. Defaults to the configured topic.
        config: Alerts configuration. Uses the cached config if not provided.
    """

    def __init__(
        self,
        channel: AlertChannel | None = None,
        topic: str | None = None,
        config: AlertsConfig | None = None,
    ) -> None:
        if config is None:
            config = get_config().alerts
        self.config = config
        self.channel = channel if channel is not None else create_channel(config)
        self.topic = topic or config.topic
        self.attempted = 0
        self.failed = 0
        self._counter_lock = threading.Lock()

    def send(self, alert: Alert) -> None:
        """Serialize and publish an alert. Failures are logged, never raised."""
        with self._counter_lock:
            self.attempted += 1
        try:
            payload = alert.model_dump_json()
            self.channel.publish(self.topic, payload)
        except Exception:
            with self._counter_lock:
                self.failed += 1
            logger.error(
                "Failed to dispatch %s alert for project %s",
                alert.type.value,
                alert.project_id,
                exc_info=True,
            )
            return

        logger.info(
            "Dispatched alert: project=%s type=%s level=%s",
            alert.project_id,
            alert.type.value,
            alert.level.value,
        )
