"""Outbound channels for serialized alerts.

A channel publishes an already-serialized payload on a named topic. The
JSONL channel is the default; the Redis channel publishes with PUBLISH so
any notification pipeline subscribed to the topic receives the alert.
"""

from __future__ import annotations

import fcntl
from pathlib import Path
from typing import Protocol, runtime_checkable

import redis

from shared.config import AlertsConfig


@runtime_checkable
class AlertChannel(Protocol):
    """Protocol for alert transports. May raise on failure."""

    def publish(self, topic: str, payload: str) -> None: ...


class JSONLChannel:
    """Appends each payload as one line of {base_path}/{topic}.jsonl."""

    def __init__(self, base_path: str | Path) -> None:
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def file_for(self, topic: str) -> Path:
        return self.base_path / f"{topic}.jsonl"

    def publish(self, topic: str, payload: str) -> None:
        with open(self.file_for(topic), "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.write(payload + "\n")
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)


class RedisChannel:
    """Publishes payloads over Redis pub/sub."""

    def __init__(self, url: str = "redis://localhost:6379/0", client: redis.Redis | None = None) -> None:
        self.url = url
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(self.url)
        return self._client

    def publish(self, topic: str, payload: str) -> None:
        self.client.publish(topic, payload)


class MemoryChannel:
    """Keeps published payloads in a list. Used by tests and dry runs."""

    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []

    def publish(self, topic: str, payload: str) -> None:
        self.published.append((topic, payload))


def create_channel(config: AlertsConfig | None = None) -> AlertChannel:
    """Create the configured alert channel."""
    if config is None:
        config = AlertsConfig()

    if config.channel == "jsonl":
        return JSONLChannel(config.path)
    if config.channel == "redis":
        return RedisChannel(config.redis_url)
    if config.channel == "memory":
        return MemoryChannel()

    raise ValueError(
        f"Unknown alert channel: {config.channel!r}. Supported: 'jsonl', 'redis', 'memory'"
    )
