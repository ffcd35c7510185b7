"""Recorded watch events loaded from YAML.

A replay file lets the controller be driven without a cluster, e.g. to seed a
fresh AWX or to reproduce a sequence of events:

    events:
      - type: ADDED
        object:
          metadata: {name: vm1, namespace: prod, labels: {tier: web}}
          status: {ipAddress: 10.0.0.5}
      - type: DELETED
        object:
          metadata: {name: vm1, namespace: prod}

Event objects use the same shape as Kubernetes watch payloads and go through
the same decoder.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from .models import ChangeNotification
from .watcher import decode_event

logger = logging.getLogger(__name__)

MAX_REPLAY_FILE_SIZE_BYTES = 1024 * 1024  # 1MB


class ReplayLoadError(Exception):
    """Raised when a replay file cannot be loaded or fails validation."""

    pass


class ReplayEvent(BaseModel):
    """One recorded watch event."""

    model_config = {"extra": "forbid"}

    type: Literal["ADDED", "MODIFIED", "DELETED"]
    object: dict[str, Any] = Field(default_factory=dict)


class ReplayFile(BaseModel):
    """Top-level replay document."""

    model_config = {"extra": "forbid"}

    events: list[ReplayEvent] = Field(default_factory=list)


def load_replay(path: Path) -> list[ChangeNotification]:
    """Load and decode a replay file.

    Raises:
        ReplayLoadError: If the file is missing, too large, not YAML, or invalid.
    """
    if not path.exists():
        raise ReplayLoadError(f"Replay file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ReplayLoadError(f"Cannot stat replay file {path}: {e}") from e

    if file_size > MAX_REPLAY_FILE_SIZE_BYTES:
        raise ReplayLoadError(
            f"Replay file {path} exceeds maximum size of {MAX_REPLAY_FILE_SIZE_BYTES} bytes"
        )

    try:
        with path.open(encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ReplayLoadError(f"Invalid YAML in {path}: {e}") from e

    try:
        document = ReplayFile.model_validate(raw or {})
    except ValidationError as e:
        raise ReplayLoadError(f"Replay file {path} failed validation: {e}") from e

    notifications = []
    for index, event in enumerate(document.events):
        notification = decode_event(event.type, event.object)
        if notification is None:
            raise ReplayLoadError(f"Event {index} in {path} has no metadata.name/namespace")
        notifications.append(notification)

    logger.info("Replay file loaded", extra={"path": str(path), "events": len(notifications)})
    return notifications


class ReplayWatcher:
    """ResourceWatcher that plays back a fixed list of notifications.

    Each subscription replays the full list (filtered by namespace) and then
    ends, like a watch that closes after its initial snapshot.
    """

    def __init__(self, notifications: list[ChangeNotification]) -> None:
        self._notifications = list(notifications)

    @classmethod
    def from_file(cls, path: Path) -> ReplayWatcher:
        return cls(load_replay(path))

    def notifications(self, namespace: str | None = None) -> list[ChangeNotification]:
        if not namespace:
            return list(self._notifications)
        return [n for n in self._notifications if n.namespace == namespace]

    async def subscribe(self, namespace: str | None) -> AsyncGenerator[ChangeNotification, None]:
        for notification in self.notifications(namespace):
            yield notification
