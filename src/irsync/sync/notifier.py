"""Conflict notification channels.

The notifier is purely informational: it tells people and tools that a
conflict exists, but never takes part in resolving it. A channel that
fails is logged and skipped; the remaining channels still receive the
notification.

Channels:

- ``CallbackChannel`` -- in-process callables.
- ``WebhookChannel``  -- JSON POST to an external URL (via ``requests``).
- ``DiskChannel``     -- appends JSON lines for later inspection.
- ``LogChannel``      -- a warning in the application log.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from pathlib import Path
from typing import Callable, Protocol

import requests

from irsync.core.async_utils import run_sync
from irsync.sync.models import ConflictNotification, ConflictRecord
from irsync.sync.reporter import conflict_to_json, format_conflict_message

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class NotificationChannel(Protocol):
    """Protocol that all notification channels must satisfy.

    ``blocking`` channels do network or disk I/O and are run in a thread.
    """

    name: str
    blocking: bool

    def send(self, notification: ConflictNotification) -> None:
        ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class CallbackChannel:
    """Deliver notifications to in-process callables."""

    name = "callback"
    blocking = False

    def __init__(self) -> None:
        self._handlers: list[Callable[[ConflictNotification], None]] = []

    def subscribe(
        self, handler: Callable[[ConflictNotification], None]
    ) -> Callable[[], None]:
        """Add *handler*; returns a function that removes it."""
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    def send(self, notification: ConflictNotification) -> None:
        for handler in list(self._handlers):
            try:
                handler(notification)
            except Exception:
                logger.exception(
                    "Conflict callback %r failed for %s",
                    handler,
                    notification.conflict.id,
                )


class WebhookChannel:
    """POST each notification as JSON to *url*."""

    name = "webhook"
    blocking = True

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def send(self, notification: ConflictNotification) -> None:
        payload = {
            "event": "conflict",
            "message": notification.message,
            "timestamp": notification.timestamp,
            "conflict": conflict_to_json(notification.conflict),
        }
        response = self._session.post(
            self.url, json=payload, timeout=self.timeout
        )
        response.raise_for_status()


class DiskChannel:
    """Append notifications to ``<directory>/notifications.jsonl``."""

    name = "disk"
    blocking = True

    def __init__(self, directory: Path) -> None:
        self.path = Path(directory) / "notifications.jsonl"

    def send(self, notification: ConflictNotification) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(
            {
                "timestamp": notification.timestamp,
                "message": notification.message,
                "conflict": conflict_to_json(notification.conflict),
            },
            ensure_ascii=False,
        )
        with open(self.path, "a", encoding="utf-8") as fh:
            fh.write(line + "\n")


class LogChannel:
    """Log each notification as a warning."""

    name = "log"
    blocking = False

    def send(self, notification: ConflictNotification) -> None:
        logger.warning("%s", notification.message)


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------


class ConflictNotifier:
    """Fan a conflict out to every configured channel.

    Args:
        channels: Channels to deliver to, in order.
    """

    def __init__(self, channels: list[NotificationChannel] | None = None) -> None:
        self.channels: list[NotificationChannel] = list(channels or [])
        self._history: deque[ConflictNotification] = deque(maxlen=HISTORY_LIMIT)

    @property
    def history(self) -> list[ConflictNotification]:
        """Most recent notifications, oldest first."""
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    async def notify(self, record: ConflictRecord) -> ConflictNotification:
        """Deliver *record* to every channel.

        Returns:
            The notification that was sent.
        """
        notification = ConflictNotification(
            conflict=record, message=format_conflict_message(record)
        )
        self._history.append(notification)

        for channel in self.channels:
            try:
                if channel.blocking:
                    await run_sync(channel.send, notification)
                else:
                    channel.send(notification)
            except Exception as exc:
                logger.error(
                    "Conflict notification via %s failed for %s: %s",
                    channel.name,
                    record.id,
                    exc,
                )
        return notification
