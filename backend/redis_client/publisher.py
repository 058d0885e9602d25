"""Notification hook: publishes file status/progress changes.

Subscribers receive JSON `{"id", "kind", "file"}` messages on a Redis
pub/sub channel. Publishing never raises into the caller.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from typing import Protocol
from uuid import UUID

from models.media_models import TERMINAL_STATUSES, FileEventKind, FileSnapshot

logger = logging.getLogger(__name__)

FILE_EVENTS_CHANNEL = os.getenv("FILE_EVENTS_CHANNEL", "file_processing_updates")
BATCH_DELAY_SECONDS = 0.1


class FileEventPublisher(Protocol):
    def publish(self, file_id: UUID, kind: FileEventKind, snapshot: FileSnapshot) -> None:
        ...


def build_payload(file_id: UUID, kind: FileEventKind, snapshot: FileSnapshot) -> str:
    return json.dumps(
        {
            "id": str(file_id),
            "kind": kind.value,
            "file": snapshot.model_dump(mode="json"),
        }
    )


class NullFileEventPublisher:
    def publish(self, file_id: UUID, kind: FileEventKind, snapshot: FileSnapshot) -> None:
        logger.debug("Dropping %s event for file %s", kind.value, file_id)


class RedisFileEventPublisher:
    def __init__(self, connection=None, channel: str = FILE_EVENTS_CHANNEL):
        if connection is None:
            from redis_client import redis_pubsub

            connection = redis_pubsub
        self.connection = connection
        self.channel = channel

    def publish(self, file_id: UUID, kind: FileEventKind, snapshot: FileSnapshot) -> None:
        try:
            self.connection.publish(self.channel, build_payload(file_id, kind, snapshot))
        except Exception as exc:
            logger.warning("Failed to publish %s for file %s: %s", kind.value, file_id, exc)


class BatchingFileEventPublisher:
    """Debounces progress events per file; terminal events go out immediately.

    Pending events are keyed by file id (latest wins) and flushed after
    `delay_seconds`. A DONE/FAILED snapshot discards any pending event for
    the same file, so subscribers never see PROCESSING after a terminal
    state.
    """

    def __init__(self, inner: FileEventPublisher, delay_seconds: float = BATCH_DELAY_SECONDS):
        self.inner = inner
        self.delay_seconds = delay_seconds
        self._pending: dict[UUID, tuple[FileEventKind, FileSnapshot]] = {}
        self._timer: threading.Timer | None = None
        self._lock = threading.RLock()

    def publish(self, file_id: UUID, kind: FileEventKind, snapshot: FileSnapshot) -> None:
        with self._lock:
            if snapshot.processing_status in TERMINAL_STATUSES:
                self._pending.pop(file_id, None)
                self._send(file_id, kind, snapshot)
                return
            self._pending[file_id] = (kind, snapshot)
            if self._timer is None:
                self._timer = threading.Timer(self.delay_seconds, self.flush)
                self._timer.daemon = True
                self._timer.start()

    def flush(self) -> None:
        with self._lock:
            self._timer = None
            pending, self._pending = self._pending, {}
            for file_id, (kind, snapshot) in pending.items():
                self._send(file_id, kind, snapshot)

    def close(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
        self.flush()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _send(self, file_id: UUID, kind: FileEventKind, snapshot: FileSnapshot) -> None:
        try:
            self.inner.publish(file_id, kind, snapshot)
        except Exception as exc:
            logger.warning("Failed to publish %s for file %s: %s", kind.value, file_id, exc)


_publisher: BatchingFileEventPublisher | None = None


def get_file_event_publisher() -> BatchingFileEventPublisher:
    global _publisher
    if _publisher is None:
        _publisher = BatchingFileEventPublisher(RedisFileEventPublisher())
    return _publisher
