from __future__ import annotations

import logging
from typing import Any

from operators.queue_operator import MediaQueue
from redis_client import trigger_queue_check
from redis_client.publisher import get_file_event_publisher

logger = logging.getLogger(__name__)

_media_queue: MediaQueue | None = None


def get_media_queue() -> MediaQueue:
    global _media_queue
    if _media_queue is None:
        _media_queue = MediaQueue(
            notifier=get_file_event_publisher(),
            trigger=trigger_queue_check,
        )
    return _media_queue


def check_queue_job() -> str | None:
    file_id = get_media_queue().check_queue()
    get_file_event_publisher().flush()
    return str(file_id) if file_id else None


def housekeeping_job() -> dict[str, list[str]]:
    result = get_media_queue().run_housekeeping()
    logger.info(
        "Housekeeping: %d stale, %d expired",
        len(result["stale"]),
        len(result["expired"]),
    )
    return result


def reconcile_job(fix: bool = False) -> dict[str, Any]:
    from database.base import SessionLocal
    from operators.reconcile_operator import reconcile_file_variants

    queue = get_media_queue()
    db = SessionLocal()
    try:
        report = reconcile_file_variants(db, queue.storage, fix=fix)
    finally:
        db.close()
    return report.model_dump(mode="json")
