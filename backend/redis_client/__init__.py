from __future__ import annotations

import logging
import os

from redis import Redis
from rq import Queue

logger = logging.getLogger(__name__)

REDIS_RQ_URL = os.getenv("REDIS_RQ_URL", "redis://localhost:6379/1")
REDIS_PUBSUB_URL = os.getenv("REDIS_PUBSUB_URL", "redis://localhost:6379/0")
MEDIA_QUEUE_NAME = os.getenv("MEDIA_QUEUE_NAME", "media")
MEDIA_JOB_TIMEOUT = int(os.getenv("MEDIA_JOB_TIMEOUT", "7800"))

redis_rq = Redis.from_url(REDIS_RQ_URL)
redis_pubsub = Redis.from_url(REDIS_PUBSUB_URL, decode_responses=True)

rq_queue = Queue(MEDIA_QUEUE_NAME, connection=redis_rq)


def init_redis() -> None:
    redis_pubsub.ping()
    redis_rq.ping()


def trigger_queue_check() -> str | None:
    """Queue-trigger hook: asks a worker to look for QUEUED files."""
    job = rq_queue.enqueue(
        "redis_client.jobs.check_queue_job",
        job_timeout=MEDIA_JOB_TIMEOUT,
    )
    logger.debug("Enqueued queue check job %s", job.id)
    return job.id
