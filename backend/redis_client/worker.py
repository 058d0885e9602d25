import os
import logging
import sys
from pathlib import Path

from rq import Queue, Worker
from rq.job import Job
from rq.worker import SimpleWorker, SpawnWorker

from redis_client import MEDIA_QUEUE_NAME, init_redis, redis_rq, trigger_queue_check


logger = logging.getLogger(__name__)


ROOT_DIR = Path(__file__).resolve().parents[2]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

PROCESSING_LOGGERS = (
    "operators.queue_operator",
    "operators.media_processor",
    "operators.file_operator",
    "utils.ffmpeg_wrapper",
    "redis_client.worker",
    "rq.worker",
)


def _resolve_log_path(raw: str) -> Path:
    path = Path(raw)
    if not path.is_absolute():
        path = ROOT_DIR / path
    return path


def _attach_file_handler(
    logger_names: tuple[str, ...],
    log_file_path: Path,
    level_name: str | None = None,
) -> None:
    """One shared FileHandler per path; loggers that already write there are skipped."""
    level_value = getattr(logging, (level_name or LOG_LEVEL).upper(), logging.INFO)
    log_file_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = None
    for name in logger_names:
        target_logger = logging.getLogger(name)
        target_logger.setLevel(level_value)
        if any(
            getattr(handler, "baseFilename", None) == str(log_file_path)
            for handler in target_logger.handlers
        ):
            continue
        if file_handler is None:
            file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
            file_handler.setLevel(level_value)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        target_logger.addHandler(file_handler)


def configure_logging() -> None:
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)

    processing_log = os.getenv(
        "MEDIA_PROCESSING_LOG_FILE", "backend/log/media_processing.log"
    ).strip()
    if not processing_log:
        return
    _attach_file_handler(
        PROCESSING_LOGGERS,
        _resolve_log_path(processing_log),
        level_name=os.getenv("MEDIA_PROCESSING_LOG_LEVEL", "INFO").strip(),
    )


class _JobFailureLogging:
    def handle_exception(self, job: Job, *exc_info) -> None:
        self.log.error("Media job failed: %s (%s)", job.id, job.func_name, exc_info=exc_info)
        super().handle_exception(job, *exc_info)


class LoggingWorker(_JobFailureLogging, Worker):
    pass


class LoggingSimpleWorker(_JobFailureLogging, SimpleWorker):
    pass


class LoggingSpawnWorker(_JobFailureLogging, SpawnWorker):
    pass


def _build_worker() -> Worker:
    # the queue slot lives in-process, so jobs run inside the worker process by default
    queues = [Queue(MEDIA_QUEUE_NAME, connection=redis_rq)]
    override = os.getenv("RQ_WORKER_CLASS", "simple").strip().lower()
    supports_wait4 = hasattr(os, "wait4")
    if override == "fork" and supports_wait4 and hasattr(os, "fork"):
        return LoggingWorker(queues, connection=redis_rq)
    if override == "spawn" and supports_wait4 and hasattr(os, "spawnv"):
        return LoggingSpawnWorker(queues, connection=redis_rq)
    return LoggingSimpleWorker(queues, connection=redis_rq)


def main():
    configure_logging()
    logger.info("media_worker_start python_executable=%s queue=%s", sys.executable, MEDIA_QUEUE_NAME)

    init_redis()

    from redis_client.jobs import get_media_queue

    # nothing is claimed before abandoned PROCESSING rows are failed
    swept = get_media_queue().recover_after_restart()
    logger.info("media_worker_recovered files=%d", len(swept))
    trigger_queue_check()

    worker = _build_worker()
    worker.work()


if __name__ == "__main__":
    main()
