import json
from uuid import uuid4

from models.media_models import FileEventKind, FileSnapshot, MediaKind, ProcessingStatus
from redis_client.publisher import (
    BatchingFileEventPublisher,
    RedisFileEventPublisher,
    build_payload,
)


class _Inner:
    def __init__(self):
        self.sent = []

    def publish(self, file_id, kind, snapshot):
        self.sent.append((file_id, snapshot.processing_status, snapshot.processing_progress))


class _FakeRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []

    def publish(self, channel, message):
        if self.fail:
            raise ConnectionError("redis down")
        self.messages.append((channel, message))


def _snapshot(file_id, status=ProcessingStatus.PROCESSING, progress=None):
    return FileSnapshot(
        id=file_id,
        type=MediaKind.VIDEO,
        processing_status=status,
        processing_progress=progress,
    )


def test_build_payload_shape() -> None:
    file_id = uuid4()
    payload = json.loads(build_payload(file_id, FileEventKind.CHANGED, _snapshot(file_id, progress=12)))

    assert payload["id"] == str(file_id)
    assert payload["kind"] == "CHANGED"
    assert payload["file"]["processing_status"] == "PROCESSING"
    assert payload["file"]["processing_progress"] == 12


def test_redis_publisher_sends_to_channel() -> None:
    connection = _FakeRedis()
    file_id = uuid4()

    RedisFileEventPublisher(connection, channel="files").publish(
        file_id, FileEventKind.CHANGED, _snapshot(file_id)
    )

    ((channel, message),) = connection.messages
    assert channel == "files"
    assert json.loads(message)["id"] == str(file_id)


def test_redis_publisher_swallows_errors() -> None:
    file_id = uuid4()
    RedisFileEventPublisher(_FakeRedis(fail=True)).publish(
        file_id, FileEventKind.CHANGED, _snapshot(file_id)
    )


def test_batching_keeps_latest_progress_per_file() -> None:
    inner = _Inner()
    publisher = BatchingFileEventPublisher(inner, delay_seconds=60)
    first, second = uuid4(), uuid4()

    for progress in (10, 20, 30):
        publisher.publish(first, FileEventKind.CHANGED, _snapshot(first, progress=progress))
    publisher.publish(second, FileEventKind.CHANGED, _snapshot(second, progress=5))

    assert inner.sent == []
    assert publisher.pending_count == 2

    publisher.close()

    assert sorted(inner.sent, key=lambda item: item[2]) == [
        (second, ProcessingStatus.PROCESSING, 5),
        (first, ProcessingStatus.PROCESSING, 30),
    ]


def test_terminal_event_is_sent_immediately_and_drops_pending() -> None:
    inner = _Inner()
    publisher = BatchingFileEventPublisher(inner, delay_seconds=60)
    file_id = uuid4()

    publisher.publish(file_id, FileEventKind.CHANGED, _snapshot(file_id, progress=90))
    publisher.publish(file_id, FileEventKind.CHANGED, _snapshot(file_id, ProcessingStatus.DONE, 100))
    publisher.close()

    assert inner.sent == [(file_id, ProcessingStatus.DONE, 100)]
