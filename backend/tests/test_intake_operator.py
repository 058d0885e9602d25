import io

import pytest

from database.models import File
from models.media_models import (
    CropRegion,
    MediaKind,
    ModificationAction,
    ProcessingStatus,
    TrimRange,
)
from operators import file_operator, intake_operator
from utils import media_detection
from utils.errors import InvalidModification, MediaProbeError, UnsupportedMediaType


def _no_trigger():
    return None


def test_queue_upload_writes_intake_before_row(db, storage, png_bytes) -> None:
    seen = []

    def _trigger():
        # bytes and row must both exist when the worker is poked
        file = db.query(File).one()
        seen.append(storage.queue_path(file.id).read_bytes() == png_bytes)

    file = intake_operator.queue_upload(
        db, io.BytesIO(png_bytes), creator_id="user-7", storage=storage, trigger=_trigger
    )

    assert seen == [True]
    assert file.processing_status == ProcessingStatus.QUEUED.value
    assert file.type == "IMAGE"
    assert file.original_mime_type == "image/png"
    assert file.creator_id == "user-7"


def test_queue_upload_sets_provisional_expiry(db, storage, png_bytes) -> None:
    before = file_operator.now_ms()
    file = intake_operator.queue_upload(db, png_bytes, storage=storage, trigger=_no_trigger)
    assert file.expire_by >= before + 2 * 3600 * 1000

    kept = intake_operator.queue_upload(
        db, png_bytes, provisional=False, storage=storage, trigger=_no_trigger
    )
    assert kept.expire_by is None


def test_queue_upload_stores_modifications(db, storage, png_bytes) -> None:
    action = ModificationAction(crop=CropRegion(left=20, top=10))
    file = intake_operator.queue_upload(
        db, png_bytes, modifications=action, storage=storage, trigger=_no_trigger
    )
    assert file.modifications == {"crop": {"left": 20, "top": 10, "right": 0, "bottom": 0}}


def test_queue_upload_rejects_disallowed_kind(db, storage, png_bytes) -> None:
    with pytest.raises(UnsupportedMediaType, match="File-Type IMAGE is not allowed"):
        intake_operator.queue_upload(
            db,
            png_bytes,
            allowed_kinds={MediaKind.VIDEO},
            storage=storage,
            trigger=_no_trigger,
        )

    assert db.query(File).count() == 0
    assert list((storage.root / "queue").iterdir()) == []


def test_queue_upload_rejects_unrecognised_bytes(db, storage, monkeypatch) -> None:
    def _probe(path):
        raise MediaProbeError("Invalid data found when processing input")

    monkeypatch.setattr(media_detection.ffmpeg_wrapper, "probe", _probe)

    with pytest.raises(UnsupportedMediaType):
        intake_operator.queue_upload(db, b"%PDF-1.7", storage=storage, trigger=_no_trigger)
    assert db.query(File).count() == 0


def test_queue_upload_rejects_impossible_conversion(db, storage, png_bytes) -> None:
    with pytest.raises(UnsupportedMediaType, match="cannot be converted"):
        intake_operator.queue_upload(
            db, png_bytes, kind=MediaKind.VIDEO, storage=storage, trigger=_no_trigger
        )


def test_queue_upload_validates_crop_against_source(db, storage, png_bytes) -> None:
    action = ModificationAction(crop=CropRegion(left=300, right=300))
    with pytest.raises(InvalidModification, match="at least 100x100"):
        intake_operator.queue_upload(
            db, png_bytes, modifications=action, storage=storage, trigger=_no_trigger
        )
    assert db.query(File).count() == 0


def test_queue_upload_rejects_trim_on_still_images(db, storage, png_bytes) -> None:
    action = ModificationAction(trim=TrimRange(start_time=0, end_time=1))
    with pytest.raises(InvalidModification, match="trimming"):
        intake_operator.queue_upload(
            db, png_bytes, modifications=action, storage=storage, trigger=_no_trigger
        )


def test_trigger_failure_keeps_the_queued_row(db, storage, png_bytes) -> None:
    def _broken():
        raise ConnectionError("redis unavailable")

    file = intake_operator.queue_upload(db, png_bytes, storage=storage, trigger=_broken)

    assert file_operator.get_file(db, file.id) is not None
    assert storage.queue_path(file.id).exists()


def test_queue_profile_picture(db, storage, png_bytes) -> None:
    file = intake_operator.queue_profile_picture(db, png_bytes, storage=storage, trigger=_no_trigger)

    assert file.type == MediaKind.PROFILE_PICTURE.value
    assert file.original_type == MediaKind.IMAGE.value
    assert file.expire_by is None


def test_queue_from_existing_requires_finished_source(db, storage, png_bytes) -> None:
    source = intake_operator.queue_upload(db, png_bytes, storage=storage, trigger=_no_trigger)

    with pytest.raises(intake_operator.IntakeError, match="has not finished"):
        intake_operator.queue_from_existing(
            db,
            source.id,
            ModificationAction(crop=CropRegion(left=10)),
            storage=storage,
            trigger=_no_trigger,
        )


def test_attach_files_clears_expiry(db, storage, png_bytes) -> None:
    file = intake_operator.queue_upload(db, png_bytes, storage=storage, trigger=_no_trigger)

    assert intake_operator.attach_files(db, [file.id]) == 1

    db.expire_all()
    assert file_operator.require_file(db, file.id).expire_by is None
