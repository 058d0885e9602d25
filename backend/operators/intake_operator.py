from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, BinaryIO, Callable
from uuid import UUID, uuid4

from sqlalchemy.orm import Session as DBSession

from database.models import File
from models.media_models import (
    MediaKind,
    ModificationAction,
    ProcessingStatus,
    VariantKind,
)
from operators import file_operator
from utils import ffmpeg_wrapper, image_utils, media_config
from utils.errors import InvalidModification, MediaError, UnsupportedMediaType
from utils.media_detection import detect_media, validate_conversion
from utils.modifications import validate_crop
from utils.storage_paths import StoragePaths

logger = logging.getLogger(__name__)

CROPPABLE_KINDS = frozenset({MediaKind.VIDEO, MediaKind.GIF, MediaKind.IMAGE})
TRIMMABLE_KINDS = frozenset({MediaKind.VIDEO, MediaKind.GIF, MediaKind.AUDIO})


class IntakeError(MediaError):
    pass


def _default_trigger() -> None:
    from redis_client import trigger_queue_check

    trigger_queue_check()


def _fire_trigger(trigger: Callable[[], Any] | None) -> None:
    trigger = trigger or _default_trigger
    try:
        trigger()
    except Exception as exc:
        # the row stays QUEUED and is picked up by the next check
        logger.warning("Queue trigger failed: %s", exc)


def _write_intake(path: Path, data: bytes | BinaryIO) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(data, (bytes, bytearray)):
        path.write_bytes(data)
        return
    with path.open("wb") as handle:
        shutil.copyfileobj(data, handle)


def _source_dimensions(path: Path, kind: MediaKind) -> tuple[int, int]:
    if kind == MediaKind.IMAGE:
        return image_utils.image_dimensions(path)
    dimensions = ffmpeg_wrapper.probe(path).dimensions()
    if dimensions is None:
        raise InvalidModification("Could not determine media dimensions for cropping")
    return dimensions


def validate_modifications(
    path: Path, source_kind: MediaKind, target_kind: MediaKind, action: ModificationAction
) -> None:
    if action.crop is not None:
        if source_kind not in CROPPABLE_KINDS:
            raise InvalidModification(
                f"Invalid file type for cropping: {source_kind.value}. "
                "Only videos and images can be cropped."
            )
        width, height = _source_dimensions(path, source_kind)
        validate_crop(action.crop, width, height)
    if action.trim is not None and target_kind not in TRIMMABLE_KINDS:
        raise InvalidModification(f"Invalid file type for trimming: {target_kind.value}")


def queue_upload(
    db: DBSession,
    data: bytes | BinaryIO,
    *,
    creator_id: str | None = None,
    kind: MediaKind | None = None,
    allowed_kinds: set[MediaKind] | None = None,
    modifications: ModificationAction | None = None,
    provisional: bool = True,
    storage: StoragePaths | None = None,
    trigger: Callable[[], Any] | None = None,
) -> File:
    """Writes an upload to the intake path and creates its QUEUED row.

    The bytes are on disk before the row exists and before the queue
    trigger fires. Provisional uploads get an expiry until they are
    attached.
    """
    storage = storage or StoragePaths()
    file_id = uuid4()
    intake = storage.queue_path(file_id)
    _write_intake(intake, data)

    try:
        source_kind, mime_type = detect_media(intake)
        if allowed_kinds and source_kind not in allowed_kinds:
            raise UnsupportedMediaType(f"File-Type {source_kind.value} is not allowed")
        target_kind = kind or source_kind
        validate_conversion(source_kind, target_kind)
        if modifications is not None:
            validate_modifications(intake, source_kind, target_kind, modifications)

        expire_by = None
        if provisional:
            expire_by = file_operator.now_ms() + media_config.UPLOAD_EXPIRY_HOURS * 3600 * 1000

        file = file_operator.create_queued_file(
            db,
            file_id=file_id,
            kind=target_kind,
            creator_id=creator_id,
            original_type=source_kind,
            original_mime_type=mime_type,
            modifications=modifications.persistent() if modifications else None,
            expire_by=expire_by,
        )
    except Exception:
        db.rollback()
        storage.remove_queue_file(file_id)
        raise

    _fire_trigger(trigger)
    return file


def queue_profile_picture(
    db: DBSession,
    data: bytes | BinaryIO,
    *,
    creator_id: str | None = None,
    storage: StoragePaths | None = None,
    trigger: Callable[[], Any] | None = None,
) -> File:
    return queue_upload(
        db,
        data,
        creator_id=creator_id,
        kind=MediaKind.PROFILE_PICTURE,
        allowed_kinds={MediaKind.IMAGE},
        provisional=False,
        storage=storage,
        trigger=trigger,
    )


def queue_from_existing(
    db: DBSession,
    source_file_id: UUID | str,
    modifications: ModificationAction,
    *,
    storage: StoragePaths | None = None,
    trigger: Callable[[], Any] | None = None,
) -> File:
    """Re-derives a DONE file from its ORIGINAL into a new QUEUED file.

    The source is deleted once the new file reaches DONE.
    """
    storage = storage or StoragePaths()
    source = file_operator.require_file(db, source_file_id)
    if source.processing_status != ProcessingStatus.DONE.value:
        raise IntakeError(f"Source file {source.id} has not finished processing")

    original = file_operator.get_variant(db, source.id, VariantKind.ORIGINAL)
    if original is None:
        raise IntakeError("Original variant not found for source file")
    source_path = storage.variant_path(source.id, VariantKind.ORIGINAL, original.extension)
    if not source_path.exists():
        raise IntakeError("Source file does not exist on disk")

    if source.original_type:
        source_kind = MediaKind(source.original_type)
    else:
        source_kind = MediaKind(source.type)
    if source_kind == MediaKind.PROFILE_PICTURE:
        source_kind = MediaKind.IMAGE
    target_kind = modifications.file_type or MediaKind(source.type)
    validate_conversion(source_kind, target_kind)
    validate_modifications(source_path, source_kind, target_kind, modifications)

    file_id = uuid4()
    intake = storage.queue_path(file_id)
    intake.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source_path, intake)

    try:
        file = file_operator.create_queued_file(
            db,
            file_id=file_id,
            kind=target_kind,
            creator_id=source.creator_id,
            original_type=source_kind,
            original_mime_type=original.mime_type,
            modifications=modifications.persistent(),
            processing_meta={"source_file": str(source.id)},
            expire_by=source.expire_by,
        )
    except Exception:
        db.rollback()
        storage.remove_queue_file(file_id)
        raise

    logger.info("Queued %s from source %s as %s", file.id, source.id, target_kind.value)
    _fire_trigger(trigger)
    return file


def attach_files(db: DBSession, file_ids: list[UUID | str]) -> int:
    """Marks files as permanently used so the expiry sweep keeps them."""
    return file_operator.remove_file_expiry(db, file_ids)
