from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import update
from sqlalchemy.orm import Session as DBSession

from database.models import File, FileVariant
from models.media_models import (
    FileEventKind,
    FileSnapshot,
    MediaKind,
    ProcessingStatus,
    VariantKind,
)
from utils.errors import FileNotFoundInCatalog
from utils.storage_paths import StoragePaths

logger = logging.getLogger(__name__)

RESTART_FAILURE_NOTE = "Marked as failed and cleaned up after restart"

_UNSET: Any = object()


def now_ms() -> int:
    return int(time.time() * 1000)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_uuid(value: UUID | str) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def file_to_snapshot(file: File) -> FileSnapshot:
    return FileSnapshot(
        id=file.id,
        creator_id=file.creator_id,
        type=MediaKind(file.type),
        original_type=MediaKind(file.original_type) if file.original_type else None,
        processing_status=ProcessingStatus(file.processing_status),
        processing_progress=file.processing_progress,
        processing_notes=file.processing_notes,
        expire_by=file.expire_by,
        created_at=file.created_at,
        updated_at=file.updated_at,
    )


def notify_file_changed(notifier, file: File) -> None:
    """Publishes a CHANGED event; notifier failures never reach the caller."""
    if notifier is None:
        return
    try:
        notifier.publish(file.id, FileEventKind.CHANGED, file_to_snapshot(file))
    except Exception as exc:
        logger.warning("Failed to publish update for file %s: %s", file.id, exc)


# =============================================================================
# FILES
# =============================================================================


def create_queued_file(
    db: DBSession,
    *,
    kind: MediaKind,
    file_id: UUID | None = None,
    creator_id: str | None = None,
    original_type: MediaKind | None = None,
    original_mime_type: str | None = None,
    modifications: dict[str, Any] | None = None,
    processing_meta: dict[str, Any] | None = None,
    expire_by: int | None = None,
) -> File:
    file = File(
        id=file_id or uuid4(),
        creator_id=creator_id,
        type=kind.value,
        original_type=original_type.value if original_type else None,
        original_mime_type=original_mime_type,
        processing_status=ProcessingStatus.QUEUED.value,
        processing_progress=None,
        modifications=modifications or {},
        processing_meta=processing_meta or {},
        expire_by=expire_by,
    )
    db.add(file)
    db.commit()
    db.refresh(file)
    logger.info("Queued file %s as %s", file.id, kind.value)
    return file


def get_file(db: DBSession, file_id: UUID | str) -> File | None:
    return db.query(File).filter(File.id == _as_uuid(file_id)).first()


def require_file(db: DBSession, file_id: UUID | str) -> File:
    file = get_file(db, file_id)
    if file is None:
        raise FileNotFoundInCatalog(file_id)
    return file


def is_busy(db: DBSession) -> bool:
    return (
        db.query(File.id)
        .filter(File.processing_status == ProcessingStatus.PROCESSING.value)
        .first()
        is not None
    )


def claim_next_file(db: DBSession, batch_size: int = 5) -> UUID | None:
    """Atomically moves the oldest QUEUED file to PROCESSING.

    Candidates are read oldest first (row locked with SKIP LOCKED where the
    backend supports it), then claimed with a conditional UPDATE that only
    matches while the row is still QUEUED. A rowcount of 1 is the claim.
    """
    query = (
        db.query(File.id)
        .filter(File.processing_status == ProcessingStatus.QUEUED.value)
        .order_by(File.created_at.asc(), File.id.asc())
    )
    if db.get_bind().dialect.name == "postgresql":
        query = query.with_for_update(skip_locked=True)
    candidates = [row[0] for row in query.limit(batch_size).all()]

    for candidate in candidates:
        result = db.execute(
            update(File)
            .where(
                File.id == candidate,
                File.processing_status == ProcessingStatus.QUEUED.value,
            )
            .values(
                processing_status=ProcessingStatus.PROCESSING.value,
                processing_progress=0,
                processing_notes=None,
                updated_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.commit()
            logger.info("Claimed file %s", candidate)
            return candidate

    db.commit()
    return None


def update_file_processing(
    db: DBSession,
    file_id: UUID | str,
    *,
    status: ProcessingStatus | None = None,
    progress: int | None = _UNSET,
    notes: str | None = _UNSET,
    kind: MediaKind | None = None,
    original_type: MediaKind | None = None,
    original_mime_type: str | None = None,
    commit: bool = True,
    notifier=None,
) -> File:
    file = require_file(db, file_id)
    if status is not None:
        file.processing_status = status.value
    if progress is not _UNSET:
        file.processing_progress = progress
    if notes is not _UNSET:
        file.processing_notes = notes
    if kind is not None:
        file.type = kind.value
    if original_type is not None:
        file.original_type = original_type.value
    if original_mime_type is not None:
        file.original_mime_type = original_mime_type
    file.updated_at = _utcnow()

    if commit:
        db.commit()
        db.refresh(file)
        notify_file_changed(notifier, file)
    else:
        db.flush()
    return file


def mark_processing_failed(
    db: DBSession,
    older_than_minutes: int | None = None,
    notifier=None,
) -> list[UUID]:
    """Bulk moves PROCESSING rows to FAILED and drops their variant rows.

    Without an age threshold every PROCESSING row is swept (restart
    recovery). With one, only rows not updated within that many minutes.
    """
    query = db.query(File).filter(
        File.processing_status == ProcessingStatus.PROCESSING.value
    )
    if older_than_minutes is not None:
        cutoff = _utcnow() - timedelta(minutes=older_than_minutes)
        query = query.filter(File.updated_at < cutoff)
        note = (
            "Marked as failed after being stuck in processing for more than "
            f"{older_than_minutes} minutes"
        )
    else:
        note = RESTART_FAILURE_NOTE

    files = query.all()
    if not files:
        return []

    ids = [file.id for file in files]
    db.query(FileVariant).filter(FileVariant.file_id.in_(ids)).delete(
        synchronize_session=False
    )
    for file in files:
        file.processing_status = ProcessingStatus.FAILED.value
        file.processing_notes = note
        file.updated_at = _utcnow()
    db.commit()

    logger.warning("Marked %d processing file(s) as failed: %s", len(ids), note)
    for file in files:
        db.refresh(file)
        notify_file_changed(notifier, file)
    return ids


# =============================================================================
# VARIANTS
# =============================================================================


def list_variants(db: DBSession, file_id: UUID | str) -> list[FileVariant]:
    return (
        db.query(FileVariant)
        .filter(FileVariant.file_id == _as_uuid(file_id))
        .order_by(FileVariant.variant.asc())
        .all()
    )


def get_variant(
    db: DBSession, file_id: UUID | str, variant: VariantKind
) -> FileVariant | None:
    return (
        db.query(FileVariant)
        .filter(
            FileVariant.file_id == _as_uuid(file_id),
            FileVariant.variant == variant.value,
        )
        .first()
    )


def create_file_variants(
    db: DBSession,
    file_id: UUID | str,
    variants: list[dict[str, Any]],
    commit: bool = True,
) -> list[FileVariant]:
    """Upserts variant rows on (file, variant) with size 0.

    Each entry needs `variant`, `mime_type`, `extension` and optional `meta`.
    """
    file_uuid = _as_uuid(file_id)
    rows: list[FileVariant] = []
    for entry in variants:
        variant = VariantKind(entry["variant"])
        row = get_variant(db, file_uuid, variant)
        if row is None:
            row = FileVariant(file_id=file_uuid, variant=variant.value)
            db.add(row)
        row.mime_type = entry["mime_type"]
        row.extension = entry["extension"]
        row.meta = entry.get("meta") or {}
        row.size_bytes = 0
        row.updated_at = _utcnow()
        rows.append(row)

    if commit:
        db.commit()
    else:
        db.flush()
    return rows


def update_variant_size(
    db: DBSession,
    file_id: UUID | str,
    variant: VariantKind,
    size_bytes: int,
    commit: bool = True,
) -> None:
    row = get_variant(db, file_id, variant)
    if row is None:
        logger.warning("No %s variant for file %s to size", variant.value, file_id)
        return
    row.size_bytes = size_bytes
    row.updated_at = _utcnow()
    if commit:
        db.commit()
    else:
        db.flush()


def delete_file_variants(db: DBSession, file_id: UUID | str, commit: bool = True) -> int:
    deleted = (
        db.query(FileVariant)
        .filter(FileVariant.file_id == _as_uuid(file_id))
        .delete(synchronize_session=False)
    )
    if commit:
        db.commit()
    return deleted


# =============================================================================
# EXPIRY / DELETION
# =============================================================================


def find_expired_file_ids(db: DBSession, now: int | None = None) -> list[UUID]:
    now = now if now is not None else now_ms()
    rows = (
        db.query(File.id)
        .filter(File.expire_by.isnot(None), File.expire_by < now)
        .all()
    )
    return [row[0] for row in rows]


def remove_file_expiry(db: DBSession, file_ids: list[UUID | str]) -> int:
    """Clears expire_by, e.g. once the files are attached to a post."""
    if not file_ids:
        return 0
    ids = [_as_uuid(file_id) for file_id in file_ids]
    updated = (
        db.query(File)
        .filter(File.id.in_(ids))
        .update({File.expire_by: None}, synchronize_session=False)
    )
    db.commit()
    return updated


def delete_files(
    db: DBSession, file_ids: list[UUID | str], storage: StoragePaths
) -> int:
    """Deletes variant rows, then file rows, then all artifacts on disk."""
    if not file_ids:
        return 0
    ids = [_as_uuid(file_id) for file_id in file_ids]
    db.query(FileVariant).filter(FileVariant.file_id.in_(ids)).delete(
        synchronize_session=False
    )
    deleted = db.query(File).filter(File.id.in_(ids)).delete(synchronize_session=False)
    db.commit()

    for file_id in ids:
        storage.remove_file_directory(file_id)
        storage.remove_queue_file(file_id)
    logger.info("Deleted %d file(s)", deleted)
    return deleted


def cleanup_expired_files(
    db: DBSession, storage: StoragePaths, now: int | None = None
) -> list[UUID]:
    expired = find_expired_file_ids(db, now)
    if expired:
        # skip rows a worker currently owns
        busy = {
            row[0]
            for row in db.query(File.id)
            .filter(
                File.id.in_(expired),
                File.processing_status == ProcessingStatus.PROCESSING.value,
            )
            .all()
        }
        expired = [file_id for file_id in expired if file_id not in busy]
        delete_files(db, expired, storage)
    return expired
