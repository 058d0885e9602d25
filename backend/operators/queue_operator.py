from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session as DBSession

from database.models import File
from models.media_models import (
    MediaKind,
    ModificationAction,
    ProcessingResult,
    ProcessingStatus,
    VariantKind,
)
from operators import file_operator
from operators.media_processor import MediaProcessor, ProgressReporter, processing_stage
from utils import media_config
from utils.errors import FileProcessingError
from utils.media_detection import detect_media, validate_conversion
from utils.storage_paths import StoragePaths, extension_for_kind, mime_type_for_extension

logger = logging.getLogger(__name__)

ProcessorFactory = Callable[[ProgressReporter], MediaProcessor]


def _default_session_factory() -> DBSession:
    from database.base import SessionLocal

    return SessionLocal()


def _default_processor_factory(reporter: ProgressReporter) -> MediaProcessor:
    return MediaProcessor(reporter=reporter)


class MediaQueue:
    """Single-flight processing queue over the file catalog.

    `check_queue` claims the oldest QUEUED file, runs its pipeline in a
    fresh scratch directory, relocates the outputs under
    `content/{fileId}/` and records the variants. The slot lock is released
    before `trigger` is called so the next check can start right away.
    """

    def __init__(
        self,
        session_factory: Callable[[], DBSession] = _default_session_factory,
        storage: StoragePaths | None = None,
        processor_factory: ProcessorFactory = _default_processor_factory,
        notifier=None,
        trigger: Callable[[], Any] | None = None,
    ):
        self.session_factory = session_factory
        self.storage = storage or StoragePaths()
        self.processor_factory = processor_factory
        self.notifier = notifier
        self.trigger = trigger
        self._slot = threading.Lock()

    def is_busy(self) -> bool:
        return self._slot.locked()

    # ------------------------------------------------------------------ entry

    def check_queue(self) -> UUID | None:
        """Processes at most one file. Returns its id, or None when idle/busy."""
        if not self._slot.acquire(blocking=False):
            return None

        file_id = None
        try:
            db = self.session_factory()
            try:
                file_id = file_operator.claim_next_file(db)
                if file_id is not None:
                    self._process_file(db, file_id)
            finally:
                db.close()
        except Exception:
            logger.exception("Error in queue processing")
        finally:
            self._slot.release()

        if file_id is not None:
            self._reschedule()
        return file_id

    def drain(self, limit: int | None = None) -> list[UUID]:
        """Runs check_queue until nothing is left (used without a worker)."""
        processed: list[UUID] = []
        while limit is None or len(processed) < limit:
            file_id = self.check_queue()
            if file_id is None:
                break
            processed.append(file_id)
        return processed

    def recover_after_restart(self) -> list[UUID]:
        """Fails every PROCESSING row left behind by a previous process."""
        db = self.session_factory()
        try:
            swept = file_operator.mark_processing_failed(db, notifier=self.notifier)
        finally:
            db.close()
        for file_id in swept:
            self.storage.remove_file_directory(file_id)
            self.storage.remove_queue_file(file_id)
        if swept:
            logger.warning("Recovered %d abandoned file(s) after restart", len(swept))
        return swept

    def run_housekeeping(self) -> dict[str, list[str]]:
        db = self.session_factory()
        try:
            stale = file_operator.mark_processing_failed(
                db,
                older_than_minutes=media_config.STALE_PROCESSING_MINUTES,
                notifier=self.notifier,
            )
            expired = file_operator.cleanup_expired_files(db, self.storage)
        finally:
            db.close()
        for file_id in stale:
            self.storage.remove_file_directory(file_id)
            self.storage.remove_queue_file(file_id)
        return {
            "stale": [str(file_id) for file_id in stale],
            "expired": [str(file_id) for file_id in expired],
        }

    def _reschedule(self) -> None:
        if self.trigger is None:
            return
        try:
            self.trigger()
        except Exception as exc:
            logger.warning("Failed to reschedule queue check: %s", exc)

    # ------------------------------------------------------------- processing

    def _process_file(self, db: DBSession, file_id: UUID) -> None:
        file = file_operator.require_file(db, file_id)
        file_operator.notify_file_changed(self.notifier, file)
        source_file_id = (file.processing_meta or {}).get("source_file")
        succeeded = False

        try:
            with tempfile.TemporaryDirectory(prefix=f"media-{file_id}-") as work_dir:
                result, kind, mime_type = self._run_pipeline(db, file, Path(work_dir))
                succeeded = self._store_results(db, file_id, result, kind, mime_type)
        except Exception as exc:
            self._mark_failed(db, file_id, exc)
        finally:
            self.storage.remove_queue_file(file_id)

        if succeeded and source_file_id:
            try:
                file_operator.delete_files(db, [source_file_id], self.storage)
                logger.info("Replaced source file %s with %s", source_file_id, file_id)
            except Exception:
                db.rollback()
                logger.exception("Failed to clean up source file %s", source_file_id)

    def _run_pipeline(
        self, db: DBSession, file: File, work_dir: Path
    ) -> tuple[ProcessingResult, MediaKind, str]:
        intake = self.storage.queue_path(file.id)
        if not intake.exists():
            raise FileProcessingError("intake", f"Queued source for {file.id} is missing")

        with processing_stage("media detection"):
            source_kind, mime_type = detect_media(intake)
        target_kind = MediaKind(file.type)
        validate_conversion(source_kind, target_kind)
        file_operator.update_file_processing(
            db,
            file.id,
            original_type=source_kind,
            original_mime_type=mime_type,
        )

        source = work_dir / "original"
        shutil.copyfile(intake, source)

        reporter = ProgressReporter()
        reporter.subscribe(
            lambda percent: file_operator.update_file_processing(
                db, file.id, progress=percent, notifier=self.notifier
            )
        )
        processor = self.processor_factory(reporter)
        modifications = ModificationAction.list_from_stored(file.modifications)
        result = processor.process(target_kind, source, work_dir, modifications)
        return result, target_kind, mime_type

    def _variant_rows(
        self, result: ProcessingResult, kind: MediaKind, mime_type: str
    ) -> list[tuple[dict[str, Any], Path]]:
        if kind == MediaKind.AUDIO:
            media_meta: dict[str, Any] = {
                "waveform": result.waveform,
                "waveform_thumbnail": result.waveform_thumbnail,
            }
        else:
            media_meta = {"relative_height": result.relative_height}
        visual_meta = {"relative_height": result.relative_height}

        files = result.created_files
        extension = extension_for_kind(kind)
        rows = [
            (
                {
                    "variant": VariantKind.ORIGINAL,
                    "extension": extension,
                    "mime_type": mime_type,
                    "meta": media_meta,
                },
                Path(files.original),
            )
        ]
        for ext, path in files.compressed.items():
            variant = VariantKind.COMPRESSED_GIF if ext == "gif" else VariantKind.COMPRESSED
            rows.append(
                (
                    {
                        "variant": variant,
                        "extension": ext,
                        "mime_type": mime_type_for_extension(ext),
                        "meta": media_meta,
                    },
                    Path(path),
                )
            )
        for variant, entries in (
            (VariantKind.THUMBNAIL, files.thumbnail),
            (VariantKind.THUMBNAIL_POSTER, files.poster_thumbnail or {}),
        ):
            for ext, path in entries.items():
                rows.append(
                    (
                        {
                            "variant": variant,
                            "extension": ext,
                            "mime_type": mime_type_for_extension(ext),
                            "meta": visual_meta,
                        },
                        Path(path),
                    )
                )
        for variant, path in files.profile.items():
            ext = Path(path).suffix.lstrip(".") or "jpeg"
            rows.append(
                (
                    {
                        "variant": variant,
                        "extension": ext,
                        "mime_type": mime_type_for_extension(ext),
                        "meta": visual_meta,
                    },
                    Path(path),
                )
            )
        return rows

    def _store_results(
        self,
        db: DBSession,
        file_id: UUID,
        result: ProcessingResult,
        kind: MediaKind,
        mime_type: str,
    ) -> bool:
        file = file_operator.require_file(db, file_id)
        db.refresh(file)
        if file.processing_status != ProcessingStatus.PROCESSING.value:
            logger.warning(
                "File %s is %s, discarding finished outputs",
                file_id,
                file.processing_status,
            )
            return False

        rows = self._variant_rows(result, kind, mime_type)
        try:
            with processing_stage("storage relocation"):
                self.storage.file_directory(file_id).mkdir(parents=True, exist_ok=True)
                final_paths = []
                for row, scratch_path in rows:
                    target = self.storage.variant_path(file_id, row["variant"], row["extension"])
                    shutil.move(str(scratch_path), str(target))
                    final_paths.append(target)

            with processing_stage("catalog update"):
                file_operator.create_file_variants(
                    db, file_id, [row for row, _ in rows], commit=False
                )
                for (row, _), target in zip(rows, final_paths):
                    file_operator.update_variant_size(
                        db, file_id, row["variant"], target.stat().st_size, commit=False
                    )
                file_operator.update_file_processing(
                    db,
                    file_id,
                    status=ProcessingStatus.DONE,
                    progress=100,
                    notes=None,
                    notifier=self.notifier,
                )
        except Exception:
            db.rollback()
            self.storage.remove_file_directory(file_id)
            raise

        logger.info("File %s processed with %d variant(s)", file_id, len(rows))
        return True

    def _mark_failed(self, db: DBSession, file_id: UUID, exc: Exception) -> None:
        db.rollback()
        notes = str(exc) or type(exc).__name__
        logger.error("Error processing file %s: %s", file_id, notes, exc_info=exc)
        try:
            file_operator.delete_file_variants(db, file_id, commit=False)
            file_operator.update_file_processing(
                db,
                file_id,
                status=ProcessingStatus.FAILED,
                notes=notes,
                notifier=self.notifier,
            )
        finally:
            self.storage.remove_file_directory(file_id)
