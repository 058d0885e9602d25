"""Filesystem layout for intake files and finalized variants.

    <root>/queue/<fileId>                        raw upload waiting for the worker
    <root>/content/<fileId>/<VARIANT>.<ext>      finalized variant

Variant paths depend only on (file id, variant, extension).
"""
from __future__ import annotations

import logging
import shutil
from pathlib import Path
from uuid import UUID

from models.media_models import MediaKind, VariantKind
from utils import media_config

logger = logging.getLogger(__name__)

QUEUE_DIRECTORY = "queue"
CONTENT_DIRECTORY = "content"

_EXTENSION_MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
}

_KIND_EXTENSIONS = {
    MediaKind.IMAGE: "jpg",
    MediaKind.VIDEO: "mp4",
    MediaKind.GIF: "gif",
    MediaKind.AUDIO: "mp3",
    MediaKind.PROFILE_PICTURE: "jpg",
}


def mime_type_for_extension(extension: str) -> str:
    return _EXTENSION_MIME_TYPES.get(extension.lower(), "application/octet-stream")


def extension_for_kind(kind: MediaKind) -> str:
    return _KIND_EXTENSIONS.get(kind, "bin")


def relative_variant_path(file_id: UUID | str, variant: VariantKind | str, extension: str) -> str:
    name = variant.value if isinstance(variant, VariantKind) else variant
    return f"{CONTENT_DIRECTORY}/{file_id}/{name}.{extension}"


class StoragePaths:
    def __init__(self, root: str | Path | None = None):
        self.root = Path(root) if root is not None else media_config.MEDIA_STORAGE_DIR

    def ensure_directories(self) -> None:
        (self.root / QUEUE_DIRECTORY).mkdir(parents=True, exist_ok=True)
        (self.root / CONTENT_DIRECTORY).mkdir(parents=True, exist_ok=True)

    def queue_path(self, file_id: UUID | str) -> Path:
        return self.root / QUEUE_DIRECTORY / str(file_id)

    def file_directory(self, file_id: UUID | str) -> Path:
        return self.root / CONTENT_DIRECTORY / str(file_id)

    def variant_path(self, file_id: UUID | str, variant: VariantKind | str, extension: str) -> Path:
        return self.root / relative_variant_path(file_id, variant, extension)

    def content_file_ids(self) -> list[str]:
        content = self.root / CONTENT_DIRECTORY
        if not content.is_dir():
            return []
        return sorted(entry.name for entry in content.iterdir() if entry.is_dir())

    def remove_file_directory(self, file_id: UUID | str) -> None:
        directory = self.file_directory(file_id)
        if directory.exists():
            shutil.rmtree(directory, ignore_errors=True)
            logger.info("Removed content directory %s", directory)

    def remove_queue_file(self, file_id: UUID | str) -> None:
        path = self.queue_path(file_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        logger.debug("Removed intake file %s", path)
