"""Exception taxonomy shared by the media pipeline."""
from __future__ import annotations

from uuid import UUID


class MediaError(Exception):
    pass


class MediaProbeError(MediaError):
    """Source could not be read or ffprobe output could not be parsed."""


class InvalidModification(MediaError):
    """Crop or trim instruction is out of bounds for the source."""


class LoudnessAnalysisError(MediaError):
    """Loudnorm pass-1 measurements are missing or unparseable."""


class UnsupportedMediaType(MediaError):
    """Mime type or requested conversion is not supported."""


class FFmpegError(MediaError):
    def __init__(self, message: str, output_tail: list[str] | None = None):
        self.output_tail = output_tail or []
        super().__init__(message)


class FileProcessingError(MediaError):
    def __init__(self, stage: str, message: str):
        self.stage = stage
        self.message = message
        super().__init__(f"{stage} failed: {message}")


class FileNotFoundInCatalog(MediaError):
    def __init__(self, file_id: UUID | str):
        self.file_id = file_id
        super().__init__(f"File not found: {file_id}")


# Request level problems; reported verbatim and never wrapped with a stage label.
VALIDATION_ERRORS = (InvalidModification, UnsupportedMediaType)
