"""
Pydantic models for media intake and processing.

This module defines schemas for:
- Media kinds, processing states and variant kinds
- User supplied modifications (crop, trim)
- ffprobe / ffmpeg derived measurements
- Pipeline results and catalog snapshots
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# ENUMS
# =============================================================================


class MediaKind(str, Enum):
    """Kind of uploaded media. Selects the processing pipeline."""

    VIDEO = "VIDEO"
    IMAGE = "IMAGE"
    GIF = "GIF"
    AUDIO = "AUDIO"
    PROFILE_PICTURE = "PROFILE_PICTURE"


class ProcessingStatus(str, Enum):
    """Life cycle of a file row."""

    QUEUED = "QUEUED"  # Intake written, waiting for the worker
    PROCESSING = "PROCESSING"  # Claimed by a worker
    DONE = "DONE"  # All variants written
    FAILED = "FAILED"  # Unrecoverable error, see processing_notes


class VariantKind(str, Enum):
    """Derived rendition of a file."""

    ORIGINAL = "ORIGINAL"
    THUMBNAIL = "THUMBNAIL"
    THUMBNAIL_POSTER = "THUMBNAIL_POSTER"
    COMPRESSED = "COMPRESSED"
    COMPRESSED_GIF = "COMPRESSED_GIF"
    PROFILE_256 = "PROFILE_256"
    PROFILE_64 = "PROFILE_64"


class FileEventKind(str, Enum):
    """Kind of notification published for a file."""

    CHANGED = "CHANGED"


class WaveformChannel(str, Enum):
    """Channel selection for waveform extraction."""

    MONO = "mono"  # Downmix both channels
    LEFT = "left"
    RIGHT = "right"


TERMINAL_STATUSES = frozenset({ProcessingStatus.DONE, ProcessingStatus.FAILED})


# =============================================================================
# MODIFICATIONS
# =============================================================================


class CropRegion(BaseModel):
    """Insets removed from each edge, in source pixels."""

    left: int = Field(default=0, ge=0, description="Pixels removed from the left edge")
    top: int = Field(default=0, ge=0, description="Pixels removed from the top edge")
    right: int = Field(default=0, ge=0, description="Pixels removed from the right edge")
    bottom: int = Field(
        default=0, ge=0, description="Pixels removed from the bottom edge"
    )

    def result_size(self, width: int, height: int) -> tuple[int, int]:
        return width - self.left - self.right, height - self.top - self.bottom


class TrimRange(BaseModel):
    """Kept time range of a timed medium, in seconds."""

    start_time: float = Field(description="Start of the kept range")
    end_time: float = Field(description="End of the kept range")


class ModificationAction(BaseModel):
    """One user supplied modification instruction."""

    crop: CropRegion | None = None
    trim: TrimRange | None = None
    file_type: MediaKind | None = Field(
        default=None, description="Requested target kind for conversions"
    )

    def persistent(self) -> dict[str, Any]:
        """Subset stored on the file row and replayed by the worker."""
        data: dict[str, Any] = {}
        if self.crop is not None:
            data["crop"] = self.crop.model_dump()
        if self.trim is not None:
            data["trim"] = self.trim.model_dump()
        return data

    @classmethod
    def list_from_stored(cls, stored: dict[str, Any] | None) -> list[ModificationAction]:
        if not stored:
            return []
        action = cls.model_validate(stored)
        if action.crop is None and action.trim is None:
            return []
        return [action]


class TrimSpec(BaseModel):
    """Normalized trim instruction."""

    needs_trim: bool = False
    trim_start: float | None = None
    trim_duration: float | None = None


# =============================================================================
# PROBE / MEASUREMENTS
# =============================================================================


class StreamInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    codec_type: str | None = None
    codec_name: str | None = None
    width: int | None = None
    height: int | None = None
    duration: float | None = None


class ProbeResult(BaseModel):
    """Parsed subset of `ffprobe -show_format -show_streams` output."""

    duration: float | None = None
    size: int | None = None
    bit_rate: int | None = None
    format_name: str | None = None
    streams: list[StreamInfo] = Field(default_factory=list)

    def video_stream(self) -> StreamInfo | None:
        for stream in self.streams:
            if stream.codec_type == "video" and stream.width and stream.height:
                return stream
        return None

    @property
    def has_audio(self) -> bool:
        return any(stream.codec_type == "audio" for stream in self.streams)

    @property
    def has_video(self) -> bool:
        return self.video_stream() is not None

    def dimensions(self) -> tuple[int, int] | None:
        stream = self.video_stream()
        if stream is None:
            return None
        return int(stream.width), int(stream.height)


class LoudnessMeasurements(BaseModel):
    """Pass-1 output of the loudnorm analysis filter."""

    input_i: float = Field(description="Integrated loudness (LUFS)")
    input_lra: float = Field(description="Loudness range (LU)")
    input_tp: float = Field(description="True peak (dBTP)")
    input_thresh: float = Field(description="Gating threshold")
    target_offset: float = Field(description="Offset gain")


class LoudnessOptions(BaseModel):
    """Targets for EBU R128 loudness normalization."""

    integrated_loudness: float = Field(default=-16.0, description="Target LUFS")
    true_peak: float = Field(default=-1.5, description="Target true peak (dBTP)")
    loudness_range: float = Field(default=11.0, description="Target LRA (LU)")
    linear: bool = True
    dual_mono: bool = True

    @classmethod
    def ebu_r128(cls) -> "LoudnessOptions":
        return cls()


class WaveformOptions(BaseModel):
    samples: int = Field(default=1000, gt=0, description="Number of output peaks")
    channel: WaveformChannel = WaveformChannel.MONO


class WaveformData(BaseModel):
    peaks: list[float]
    duration: float
    sample_rate: float = Field(description="Peaks per second of audio")


class FFmpegProgress(BaseModel):
    """One block of `-progress` key=value output."""

    frames: int | None = None
    fps: float | None = None
    bitrate: str | None = None
    total_size: int | None = None
    out_time_us: int | None = None
    out_time_ms: int | None = None
    out_time: str | None = None
    dup_frames: int | None = None
    drop_frames: int | None = None
    speed: str | None = None
    progress: str | None = None
    percent: float | None = None


# =============================================================================
# PIPELINE RESULTS
# =============================================================================


class CreatedFiles(BaseModel):
    """Scratch paths produced by a pipeline, keyed by output extension."""

    original: str
    compressed: dict[str, str] = Field(default_factory=dict)
    thumbnail: dict[str, str] = Field(default_factory=dict)
    poster_thumbnail: dict[str, str] | None = None
    profile: dict[VariantKind, str] = Field(default_factory=dict)


class ProcessingResult(BaseModel):
    relative_height: float = 0.0
    created_files: CreatedFiles
    waveform: list[float] | None = None
    waveform_thumbnail: list[float] | None = None


# =============================================================================
# CATALOG
# =============================================================================


class FileSnapshot(BaseModel):
    """Serialized view of a file row sent with notifications."""

    id: UUID
    creator_id: str | None = None
    type: MediaKind
    original_type: MediaKind | None = None
    processing_status: ProcessingStatus
    processing_progress: int | None = None
    processing_notes: str | None = None
    expire_by: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ReconciliationIssue(BaseModel):
    file_id: str
    variant: str | None = None
    issue: str
    action: str | None = None
    path: str | None = None


class ReconciliationReport(BaseModel):
    issues: list[ReconciliationIssue] = Field(default_factory=list)
    fixed: int = 0
    errors: list[str] = Field(default_factory=list)
