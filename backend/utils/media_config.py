"""Processing limits, encoder options and environment driven settings."""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

from models.media_models import LoudnessOptions, VariantKind

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int | None = None) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


MEDIA_STORAGE_DIR = Path(os.getenv("MEDIA_STORAGE_DIR", "./storage"))

FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = os.getenv("FFPROBE_BIN", "ffprobe")
FFMPEG_TIMEOUT_SECONDS = _env_int("FFMPEG_TIMEOUT_SECONDS", 7200, minimum=60)

AUDIO_NORMALIZATION_ENABLED = _env_bool("AUDIO_NORMALIZATION_ENABLED", True)

STALE_PROCESSING_MINUTES = _env_int("STALE_PROCESSING_MINUTES", 30, minimum=1)
UPLOAD_EXPIRY_HOURS = _env_int("UPLOAD_EXPIRY_HOURS", 2, minimum=1)


# Image renditions
IMAGE_MAX_SIZE = 1080
IMAGE_JPEG_QUALITY = 91
THUMBNAIL_MAX_SIZE = 600
THUMBNAIL_JPEG_QUALITY = 50
POSTER_MAX_HEIGHT = 1080
POSTER_JPEG_QUALITY = 50

PROFILE_PICTURE_SIZES: dict[VariantKind, int] = {
    VariantKind.PROFILE_256: 256,
    VariantKind.PROFILE_64: 64,
}
PROFILE_PICTURE_JPEG_QUALITY = 91

# Video renditions
VIDEO_MAX_HEIGHT = 1080
GIF_MAX_WIDTH = 480
GIF_FPS = 25

# Audio waveform
WAVEFORM_SAMPLES = 80
WAVEFORM_SAMPLES_PER_SECOND = 8
WAVEFORM_THUMBNAIL_SAMPLES = 12
WAVEFORM_SAMPLE_RATE = 44100

# Cropped results smaller than this are rejected
MIN_CROP_DIMENSION = 100

MP4_VIDEO_OPTIONS = [
    "-pix_fmt", "yuv420p",
    "-vcodec", "libx264",
    "-preset", "slower",
    "-crf", "22",
    "-tune", "film",
    "-g", "60",
    "-movflags", "+faststart+negative_cts_offsets",
    "-max_muxing_queue_size", "1024",
]
MP4_RATE_CONTROL_OPTIONS = ["-b:v", "2500k", "-bufsize", "2000k", "-maxrate", "4500k"]
MP4_AUDIO_OPTIONS = ["-acodec", "aac", "-ac", "2", "-ar", "44100", "-b:a", "192k"]
MP3_AUDIO_OPTIONS = ["-acodec", "libmp3lame", "-ar", "44100", "-b:a", "192k"]

LOUDNESS_TARGETS = LoudnessOptions.ebu_r128()
