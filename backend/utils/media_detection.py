"""Content sniffing and kind conversion rules."""
from __future__ import annotations

import logging
from pathlib import Path

from models.media_models import MediaKind
from utils import ffmpeg_wrapper
from utils.errors import MediaProbeError, UnsupportedMediaType
from utils.image_utils import identify_image

logger = logging.getLogger(__name__)

# Source kind -> kinds it may be rendered as
ALLOWED_CONVERSIONS: dict[MediaKind, frozenset[MediaKind]] = {
    MediaKind.VIDEO: frozenset({MediaKind.VIDEO, MediaKind.GIF, MediaKind.AUDIO}),
    MediaKind.GIF: frozenset({MediaKind.VIDEO, MediaKind.GIF}),
    MediaKind.IMAGE: frozenset({MediaKind.IMAGE, MediaKind.PROFILE_PICTURE}),
    MediaKind.AUDIO: frozenset({MediaKind.AUDIO}),
    MediaKind.PROFILE_PICTURE: frozenset({MediaKind.PROFILE_PICTURE}),
}

# Still image codecs ffprobe reports as video streams (cover art, single frames)
IMAGE_CODECS = frozenset({"mjpeg", "png", "bmp", "webp", "tiff"})

_VIDEO_MIME_BY_FORMAT = (
    ("webm", "video/webm"),
    ("matroska", "video/x-matroska"),
    ("mp4", "video/mp4"),
    ("mov", "video/quicktime"),
    ("avi", "video/x-msvideo"),
    ("asf", "application/vnd.ms-asf"),
    ("mpegts", "video/mp2t"),
    ("mpeg", "video/mpeg"),
    ("flv", "video/x-flv"),
)

_AUDIO_MIME_BY_FORMAT = (
    ("mp3", "audio/mpeg"),
    ("wav", "audio/wav"),
    ("ogg", "audio/ogg"),
    ("flac", "audio/flac"),
    ("aac", "audio/aac"),
    ("m4a", "audio/mp4"),
    ("mov", "audio/mp4"),
    ("webm", "audio/webm"),
    ("matroska", "audio/webm"),
)


def kind_from_mime(mime_type: str) -> MediaKind:
    if mime_type == "image/gif":
        return MediaKind.GIF
    if mime_type == "application/vnd.ms-asf":
        return MediaKind.VIDEO
    primary = mime_type.split("/", 1)[0]
    if primary == "image":
        return MediaKind.IMAGE
    if primary == "video":
        return MediaKind.VIDEO
    if primary == "audio":
        return MediaKind.AUDIO
    raise UnsupportedMediaType("File-Type is not supported")


def _mime_from_format(format_name: str | None, table, default: str) -> str:
    names = (format_name or "").split(",")
    for token, mime in table:
        if token in names:
            return mime
    return default


def detect_media(path: str | Path) -> tuple[MediaKind, str]:
    """Sniffs the content at `path` and returns (kind, mime type)."""
    identified = identify_image(path)
    if identified is not None:
        fmt, mime = identified
        return (MediaKind.GIF if fmt == "GIF" else MediaKind.IMAGE), mime

    try:
        probe = ffmpeg_wrapper.probe(path)
    except MediaProbeError as exc:
        logger.info("Unrecognised upload %s: %s", path, exc)
        raise UnsupportedMediaType("File-Type not recognized") from exc

    motion = [
        stream
        for stream in probe.streams
        if stream.codec_type == "video" and (stream.codec_name or "") not in IMAGE_CODECS
    ]
    if motion:
        return MediaKind.VIDEO, _mime_from_format(
            probe.format_name, _VIDEO_MIME_BY_FORMAT, "video/mp4"
        )
    if probe.has_audio:
        return MediaKind.AUDIO, _mime_from_format(
            probe.format_name, _AUDIO_MIME_BY_FORMAT, "audio/mpeg"
        )
    raise UnsupportedMediaType("File-Type is not supported")


def validate_conversion(source: MediaKind, target: MediaKind) -> None:
    if target not in ALLOWED_CONVERSIONS.get(source, frozenset()):
        raise UnsupportedMediaType(
            f"Invalid file type conversion: {source.value} cannot be converted to {target.value}"
        )
