"""Extraction and validation of crop / trim modifications.

Everything here is pure: no filesystem or subprocess access.
"""
from __future__ import annotations

from models.media_models import CropRegion, ModificationAction, TrimSpec
from utils.errors import InvalidModification
from utils.media_config import MIN_CROP_DIMENSION

# Slack for float arithmetic on user supplied trim bounds
TRIM_EPSILON = 1e-3


def extract_crop(actions: list[ModificationAction] | None) -> CropRegion | None:
    crop = None
    for action in actions or []:
        if action.crop is not None:
            crop = action.crop
    return crop


def extract_trim(actions: list[ModificationAction] | None) -> TrimSpec:
    trim = None
    for action in actions or []:
        if action.trim is not None:
            trim = action.trim
    if trim is None:
        return TrimSpec(needs_trim=False)
    return TrimSpec(
        needs_trim=True,
        trim_start=trim.start_time,
        trim_duration=trim.end_time - trim.start_time,
    )


def validate_trim(trim: TrimSpec, source_duration: float) -> None:
    if not trim.needs_trim:
        return
    start = trim.trim_start or 0.0
    duration = trim.trim_duration if trim.trim_duration is not None else 0.0

    if start < 0:
        raise InvalidModification("Trim start time cannot be negative")
    if duration <= 0:
        raise InvalidModification("Trim duration must be greater than zero")

    end = start + duration
    if end > source_duration + TRIM_EPSILON:
        raise InvalidModification(
            f"Trim end time ({end:.2f}s) exceeds file duration ({source_duration:.2f}s)"
        )


def build_trim_input_options(trim: TrimSpec) -> list[str]:
    """Seek options that must precede `-i` so ffmpeg seeks before decoding."""
    if not trim.needs_trim or trim.trim_start is None:
        return []
    options = ["-ss", _format_seconds(trim.trim_start)]
    if trim.trim_duration is not None:
        options += ["-t", _format_seconds(trim.trim_duration)]
    return options


def validate_crop(crop: CropRegion, width: int, height: int) -> tuple[int, int]:
    result_width, result_height = crop.result_size(width, height)
    if result_width < MIN_CROP_DIMENSION or result_height < MIN_CROP_DIMENSION:
        raise InvalidModification(
            f"Resulting media dimensions after cropping ({result_width}x{result_height}) "
            f"must be at least {MIN_CROP_DIMENSION}x{MIN_CROP_DIMENSION} pixels"
        )
    return result_width, result_height


def build_crop_filter(crop: CropRegion, width: int, height: int) -> str:
    crop_width, crop_height = crop.result_size(width, height)
    return f"crop={crop_width}:{crop_height}:{crop.left}:{crop.top}"


def _format_seconds(value: float) -> str:
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    return text or "0"
