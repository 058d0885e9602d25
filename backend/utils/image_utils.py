"""Pillow based still image renditions."""
from __future__ import annotations

import logging
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from models.media_models import CropRegion, VariantKind
from utils import media_config
from utils.errors import InvalidModification, MediaProbeError

logger = logging.getLogger(__name__)


def identify_image(path: str | Path) -> tuple[str, str] | None:
    """Returns (format, mime) for a raster image Pillow can decode, else None."""
    try:
        with Image.open(path) as image:
            fmt = image.format
    except (UnidentifiedImageError, OSError):
        return None
    if not fmt:
        return None
    return fmt, Image.MIME.get(fmt, f"image/{fmt.lower()}")


def open_oriented(path: str | Path) -> Image.Image:
    """Opens an image with EXIF orientation applied and alpha dropped."""
    try:
        with Image.open(path) as source:
            image = ImageOps.exif_transpose(source)
            image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise MediaProbeError(f"Invalid image file: {exc}") from exc
    if image.mode != "RGB":
        image = image.convert("RGB")
    return image


def image_dimensions(path: str | Path) -> tuple[int, int]:
    image = open_oriented(path)
    width, height = image.size
    if not width or not height:
        raise MediaProbeError("Invalid image file")
    return width, height


def _save_jpeg(image: Image.Image, dest: str | Path, quality: int) -> Path:
    dest = Path(dest)
    image.save(dest, format="JPEG", quality=quality, progressive=True, optimize=True)
    return dest


def crop_image(src: str | Path, dest: str | Path, crop: CropRegion) -> Path:
    """Writes the cropped region losslessly (PNG) so later encodes stay single pass."""
    image = open_oriented(src)
    width, height = image.size
    right = width - crop.right
    bottom = height - crop.bottom
    if crop.left >= right or crop.top >= bottom:
        raise InvalidModification(
            f"Crop {crop.left},{crop.top},{crop.right},{crop.bottom} exceeds image size {width}x{height}"
        )
    cropped = image.crop((crop.left, crop.top, right, bottom))
    dest = Path(dest)
    cropped.save(dest, format="PNG")
    return dest


def compress_image(
    src: str | Path,
    dest: str | Path,
    max_size: int = media_config.IMAGE_MAX_SIZE,
    quality: int = media_config.IMAGE_JPEG_QUALITY,
) -> tuple[int, int]:
    """Bounded resize (fit inside, never enlarge) to progressive JPEG."""
    image = open_oriented(src)
    image.thumbnail((max_size, max_size), resample=Image.LANCZOS)
    _save_jpeg(image, dest, quality)
    return image.size


def create_thumbnail(
    src: str | Path,
    dest: str | Path,
    max_size: int = media_config.THUMBNAIL_MAX_SIZE,
    quality: int = media_config.THUMBNAIL_JPEG_QUALITY,
) -> Path:
    image = open_oriented(src)
    image.thumbnail((max_size, max_size), resample=Image.LANCZOS)
    return _save_jpeg(image, dest, quality)


def create_poster_thumbnail(
    src: str | Path,
    dest: str | Path,
    max_height: int = media_config.POSTER_MAX_HEIGHT,
    quality: int = media_config.POSTER_JPEG_QUALITY,
) -> Path:
    """Poster frame bounded by height only, matching the compressed video."""
    image = open_oriented(src)
    width, height = image.size
    if height > max_height:
        new_width = max(1, round(width * max_height / height))
        image = image.resize((new_width, max_height), resample=Image.LANCZOS)
    return _save_jpeg(image, dest, quality)


def create_profile_pictures(
    src: str | Path,
    out_dir: str | Path,
    sizes: dict[VariantKind, int] | None = None,
    quality: int = media_config.PROFILE_PICTURE_JPEG_QUALITY,
) -> dict[VariantKind, str]:
    """Square cover-fit crops, one JPEG per profile variant."""
    sizes = sizes or media_config.PROFILE_PICTURE_SIZES
    image = open_oriented(src)
    out_dir = Path(out_dir)
    created: dict[VariantKind, str] = {}
    for variant, size in sizes.items():
        fitted = ImageOps.fit(image, (size, size), method=Image.LANCZOS)
        dest = out_dir / f"profile-{size}.jpeg"
        _save_jpeg(fitted, dest, quality)
        created[variant] = str(dest)
        logger.debug("Created profile picture %s at %s", variant.value, dest)
    return created
