from __future__ import annotations

import logging
from enum import IntEnum

from models.media_models import CropRegion
from utils.modifications import build_crop_filter

logger = logging.getLogger(__name__)


class FilterCategory(IntEnum):
    CROP = 0
    SCALE = 1
    CUSTOM = 2
    OPTIMIZATION = 3


class FilterChainBuilder:
    """Composes a single ffmpeg video filter chain.

    Fragments are bucketed by category and emitted in category order
    (crop, scale, custom, codec optimization) regardless of the order the
    add_* methods were called in. Within a category insertion order is kept.
    """

    def __init__(self) -> None:
        self._fragments: dict[FilterCategory, list[str]] = {
            category: [] for category in FilterCategory
        }
        self._palette = False

    def add_crop(self, crop: CropRegion, width: int, height: int) -> FilterChainBuilder:
        self._fragments[FilterCategory.CROP].append(build_crop_filter(crop, width, height))
        return self

    def add_scale(self, size: str) -> FilterChainBuilder:
        """Accepts `?xH` (height bound, width keeps aspect) or `WxH`."""
        if size.startswith("?x"):
            self._fragments[FilterCategory.SCALE].append(f"scale=-2:{size[2:]}")
        elif "x" in size:
            self._fragments[FilterCategory.SCALE].append(f"scale={size}")
        else:
            logger.warning("Ignoring unrecognised scale size %r", size)
        return self

    def add_gif_optimization(self, width: int, fps: int = 25) -> FilterChainBuilder:
        self._fragments[FilterCategory.OPTIMIZATION].extend(
            [f"fps={fps}", f"scale={width}:-2", "split[a][b]"]
        )
        self._palette = True
        return self

    def add_custom_filter(self, expression: str) -> FilterChainBuilder:
        self._fragments[FilterCategory.CUSTOM].append(expression)
        return self

    def build(self) -> list[str]:
        ordered: list[str] = []
        for category in FilterCategory:
            ordered.extend(self._fragments[category])
        return ordered

    def build_filter_complex(self, input_label: str = "0:v", output_label: str = "v") -> str:
        """Returns one filter graph, or an empty string when nothing was added.

        With GIF optimization the graph ends in palettegen/paletteuse and
        feeds the default output, so `output_label` is not used.
        """
        fragments = self.build()
        if not fragments:
            return ""
        chain = ",".join(fragments)
        if self._palette:
            return f"[{input_label}]{chain};[a]palettegen[p];[b][p]paletteuse"
        return f"[{input_label}]{chain}[{output_label}]"
