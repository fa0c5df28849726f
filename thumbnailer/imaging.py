"""
Thumbnail imaging: decode, resize, encode.

Uses Pillow.  Every step is CPU-bound and synchronous; the worker runs them
in a thread-pool executor.  Decode failures of any kind surface as
UnsupportedMedia so the caller can treat them as permanent.
"""
from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from thumbnailer.constants import (
    THUMBNAIL_CONTENT_TYPE,
    THUMBNAIL_FORMAT,
    DerivationStage,
)
from thumbnailer.exceptions import UnsupportedMedia


JPEG_QUALITY = 85


@dataclass(frozen=True, slots=True)
class Thumbnail:
    data: bytes
    width: int
    height: int
    content_type: str = THUMBNAIL_CONTENT_TYPE

    @property
    def length(self) -> int:
        return len(self.data)


def decode_image(image_data: bytes) -> Image.Image:
    """Fully decode raster bytes into an RGB image."""
    try:
        image = Image.open(io.BytesIO(image_data))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise UnsupportedMedia(f"Cannot decode image: {exc}", DerivationStage.DECODING) from exc

    # JPEG has no alpha: composite transparent images onto white
    if image.mode in ("RGBA", "LA", "PA") or (image.mode == "P" and "transparency" in image.info):
        image = image.convert("RGBA")
        background = Image.new("RGB", image.size, (255, 255, 255))
        background.paste(image, mask=image.split()[-1])
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def resize_image(image: Image.Image, width: int, height: int) -> Image.Image:
    """Resize to exactly ``width`` x ``height`` (aspect ratio is not kept)."""
    try:
        return image.resize((width, height), Image.LANCZOS)
    except (OSError, ValueError) as exc:
        raise UnsupportedMedia(f"Cannot resize image: {exc}", DerivationStage.RESIZING) from exc


def encode_jpeg(image: Image.Image, quality: int = JPEG_QUALITY) -> Thumbnail:
    buf = io.BytesIO()
    try:
        image.save(buf, format=THUMBNAIL_FORMAT, quality=quality, optimize=True)
    except (OSError, ValueError) as exc:
        raise UnsupportedMedia(f"Cannot encode thumbnail: {exc}", DerivationStage.ENCODING) from exc
    width, height = image.size
    return Thumbnail(data=buf.getvalue(), width=width, height=height)

