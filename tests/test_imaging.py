import io

import pytest
from PIL import Image

from thumbnailer.constants import DerivationStage
from thumbnailer.exceptions import UnsupportedMedia
from thumbnailer.imaging import Thumbnail, decode_image, encode_jpeg, resize_image


def _thumbnail(data: bytes, width: int = 100, height: int = 100) -> Thumbnail:
    return encode_jpeg(resize_image(decode_image(data), width, height))


@pytest.mark.parametrize(
    ("fmt", "mode", "color"),
    [
        ("JPEG", "RGB", (10, 20, 30)),
        ("PNG", "RGBA", (10, 20, 30, 0)),
        ("PNG", "L", 128),
        ("PNG", "P", 3),
        ("GIF", "P", 1),
    ],
)
def test_thumbnail_is_100x100_jpeg(image_bytes, fmt, mode, color) -> None:
    thumb = _thumbnail(image_bytes(400, 300, fmt=fmt, mode=mode, color=color))

    assert (thumb.width, thumb.height) == (100, 100)
    assert thumb.content_type == "image/jpeg"
    assert thumb.length == len(thumb.data)
    with Image.open(io.BytesIO(thumb.data)) as image:
        assert image.format == "JPEG"
        assert image.size == (100, 100)


def test_small_images_are_upscaled(image_bytes) -> None:
    thumb = _thumbnail(image_bytes(10, 40))
    assert (thumb.width, thumb.height) == (100, 100)


def test_custom_target_size(image_bytes) -> None:
    thumb = _thumbnail(image_bytes(), width=64, height=32)
    assert (thumb.width, thumb.height) == (64, 32)


def test_transparent_pixels_become_white(image_bytes) -> None:
    image = decode_image(image_bytes(20, 20, fmt="PNG", mode="RGBA", color=(0, 0, 0, 0)))
    assert image.mode == "RGB"
    assert image.getpixel((5, 5)) == (255, 255, 255)


@pytest.mark.parametrize("data", [b"", b"GIF89a-not-really", b"\x89PNG\r\n\x1a\n" + b"\x00" * 20])
def test_garbage_raises_unsupported_media(data: bytes) -> None:
    with pytest.raises(UnsupportedMedia) as exc_info:
        _thumbnail(data)
    assert exc_info.value.stage is DerivationStage.DECODING
