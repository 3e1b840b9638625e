"""Image normalization tests."""

import io

import pytest
from PIL import Image

from atelier.services.exceptions import ImageFormatError
from atelier.services.images import PNG_SIGNATURE, PillowImageNormalizer
from conftest import make_jpeg, make_oversized_bmp, make_png


@pytest.fixture
def normalizer() -> PillowImageNormalizer:
    return PillowImageNormalizer()


@pytest.mark.asyncio
async def test_png_passes_through_unchanged(normalizer):
    data = make_png(16, 12)

    assert await normalizer.ensure_png(data) is data


@pytest.mark.asyncio
async def test_jpeg_is_converted_to_png(normalizer):
    converted = await normalizer.ensure_png(make_jpeg(20, 10))

    assert converted.startswith(PNG_SIGNATURE)
    with Image.open(io.BytesIO(converted)) as image:
        assert image.format == "PNG"
        assert image.size == (20, 10)


@pytest.mark.asyncio
async def test_cmyk_input_is_converted(normalizer):
    buf = io.BytesIO()
    Image.new("CMYK", (4, 4)).save(buf, format="JPEG")

    converted = await normalizer.ensure_png(buf.getvalue())

    with Image.open(io.BytesIO(converted)) as image:
        assert image.mode == "RGBA"


@pytest.mark.asyncio
@pytest.mark.parametrize("data", [b"", b"definitely not an image"])
async def test_unreadable_bytes_raise(normalizer, data):
    with pytest.raises(ImageFormatError):
        await normalizer.ensure_png(data)


@pytest.mark.asyncio
async def test_decompression_bomb_raises_format_error(normalizer):
    with pytest.raises(ImageFormatError):
        await normalizer.ensure_png(make_oversized_bmp())
