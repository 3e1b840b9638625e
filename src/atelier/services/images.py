"""Canonical image format (PNG) for stored results."""

import asyncio
import io

import structlog
from PIL import Image, UnidentifiedImageError

from atelier.services.exceptions import ImageFormatError

logger = structlog.get_logger()

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

# Modes PNG can store directly; anything else is converted first
_PNG_MODES = {"1", "L", "LA", "P", "RGB", "RGBA", "I", "I;16"}


class PillowImageNormalizer:
    """Converts provider output to PNG. PNG input passes through untouched."""

    async def ensure_png(self, data: bytes) -> bytes:
        """Return PNG bytes for `data`.

        Raises:
            ImageFormatError: Bytes are empty or not a decodable image
        """
        if not data:
            raise ImageFormatError("Provider returned an empty image")
        if data.startswith(PNG_SIGNATURE):
            return data
        return await asyncio.to_thread(self._convert, data)

    @staticmethod
    def _convert(data: bytes) -> bytes:
        try:
            with Image.open(io.BytesIO(data)) as image:
                source_format = image.format
                if image.mode not in _PNG_MODES:
                    image = image.convert("RGBA")
                out = io.BytesIO()
                image.save(out, format="PNG")
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise ImageFormatError(f"Provider returned an unreadable image: {e}") from e

        logger.debug("image.converted", source_format=source_format)
        return out.getvalue()
