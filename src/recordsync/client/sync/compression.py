"""Image compression before upload.

This module provides:
- CompressionOptions: Size and dimension targets
- compress_image: Blocking Pillow implementation
- ImageCompressor: Async wrapper running compression in an executor

The encoder keeps the source format. Lossy formats first lower their
quality, then shrink; lossless formats only shrink. The loop stops at the
first result under the byte target or after max_iterations encodes, and
the input is returned unchanged if nothing smaller was produced.
"""

from __future__ import annotations

import asyncio
import io
import logging
from concurrent.futures import Executor
from dataclasses import dataclass

from PIL import Image, ImageOps, UnidentifiedImageError

from recordsync.client.sync.types import CompressedImage, CompressionError

logger = logging.getLogger(__name__)

FORMAT_MEDIA_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "BMP": "image/bmp",
}
LOSSY_FORMATS = frozenset({"JPEG", "WEBP"})
FALLBACK_FORMAT = "PNG"


@dataclass(frozen=True)
class CompressionOptions:
    """Targets for one compression run.

    Attributes:
        max_size_mb: Target upper bound of the output size.
        max_dimension: Longest side of the output in pixels.
        max_iterations: Maximum number of encodes.
        initial_quality: First quality tried for lossy formats.
        min_quality: Lowest quality before shrinking instead.
        quality_step: Quality decrease per iteration.
        scale_step: Size factor applied per shrinking iteration.
    """

    max_size_mb: float = 1.0
    max_dimension: int = 1920
    max_iterations: int = 10
    initial_quality: int = 90
    min_quality: int = 40
    quality_step: int = 10
    scale_step: float = 0.8

    @property
    def max_bytes(self) -> int:
        return int(self.max_size_mb * 1024 * 1024)


def _encode(image: Image.Image, fmt: str, quality: int) -> bytes:
    buffer = io.BytesIO()
    if fmt == "JPEG":
        image.save(buffer, format=fmt, quality=quality, optimize=True)
    elif fmt == "WEBP":
        image.save(buffer, format=fmt, quality=quality)
    else:
        image.save(buffer, format=fmt)
    return buffer.getvalue()


def _prepare(image: Image.Image, fmt: str) -> Image.Image:
    """Normalize orientation and mode for the target format."""
    image = ImageOps.exif_transpose(image) or image
    if fmt == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    elif fmt == "WEBP" and image.mode not in ("RGB", "RGBA"):
        image = image.convert("RGBA")
    return image


def compress_image(data: bytes, options: CompressionOptions | None = None) -> CompressedImage:
    """Compress an image to the given targets.

    Args:
        data: Encoded source image.
        options: Size and dimension targets.

    Returns:
        The compressed image (or the input if it could not be reduced).

    Raises:
        CompressionError: If the data is not a decodable image, or the
            options allow no encode at all.
    """
    options = options or CompressionOptions()

    try:
        source = Image.open(io.BytesIO(data))
        source.load()
    except (UnidentifiedImageError, OSError) as e:
        raise CompressionError(f"Cannot decode image: {e}") from e

    fmt = source.format if source.format in FORMAT_MEDIA_TYPES else FALLBACK_FORMAT
    original_dims = source.size
    image = _prepare(source, fmt)

    if max(image.size) > options.max_dimension:
        image.thumbnail(
            (options.max_dimension, options.max_dimension),
            Image.Resampling.LANCZOS,
        )

    quality = options.initial_quality
    best: tuple[bytes, tuple[int, int]] | None = None

    for iteration in range(1, options.max_iterations + 1):
        encoded = _encode(image, fmt, quality)
        if best is None or len(encoded) < len(best[0]):
            best = (encoded, image.size)

        logger.debug(
            "Iteration %d: %dx%d q=%d -> %d bytes",
            iteration, image.width, image.height, quality, len(encoded),
        )
        if len(encoded) <= options.max_bytes:
            break

        if fmt in LOSSY_FORMATS and quality - options.quality_step >= options.min_quality:
            quality -= options.quality_step
            continue

        new_size = (
            max(1, int(image.width * options.scale_step)),
            max(1, int(image.height * options.scale_step)),
        )
        if new_size == image.size:
            break
        image = image.resize(new_size, Image.Resampling.LANCZOS)

    if best is None:
        raise CompressionError(f"No encode attempted (max_iterations={options.max_iterations})")
    encoded, (width, height) = best
    media_type = FORMAT_MEDIA_TYPES[fmt]

    if len(encoded) >= len(data) and source.format == fmt:
        logger.debug("Compression did not reduce size, keeping original")
        return CompressedImage(
            data=data,
            media_type=media_type,
            original_size=len(data),
            width=original_dims[0],
            height=original_dims[1],
        )

    return CompressedImage(
        data=encoded,
        media_type=media_type,
        original_size=len(data),
        width=width,
        height=height,
    )


class ImageCompressor:
    """Runs compress_image off the event loop."""

    def __init__(self, executor: Executor | None = None) -> None:
        """Initialize the compressor.

        Args:
            executor: Executor for the blocking work (default executor if None).
        """
        self._executor = executor

    async def compress(
        self,
        data: bytes,
        options: CompressionOptions | None = None,
    ) -> CompressedImage:
        """Compress an image without blocking the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, compress_image, data, options)
