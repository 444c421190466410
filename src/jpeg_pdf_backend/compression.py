"""
Lossy recompression of uploaded images.

Each image is re-encoded as a progressive JPEG at a quality chosen by the
request's compression tier. Recompression is best-effort: a failure is
captured in a CompressionResult and the caller keeps the original bytes, so
one bad image never aborts a batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Dict, Optional, Union

from PIL import Image

from .models import CompressionLevel
from .utils import normalize_mode

logger = logging.getLogger(__name__)

QUALITY_BY_LEVEL: Dict[CompressionLevel, int] = {
    CompressionLevel.ULTRA: 30,  # aggressive size reduction
    CompressionLevel.COMPRESSED: 60,
    CompressionLevel.NORMAL: 90,  # near-lossless
}

# Modes the JPEG encoder writes without conversion
JPEG_MODES = ("L", "RGB", "CMYK")


@dataclass(frozen=True)
class CompressedImage:
    data: bytes
    width: int
    height: int


@dataclass(frozen=True)
class CompressionResult:
    image: Optional[CompressedImage] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.image is not None


def quality_for(level: Union[CompressionLevel, str, None]) -> int:
    if not isinstance(level, CompressionLevel):
        level = CompressionLevel.parse(level)
    return QUALITY_BY_LEVEL[level]


def recompress(buffer: bytes, level: Union[CompressionLevel, str, None]) -> CompressionResult:
    """
    Re-encode ``buffer`` as a progressive JPEG.

    Args:
        buffer: Raw bytes of any format Pillow can decode
        level: Compression tier; unrecognized values mean NORMAL

    Returns:
        A CompressionResult holding either the new image or the failure
    """
    quality = quality_for(level)
    try:
        with Image.open(BytesIO(buffer)) as image:
            image.load()
            prepared = normalize_mode(image, allowed=JPEG_MODES)
            output = BytesIO()
            prepared.save(output, format="JPEG", quality=quality, progressive=True, optimize=True)
            width, height = prepared.size
    except Exception as exc:  # noqa: BLE001
        return CompressionResult(error=exc)
    return CompressionResult(image=CompressedImage(data=output.getvalue(), width=width, height=height))


def compress(buffer: bytes, level: Union[CompressionLevel, str, None], label: str = "image") -> bytes:
    """
    Recompress ``buffer``, falling back to the original bytes on failure.

    Args:
        buffer: Raw image bytes
        level: Compression tier
        label: Name used in the failure log line

    Returns:
        The re-encoded bytes, or ``buffer`` itself when recompression failed
    """
    result = recompress(buffer, level)
    if result.ok:
        return result.image.data  # type: ignore[union-attr]
    logger.error(f"Image compression failed for {label}, keeping original: {result.error}")
    return buffer
