"""
Utility functions for filename sanitization, size formatting and image modes.

This module provides helper functions for:
- Sanitizing user-provided download names for the Content-Disposition header
- Rendering byte limits in error messages
- Normalizing Pillow image modes before encoding
"""

from __future__ import annotations

import re
from typing import Iterable

from PIL import Image

# Pattern to match characters that are not allowed in a download name
# Allows: ASCII letters, digits, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^A-Za-z0-9_-]")

DEFAULT_FILENAME = "converted"


def sanitize_filename(filename: str, fallback: str = DEFAULT_FILENAME) -> str:
    """
    Generate a header-safe download name from user input.

    Every disallowed character is replaced one-for-one with an underscore,
    so the result keeps the length of the input.

    Args:
        filename: The requested output name (without extension)
        fallback: Value to use when the input is empty

    Returns:
        A name matching ``[A-Za-z0-9_-]+``

    Example:
        >>> sanitize_filename("My Report!")
        "My_Report_"
        >>> sanitize_filename("")
        "converted"
    """
    cleaned = SANITIZE_PATTERN.sub("_", filename)
    return cleaned or fallback


def human_size(num_bytes: int) -> str:
    """
    Render a byte count the way limits are quoted to clients.

    Example:
        >>> human_size(10 * 1024 * 1024)
        "10MB"
        >>> human_size(512 * 1024)
        "512KB"
    """
    for unit, factor in (("GB", 1024**3), ("MB", 1024**2), ("KB", 1024)):
        if num_bytes >= factor:
            return f"{num_bytes / factor:g}{unit}"
    return f"{num_bytes}B"


def has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA", "PA") or "transparency" in image.info


def normalize_mode(image: Image.Image, allowed: Iterable[str] = ("L", "RGB")) -> Image.Image:
    """
    Convert an image to a mode the target encoder accepts.

    Transparent images are composited onto a white background; bilevel
    images become grayscale; anything else that is not in ``allowed`` is
    converted to RGB.

    Args:
        image: A loaded Pillow image
        allowed: Modes that can be passed through unchanged

    Returns:
        The same image when its mode is allowed, otherwise a converted copy
    """
    allowed = tuple(allowed)
    if has_alpha(image):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.split()[-1])
        return background
    if image.mode in allowed:
        return image
    if image.mode == "1" and "L" in allowed:
        return image.convert("L")
    return image.convert("RGB")
