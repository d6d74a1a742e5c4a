"""
Submission validation and image decoding.

Everything here runs before a job starts, so failures surface as
`InvalidInput` and never leave a half-built job behind.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import math
from typing import Optional, Tuple

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from . import config
from .errors import InvalidInput
from .express import ImageBuffer


@dataclass(frozen=True)
class SourceImage:
    data: bytes
    filename: str
    content_type: str
    format: str
    size: Tuple[int, int]  # (width, height)


DIMENSIONS_TOO_LARGE = "Image dimensions are too large. Please use a smaller image."


def _sniff_format(data: bytes) -> Tuple[str, Tuple[int, int]]:
    try:
        with Image.open(BytesIO(data)) as img:
            img.verify()
        # verify() leaves the file unusable; reopen to read the header fields.
        with Image.open(BytesIO(data)) as img:
            return (img.format or "").upper(), img.size
    except Image.DecompressionBombError as exc:
        raise InvalidInput(str(exc), user_message=DIMENSIONS_TOO_LARGE) from exc
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise InvalidInput(
            f"Cannot identify image data: {exc}",
            user_message="Please upload a valid image file (PNG, JPG, or WebP).",
        ) from exc


def validate_submission(
    data: bytes,
    filename: str,
    content_type: Optional[str] = None,
    settings: Optional[config.Settings] = None,
) -> SourceImage:
    """
    Check a submitted file before any processing starts.

    Raises:
        InvalidInput: empty file, non-image type, too large (bytes or
            pixels), or undecodable.
    """
    settings = settings or config.get_settings()
    if not data:
        raise InvalidInput("Empty upload", user_message="The selected file is empty.")

    if content_type and not content_type.lower().startswith("image/"):
        raise InvalidInput(f"Unsupported content type {content_type!r}")

    if len(data) > settings.max_upload_bytes:
        raise InvalidInput(
            f"Upload of {len(data)} bytes exceeds limit of {settings.max_upload_bytes}",
            user_message=(
                "File is too large. Please use an image smaller than "
                f"{config.max_upload_mib(settings):g}MB."
            ),
        )

    fmt, size = _sniff_format(data)
    if size[0] * size[1] > settings.max_pixels:
        raise InvalidInput(
            f"Image of {size[0]}x{size[1]} exceeds {settings.max_pixels} pixels",
            user_message=DIMENSIONS_TOO_LARGE,
        )
    if fmt not in settings.allowed_formats:
        raise InvalidInput(f"Unsupported image format {fmt or 'unknown'}")

    return SourceImage(
        data=data,
        filename=filename or "image",
        content_type=content_type or Image.MIME.get(fmt, "application/octet-stream"),
        format=fmt,
        size=size,
    )


def load_image(data: bytes) -> Image.Image:
    """Decode bytes into an RGBA PIL image with EXIF orientation applied."""
    try:
        image = Image.open(BytesIO(data))
        image = ImageOps.exif_transpose(image)
        return image.convert("RGBA")
    except Image.DecompressionBombError as exc:
        raise InvalidInput(str(exc), user_message=DIMENSIONS_TOO_LARGE) from exc
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise InvalidInput(f"Invalid image data: {exc}") from exc


def decode_to_buffer(data: bytes) -> ImageBuffer:
    """Decode bytes into an RGBA `ImageBuffer`."""
    image = load_image(data)
    return ImageBuffer(np.array(image, dtype=np.uint8))


def compute_resize_dims(width: int, height: int, max_long_edge: int) -> Tuple[int, int]:
    """Preserve aspect ratio while constraining the longest edge."""
    if max_long_edge <= 0:
        return width, height
    long_edge = max(width, height)
    if long_edge <= max_long_edge:
        return width, height
    scale = max_long_edge / long_edge
    new_w = int(width * scale)
    new_h = int(height * scale)
    # Matting networks down/up sample by powers of two; keep dimensions divisible by 32.
    new_w = max(32, math.ceil(new_w / 32) * 32)
    new_h = max(32, math.ceil(new_h / 32) * 32)
    return new_w, new_h
