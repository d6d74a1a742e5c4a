"""
One-shot express pipeline.

`remove_background_bytes` is the entry point used by batch workers and
scripts that don't need job tracking:
bytes in -> validation -> decode -> color key -> RGBA PNG bytes out.
"""

from __future__ import annotations

import logging
from typing import Optional

from . import config
from .express import SegmentationParams, apply_color_key
from .postprocessing import encode_png
from .preprocessing import decode_to_buffer, validate_submission

logger = logging.getLogger(__name__)


def remove_background_bytes(
    image_bytes: bytes,
    tolerance: Optional[float] = None,
    feather: Optional[float] = None,
    filename: str = "image",
) -> bytes:
    """
    Full express pipeline from raw bytes to RGBA PNG bytes.

    Raises:
        InvalidInput: when the input is not an acceptable image.
        ValueError: when tolerance/feather are out of range.
    """
    settings = config.get_settings()
    params = SegmentationParams(
        tolerance=settings.default_tolerance if tolerance is None else tolerance,
        feather=settings.default_feather if feather is None else feather,
    )
    validate_submission(image_bytes, filename, settings=settings)
    buffer = decode_to_buffer(image_bytes)
    keyed = apply_color_key(buffer, params.tolerance, params.feather)
    logger.debug("pipeline: keyed %s (%dx%d)", filename, buffer.width, buffer.height)
    return encode_png(keyed, settings=settings)
