"""Encoding of keyed buffers and mattes into downloadable PNG artifacts."""

from __future__ import annotations

from io import BytesIO
import logging
from pathlib import Path, PurePath
from typing import Optional

import cv2
import numpy as np
from PIL import Image

from . import config
from .express import ImageBuffer

logger = logging.getLogger(__name__)

OUTPUT_SUFFIX = "_transparent.png"


def output_name(filename: Optional[str]) -> str:
    """Suggested download name: `<basename>_transparent.png`."""
    # Browsers send bare names; strip any directory part a client may include.
    name = PurePath((filename or "").replace("\\", "/")).name
    stem = name.split(".")[0]
    return (stem or "image") + OUTPUT_SUFFIX


def _maybe_dump_debug(alpha_u8: np.ndarray, debug_dir: Path, tag: str) -> None:
    """Optionally write the alpha plane when DEBUG is enabled."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        alpha_path = debug_dir / f"{tag}_alpha.png"
        cv2.imwrite(str(alpha_path), alpha_u8)
        logger.debug("postprocess: wrote debug alpha to %s", alpha_path)
    except Exception as exc:  # noqa: BLE001
        logger.warning("postprocess: failed to write debug outputs: %s", exc)


def encode_png(
    buffer: ImageBuffer, tag: str = "express", settings: Optional[config.Settings] = None
) -> bytes:
    """Encode an RGBA buffer as PNG bytes."""
    settings = settings or config.get_settings()
    if settings.debug:
        _maybe_dump_debug(np.ascontiguousarray(buffer.alpha), Path(settings.debug_output_dir), tag)

    out = Image.fromarray(buffer.pixels)  # (H, W, 4) uint8 -> RGBA
    buf = BytesIO()
    out.save(buf, format="PNG")
    return buf.getvalue()


def compose_rgba(rgb_image: Image.Image, alpha: np.ndarray) -> ImageBuffer:
    """
    Attach a float matte in [0, 1] to an RGB image.

    The matte is resized to the image when the model ran at a lower resolution.
    """
    rgb_np = np.array(rgb_image.convert("RGB"), dtype=np.uint8)
    h, w = rgb_np.shape[:2]
    if alpha.shape[:2] != (h, w):
        alpha = cv2.resize(alpha.astype(np.float32), (w, h), interpolation=cv2.INTER_LINEAR)
    alpha_u8 = np.clip(alpha * 255.0, 0, 255).astype(np.uint8)
    return ImageBuffer(np.dstack((rgb_np, alpha_u8)))
