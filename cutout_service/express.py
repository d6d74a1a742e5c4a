"""
Express segmentation: corner-sampled color keying.

The background color is guessed from the four corner pixels. Every pixel
close enough to it (Euclidean distance in RGB) gets its alpha lowered:
pixels well inside the tolerance become fully transparent, pixels near the
tolerance edge get a linear ramp whose slope is divided by the feather
amount. Pixels at or beyond the tolerance keep their original alpha, so the
pass only ever lowers alpha. RGB channels are never modified.

This is a fast, low-fidelity complement to the deep engine. It assumes a
roughly uniform background visible at all four corners.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Tuple

import numpy as np

from .errors import InvalidImage

logger = logging.getLogger(__name__)

# Pixels closer than tolerance / HARD_CUTOFF_DIVISOR are treated as certain background.
HARD_CUTOFF_DIVISOR = 1.5


@dataclass(frozen=True)
class ImageBuffer:
    """RGBA pixels as an (H, W, 4) uint8 array."""

    pixels: np.ndarray

    def __post_init__(self) -> None:
        px = self.pixels
        if not isinstance(px, np.ndarray) or px.ndim != 3 or px.shape[2] != 4:
            raise InvalidImage("Pixel data must be an (H, W, 4) array")
        if px.shape[0] == 0 or px.shape[1] == 0:
            raise InvalidImage("Image width and height must be non-zero")
        if px.dtype != np.uint8:
            raise InvalidImage(f"Pixel data must be uint8, got {px.dtype}")

    @classmethod
    def from_pixels(cls, width: int, height: int, data: bytes) -> "ImageBuffer":
        """Build a buffer from flat RGBA bytes (row-major, 4 bytes per pixel)."""
        if width <= 0 or height <= 0:
            raise InvalidImage(f"Invalid dimensions {width}x{height}")
        expected = width * height * 4
        if len(data) != expected:
            raise InvalidImage(
                f"Pixel data length {len(data)} does not match {width}x{height}x4={expected}"
            )
        arr = np.frombuffer(bytes(data), dtype=np.uint8).reshape(height, width, 4).copy()
        return cls(arr)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @property
    def alpha(self) -> np.ndarray:
        return self.pixels[..., 3]

    def to_bytes(self) -> bytes:
        return self.pixels.tobytes()


@dataclass(frozen=True)
class SegmentationParams:
    tolerance: float = 30.0
    feather: float = 2.0

    def __post_init__(self) -> None:
        if not self.tolerance > 0:
            raise ValueError(f"tolerance must be > 0, got {self.tolerance}")
        if not self.feather >= 0:
            raise ValueError(f"feather must be >= 0, got {self.feather}")

    def clamp_to_recommended(
        self, tolerance_range: Tuple[float, float] = (5.0, 150.0), feather_max: float = 10.0
    ) -> "SegmentationParams":
        """Pull values into the ranges the UI sliders expose."""
        lo, hi = tolerance_range
        return SegmentationParams(
            tolerance=float(min(max(self.tolerance, lo), hi)),
            feather=float(min(max(self.feather, 0.0), feather_max)),
        )


def estimate_background(buffer: ImageBuffer) -> Tuple[float, float, float]:
    """Mean RGB of the four corner pixels."""
    px = buffer.pixels
    h, w = buffer.height, buffer.width
    corners = np.stack(
        [px[0, 0, :3], px[0, w - 1, :3], px[h - 1, 0, :3], px[h - 1, w - 1, :3]]
    ).astype(np.float64)
    r, g, b = corners.sum(axis=0) / 4.0
    return float(r), float(g), float(b)


def color_distance(buffer: ImageBuffer, background: Tuple[float, float, float]) -> np.ndarray:
    """Per-pixel Euclidean RGB distance to `background`, shape (H, W)."""
    rgb = buffer.pixels[..., :3].astype(np.float64)
    diff = rgb - np.asarray(background, dtype=np.float64)
    return np.sqrt(np.sum(diff * diff, axis=-1))


def ramp_alpha(dist: np.ndarray, tolerance: float, feather: float) -> np.ndarray:
    """Soft alpha for the band just inside the tolerance.

    feather values of 0 and 1 give the same slope.
    """
    scale = 1.0 / max(feather, 1.0)
    alpha = np.clip((dist / tolerance) * 255.0 * scale, 0.0, 255.0)
    # Stored as bytes: round to nearest, ties to even.
    return np.rint(alpha).astype(np.uint8)


def apply_color_key(buffer: ImageBuffer, tolerance: float, feather: float) -> ImageBuffer:
    """
    Return a new buffer with the alpha channel keyed against the corner color.

    The source buffer is not modified, so repeated calls with different
    parameters never compound.
    """
    params = SegmentationParams(tolerance=tolerance, feather=feather)
    background = estimate_background(buffer)
    dist = color_distance(buffer, background)

    within = dist < params.tolerance
    certain = dist < params.tolerance / HARD_CUTOFF_DIVISOR
    ramp = within & ~certain

    out = buffer.pixels.copy()
    alpha = out[..., 3]
    alpha[certain] = 0
    if np.any(ramp):
        alpha[ramp] = ramp_alpha(dist[ramp], params.tolerance, params.feather)

    logger.debug(
        "express: %dx%d bg=(%.1f, %.1f, %.1f) tol=%.2f feather=%.2f cleared=%d ramp=%d",
        buffer.width,
        buffer.height,
        background[0],
        background[1],
        background[2],
        params.tolerance,
        params.feather,
        int(np.count_nonzero(certain)),
        int(np.count_nonzero(ramp)),
    )
    return ImageBuffer(out)
