"""
Shared fixtures for the cutout service tests.
"""
import asyncio
from io import BytesIO
import struct
import sys
import zlib
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from cutout_service.config import Settings
from cutout_service.express import ImageBuffer
from cutout_service.resources import HandleRegistry


def solid(height: int, width: int, rgb: Tuple[int, int, int], alpha: int = 255) -> np.ndarray:
    """Uniform RGBA array."""
    px = np.zeros((height, width, 4), dtype=np.uint8)
    px[..., :3] = rgb
    px[..., 3] = alpha
    return px


def png_bytes(pixels: np.ndarray) -> bytes:
    buf = BytesIO()
    Image.fromarray(pixels).save(buf, format="PNG")
    return buf.getvalue()


def decode_png(data: bytes) -> np.ndarray:
    return np.array(Image.open(BytesIO(data)).convert("RGBA"))


def png_header(width: int, height: int) -> bytes:
    """PNG that declares `width` x `height` but carries no real pixel data."""

    def chunk(kind: bytes, body: bytes) -> bytes:
        return struct.pack(">I", len(body)) + kind + body + struct.pack(">I", zlib.crc32(kind + body))

    ihdr = struct.pack(">IIBBBBB", width, height, 8, 6, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", ihdr)
        + chunk(b"IDAT", zlib.compress(b""))
        + chunk(b"IEND", b"")
    )


class FakeDeepEngine:
    """Deep engine double that replays scripted progress events."""

    def __init__(
        self,
        events: Optional[List[Tuple[str, int, int]]] = None,
        result: bytes = b"",
        fail_after: Optional[int] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        self.events = events if events is not None else [("fetch:model", 1, 1), ("compute", 1, 1)]
        self.result = result
        self.fail_after = fail_after
        self.gate = gate
        self.started = asyncio.Event()
        self.calls = 0
        self.observed = []
        self.orchestrator = None

    async def remove_background(self, data, progress):
        self.calls += 1
        self.started.set()
        if self.orchestrator is not None:
            self.observed.append(self.orchestrator.snapshot())
        for i, (stage, current, total) in enumerate(self.events):
            if self.fail_after is not None and i == self.fail_after:
                raise MemoryError("out of memory while running model")
            progress(stage, current, total)
            if self.orchestrator is not None:
                self.observed.append(self.orchestrator.snapshot())
            await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_after is not None and self.fail_after >= len(self.events):
            raise RuntimeError("model rejected input")
        return self.result or png_bytes(solid(2, 2, (10, 20, 30), alpha=0))


@pytest.fixture
def settings() -> Settings:
    return Settings(max_upload_bytes=1024 * 1024, yield_pixel_threshold=1_000_000)


@pytest.fixture
def registry() -> HandleRegistry:
    return HandleRegistry()


@pytest.fixture
def gray_png() -> bytes:
    """2x2 image, every pixel (200, 200, 200)."""
    return png_bytes(solid(2, 2, (200, 200, 200)))


@pytest.fixture
def subject_pixels() -> np.ndarray:
    """
    5x5 near-white background with three probe pixels:
     - (1, 1) far from background (black)
     - (2, 2) in the ramp band for tolerance 25
     - (3, 3) well inside the tolerance
    """
    px = solid(5, 5, (100, 100, 100))
    px[1, 1, :3] = (0, 0, 0)
    px[2, 2, :3] = (120, 100, 100)  # distance 20
    px[3, 3, :3] = (105, 100, 100)  # distance 5
    return px


@pytest.fixture
def subject_buffer(subject_pixels) -> ImageBuffer:
    return ImageBuffer(subject_pixels.copy())


@pytest.fixture
def subject_png(subject_pixels) -> bytes:
    return png_bytes(subject_pixels)
