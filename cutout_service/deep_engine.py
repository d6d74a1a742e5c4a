"""
Deep engine collaborator.

The orchestrator only relies on `DeepEngine`: one coroutine taking encoded
image bytes plus a progress callback and returning an encoded PNG. The
bundled `TorchDeepEngine` satisfies it with a local TorchScript matting
model; any other implementation (remote API, different model) can be passed
to the orchestrator instead.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol

import numpy as np
from PIL import Image

from . import config
from .postprocessing import compose_rgba, encode_png
from .preprocessing import compute_resize_dims, load_image

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]


class DeepEngine(Protocol):
    async def remove_background(self, data: bytes, progress: ProgressCallback) -> bytes:
        """Return an RGBA PNG for `data`, reporting (stage, current, total) along the way."""
        ...


def _run_matting(model, device, image: Image.Image, max_long_edge: int) -> np.ndarray:
    """Run the matting model and return an alpha matte in [0, 1] at model resolution."""
    import torch

    orig_w, orig_h = image.size
    new_w, new_h = compute_resize_dims(orig_w, orig_h, max_long_edge)
    rgb = image.convert("RGB")
    if (new_w, new_h) != (orig_w, orig_h):
        rgb = rgb.resize((new_w, new_h), Image.BILINEAR)

    im_np = np.asarray(rgb).astype("float32") / 255.0
    # Matting models expect inputs centered to [-1, 1]
    im_np = (im_np - 0.5) / 0.5
    im_np = np.transpose(im_np, (2, 0, 1))  # HWC -> CHW
    tensor = torch.from_numpy(im_np).unsqueeze(0).to(device)

    with torch.no_grad():
        output = model(tensor, True)
    # MODNet-style graphs return (semantic, detail, matte); plain ones return the matte.
    if isinstance(output, (tuple, list)):
        output = output[-1]
    alpha = output[0, 0].detach().cpu().numpy()
    return np.clip(alpha, 0.0, 1.0)


class TorchDeepEngine:
    """Local deep engine backed by the TorchScript model from `model_loader`."""

    def __init__(self, settings: Optional[config.Settings] = None):
        self._settings = settings or config.get_settings()

    async def remove_background(self, data: bytes, progress: ProgressCallback) -> bytes:
        from .model_loader import get_deep_model, is_loaded

        progress("fetch:model", 0, 1)
        if not is_loaded():
            logger.info("deep: loading model")
        model, device = await asyncio.to_thread(get_deep_model)
        progress("fetch:model", 1, 1)

        image = await asyncio.to_thread(load_image, data)
        progress("compute", 0, 2)
        alpha = await asyncio.to_thread(
            _run_matting, model, device, image, self._settings.deep_max_long_edge
        )
        progress("compute", 1, 2)

        buffer = await asyncio.to_thread(compose_rgba, image, alpha)
        png = await asyncio.to_thread(encode_png, buffer, "deep", self._settings)
        progress("compute", 2, 2)
        return png
