"""
Model loading for the deep engine.

The loader:
 - loads a TorchScript matting checkpoint from `DEEP_MODEL_PATH`,
 - keeps a single shared instance on the best available device,
 - exposes `get_deep_model()` for inference callers.
"""

from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock
from typing import Optional, Tuple

import torch

from . import config

logger = logging.getLogger(__name__)

_MODEL = None
# Prefer CUDA -> Apple MPS -> CPU to support both GPU servers and local macOS dev.
if torch.cuda.is_available():
    _DEVICE = torch.device("cuda")
elif torch.backends.mps.is_available():  # type: ignore[attr-defined]
    _DEVICE = torch.device("mps")
else:
    _DEVICE = torch.device("cpu")
_LOCK = Lock()


def is_loaded() -> bool:
    return _MODEL is not None


def _load_model(model_path: Optional[Path]) -> torch.nn.Module:
    if model_path is None:
        raise FileNotFoundError("DEEP_MODEL_PATH is not configured")
    if not model_path.exists():
        raise FileNotFoundError(f"Deep model checkpoint not found at {model_path}")

    logger.info("Loading TorchScript model from %s", model_path)
    model = torch.jit.load(str(model_path), map_location=_DEVICE)
    model.eval()
    return model


def get_deep_model() -> Tuple[torch.nn.Module, torch.device]:
    """
    Return a singleton model + device pair.

    The model is loaded once on first access and kept in device memory to
    avoid re-initialization costs across jobs.
    """
    global _MODEL
    if _MODEL is not None:
        return _MODEL, _DEVICE

    with _LOCK:
        if _MODEL is None:
            settings = config.get_settings()
            _MODEL = _load_model(settings.deep_model_path)
            logger.info("Deep model loaded on device: %s", _DEVICE)
    return _MODEL, _DEVICE
