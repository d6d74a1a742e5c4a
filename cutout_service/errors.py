"""Error taxonomy shared by the engines, the orchestrator and the shells."""

from __future__ import annotations

from typing import Optional


class CutoutError(Exception):
    """Base error. `user_message` is safe to show to end users."""

    kind = "error"
    default_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None, user_message: Optional[str] = None):
        super().__init__(message or user_message or self.default_message)
        self.user_message = user_message or message or self.default_message


class InvalidInput(CutoutError):
    """Submitted file rejected before any processing starts."""

    kind = "invalid_input"
    default_message = "Please upload a valid image file (PNG, JPG, or WebP)."


class InvalidImage(CutoutError):
    """Decoded pixel buffer is malformed."""

    kind = "invalid_image"
    default_message = "The image could not be read."


class EngineFailure(CutoutError):
    kind = "engine_failure"
    default_message = (
        "Processing failed. This can happen if the machine runs out of memory "
        "or the image is unsupported."
    )

    def __init__(self, message: Optional[str] = None):
        # Technical detail stays in the exception text; users get the generic message.
        super().__init__(message, user_message=self.default_message)


class InvalidTransition(CutoutError):
    """Operation not allowed in the current job state."""

    kind = "invalid_transition"
    default_message = "That action is not available right now."
