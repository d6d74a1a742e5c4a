"""
Configuration loader for the cutout service.

Environment variables are centralized here to keep the rest of the code
focused on segmentation and job handling, and to make operational tuning clear.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MODES = ("express", "deep")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Submission limits
    max_upload_bytes: int = Field(15 * 1024 * 1024)
    # Decoded size cap; a tiny file can declare enormous dimensions.
    max_pixels: int = Field(50_000_000)
    allowed_formats: Tuple[str, ...] = Field(("PNG", "JPEG", "WEBP", "BMP", "GIF", "TIFF"))

    # Express engine
    default_mode: str = Field("express")
    default_tolerance: float = Field(30.0)
    default_feather: float = Field(2.0)
    tolerance_min: float = Field(5.0)
    tolerance_max: float = Field(150.0)
    feather_max: float = Field(10.0)
    # Above this many pixels the express pass is pushed off the event loop.
    yield_pixel_threshold: int = Field(1_000_000)

    # Deep engine
    deep_model_path: Optional[Path] = Field(None)
    deep_max_long_edge: int = Field(1024)

    # Cloudflare R2 / S3-compatible storage for published results
    r2_endpoint: Optional[str] = Field(None)
    r2_access_key_id: Optional[str] = Field(None)
    r2_secret_access_key: Optional[str] = Field(None)
    r2_bucket_name: Optional[str] = Field(None)
    r2_public_base_url: Optional[str] = Field(None)

    # API
    request_timeout_seconds: int = Field(30)
    log_level: str = Field("INFO")

    # Debugging
    debug: bool = Field(False)
    debug_output_dir: Path = Field(Path("/tmp/cutout_debug"))

    @field_validator("default_mode")
    @classmethod
    def validate_mode(cls, v: str) -> str:
        v = v.lower()
        if v not in MODES:
            raise ValueError("DEFAULT_MODE must be one of express|deep")
        return v

    @field_validator("allowed_formats")
    @classmethod
    def normalize_formats(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        return tuple(fmt.upper() for fmt in v)

    @field_validator("default_tolerance")
    @classmethod
    def validate_tolerance(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("DEFAULT_TOLERANCE must be positive")
        return v

    @field_validator("default_feather")
    @classmethod
    def validate_feather(cls, v: float) -> float:
        if v < 0:
            raise ValueError("DEFAULT_FEATHER must not be negative")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


def max_upload_mib(settings: Optional[Settings] = None) -> float:
    """Upload limit in MiB, as shown to users."""
    settings = settings or get_settings()
    return settings.max_upload_bytes / (1024 * 1024)
