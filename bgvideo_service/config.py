"""
Configuration loader for the background-removal video service.

Environment variables are centralized here to keep the rest of the code
focused on the pipeline and to make operational tuning clear.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

STORAGE_BACKENDS = {"s3", "local"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    # Object storage
    storage_backend: str = "s3"
    aws_region: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    s3_bucket_name: Optional[str] = None
    s3_endpoint_url: Optional[str] = None
    store_connect_timeout_seconds: float = 5.0
    store_read_timeout_seconds: float = 30.0
    signed_url_ttl_seconds: int = 3600

    # Local storage backend (development)
    local_storage_dir: Path = Path("data/storage")
    url_signing_secret: str = "change-me"
    public_base_url: str = "http://localhost:3000"

    # Timeouts
    request_timeout_seconds: float = 30.0
    render_timeout_seconds: float = 300.0

    # Directories
    public_dir: Path = Path("public")
    uploads_dir: Path = Path("uploads")
    videos_dir: Path = Path("videos")
    temp_dir: Path = Path("temp")

    # Template assets
    template_video_path: Path = Path("assets/video.mp4")
    audio_track_path: Path = Path("assets/music.m4a")

    # Composition (portrait, mobile friendly)
    video_width: int = 480
    video_height: int = 854
    video_fps: int = 30
    video_duration_seconds: float = 9.0
    overlay_start_seconds: float = 3.0
    overlay_x: float = 0.5
    overlay_y: float = 0.45
    overlay_width: float = 0.10
    overlay_height: float = 0.10
    audio_volume: float = 1.0
    video_key_prefix: str = "hosamani-family-video-"

    # Segmentation
    segmentation_model_id: str = "briaai/RMBG-1.4"
    segmentation_input_size: int = 1024
    segmentation_image_mean: float = 0.5
    segmentation_image_std: float = 1.0
    device: str = "auto"

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in STORAGE_BACKENDS:
            raise ValueError("STORAGE_BACKEND must be one of s3|local")
        return v

    @field_validator(
        "signed_url_ttl_seconds",
        "store_connect_timeout_seconds",
        "store_read_timeout_seconds",
        "request_timeout_seconds",
        "render_timeout_seconds",
        "video_duration_seconds",
    )
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("overlay_x", "overlay_y", "overlay_width", "overlay_height", "audio_volume")
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("must be within [0, 1]")
        return v

    def require_s3(self) -> None:
        """Fail fast when the S3 gateway is selected but not fully configured."""
        missing = [
            name.upper()
            for name in ("aws_region", "aws_access_key_id", "aws_secret_access_key", "s3_bucket_name")
            if not getattr(self, name)
        ]
        if missing:
            raise ConfigurationError(
                f"Object storage is not configured; missing {', '.join(missing)}"
            )


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()
