"""Central configuration for the selfie KYC controller service."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class QualitySettings(BaseModel):
    """Per-frame quality gate thresholds."""
    min_brightness: float = Field(40.0, description="Frames with lower mean brightness (0-255) are TOO_DARK")
    center_min: float = Field(0.3, description="Lowest normalized nose coordinate considered centered")
    center_max: float = Field(0.7, description="Highest normalized nose coordinate considered centered")
    yaw_ratio_min: float = Field(0.3, description="Lowest nose-to-ear distance ratio considered forward-facing")
    yaw_ratio_max: float = Field(0.7, description="Highest nose-to-ear distance ratio considered forward-facing")
    max_eye_blink: float = Field(0.5, description="Blink blend-shape score above which an eye counts as closed")
    brightness_sample_size: int = Field(100, description="Side length (px) of the downsampled brightness probe")

    @model_validator(mode="after")
    def _check_ranges(self) -> "QualitySettings":
        if self.center_min >= self.center_max:
            raise ValueError("center_min must be lower than center_max")
        if self.yaw_ratio_min >= self.yaw_ratio_max:
            raise ValueError("yaw_ratio_min must be lower than yaw_ratio_max")
        return self


class CameraSettings(BaseModel):
    """Webcam capture configuration."""
    camera_id: int = Field(0, description="OpenCV camera index")
    resolution_width: int = Field(1280, description="Camera stream width (pixels)")
    resolution_height: int = Field(720, description="Camera stream height (pixels)")
    fps: int = Field(30, description="Frame evaluation rate upper bound")
    landmarker_model_path: Path = Field(
        ROOT_DIR / "weights" / "face_landmarker.task",
        description="MediaPipe FaceLandmarker .task bundle",
    )
    jpeg_quality: int = Field(92, description="JPEG quality used for captured selfies (0-100)")


class BackendSettings(BaseModel):
    """Compliance backend REST configuration."""
    api_base_url: str = Field("http://localhost:8080", description="Compliance API base URL")
    api_version: str = Field("v1", description="API version path segment")
    upload_path: str = Field(
        "/compliance/individual-verification/photo/upload",
        description="Asset upload endpoint (after the version segment)",
    )
    create_path: str = Field(
        "/compliance/individual-verification/photo/create",
        description="Record creation endpoint (after the version segment)",
    )
    timeout_seconds: float = Field(15.0, description="Per-request timeout")

    def endpoint(self, path: str) -> str:
        return f"/{self.api_version.strip('/')}/{path.lstrip('/')}"


class Settings(BaseSettings):
    """Environment-driven settings for controller subsystems."""

    # Access token
    token_secret: Optional[str] = Field(None, description="Key used to verify bearer token signatures")
    token_algorithms: List[str] = Field(default_factory=lambda: ["HS256"], description="Accepted JWT algorithms")
    allow_unverified_tokens: bool = Field(
        False,
        description="Decode tokens without signature verification when no secret is set (development only)",
    )

    # Flow
    default_callback_url: str = Field(
        "https://merchant.heydollr.app/auth/verification-callback",
        description="Redirect target after the flow when none is supplied at entry",
    )

    # Controller HTTP Server
    controller_host: str = Field("0.0.0.0", description="Host interface for local FastAPI server")
    controller_port: int = Field(5000, description="Port for FastAPI server")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")
    log_to_file: bool = Field(True, description="Write a daily-rotated log file under log_directory")
    log_quiet_loggers: List[str] = Field(
        default_factory=lambda: ["httpx", "httpcore"],
        description="Third-party loggers held at WARNING",
    )

    # Nested Configuration Objects
    quality: QualitySettings = Field(default_factory=QualitySettings, description="Frame quality gate")
    camera: CameraSettings = Field(default_factory=CameraSettings, description="Camera hardware settings")
    backend: BackendSettings = Field(default_factory=BackendSettings, description="Compliance backend")

    @field_validator("token_secret", mode="before")
    @classmethod
    def _blank_secret_is_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
