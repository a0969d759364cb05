"""Environment-based configuration for LeafScan."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from LEAFSCAN_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LEAFSCAN_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ML device
    device: Literal["cpu", "cuda"] = "cpu"

    # Bundled classifier artifact
    models_dir: str = "models"
    classifier_model: str = "leafscan_v2"
    preload_model: bool = False

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Model management
    model_ttl: int = Field(default=0, ge=0)
    eviction_interval: float = Field(default=60.0, gt=0)

    # Number of ranked predictions written to the debug log
    debug_top_k: int = Field(default=5, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
