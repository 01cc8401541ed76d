"""Environment-based configuration for ImageID."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_MODELS_BASE_URL = "https://huggingface.co/imageid/imageid-models/resolve/main"


class Settings(BaseSettings):
    """Application settings loaded from IMAGEID_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="IMAGEID_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Primary (domain-specific) classifier: topology + metadata descriptors
    primary_model_url: str = f"{_MODELS_BASE_URL}/custom/model.onnx"
    primary_metadata_url: str = f"{_MODELS_BASE_URL}/custom/metadata.json"

    # Secondary (general-purpose) classifier on the Hugging Face Hub
    secondary_model_repo: str = "imageid/imageid-models"
    secondary_model_file: str = "mobilenet/mobilenet_v2_1.0_224.onnx"
    secondary_metadata_file: str = "mobilenet/metadata.json"
    secondary_top_k: int = Field(default=3, ge=1)

    download_timeout: float = Field(default=60.0, gt=0)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)
    fetch_timeout: float = Field(default=10.0, gt=0)

    # In-memory session and upload bounds
    max_sessions: int = Field(default=1024, ge=1)
    max_uploads: int = Field(default=256, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
