"""Environment-based configuration for digitread."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from DIGITREAD_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DIGITREAD_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 5000

    # Authentication (None = disabled)
    api_key: str | None = None

    # Model artifact: a local file wins over a Hugging Face download
    model_name: str = "mnist_cnn"
    model_path: str | None = None
    model_repo_id: str | None = None
    model_filename: str = "mnist_cnn.onnx"
    models_dir: str = "models"

    # Model input contract
    input_width: int = Field(default=28, ge=1)
    input_height: int = Field(default=28, ge=1)
    grayscale: bool = True
    normalized: bool = True
    quantized: bool = False
    num_categories: int = Field(default=10, ge=1)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=1, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency: one inference at a time by default
    max_concurrent: int = Field(default=1, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=10_485_760, ge=1)

    # Remote predictor used by the upload client
    upload_url: str = "http://127.0.0.1:5000/mnist"
    upload_timeout: float = Field(default=10.0, gt=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
