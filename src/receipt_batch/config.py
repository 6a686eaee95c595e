from __future__ import annotations

from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[2]
ENV_PATH = ROOT_DIR / ".env"
load_dotenv(ENV_PATH, override=False)


class BatchUploadSettings(BaseModel):
    """Configuration for batch upload sessions."""

    max_concurrent_uploads: int = Field(default=2, ge=1)
    item_timeout_seconds: float = Field(default=600.0, gt=0)  # 10 minutes per item
    max_files_per_batch: int = Field(default=50, ge=1)
    max_file_size_bytes: int = Field(default=5 * 1024 * 1024, gt=0)
    allowed_extensions: tuple[str, ...] = (".jpg", ".jpeg", ".png", ".pdf")
    staging_dir: Path = Path("artifacts/uploads")
    persist_sessions: bool = False
    sessions_dir: Path = Path("artifacts/batches")


class ProcessorSettings(BaseModel):
    """Configuration for the remote processor that uploads and extracts receipts."""

    provider: Literal["simulated", "http"] = "simulated"

    # Simulated provider
    stage_latency_seconds: float = Field(default=0.05, ge=0)
    failure_rate: float = Field(default=0.0, ge=0, le=1)
    seed: int | None = None

    # Hosted backend provider
    base_url: str | None = None
    api_key: str | None = Field(default=None, repr=False)
    storage_bucket: str = "receipt_images"
    records_table: str = "receipts"
    function_name: str = "process-receipt"
    model_id: str = "gemini-2.5-flash-lite"
    user_prefix: str = "batch"
    request_timeout_seconds: float = 180.0
    poll_interval_seconds: float = 3.0


class Settings(BaseSettings):
    """Global application configuration."""

    app_name: str = "Receipt Batch Upload"
    log_level: str = "INFO"
    batch: BatchUploadSettings = BatchUploadSettings()
    processor: ProcessorSettings = ProcessorSettings()

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="allow",
    )


settings = Settings()
