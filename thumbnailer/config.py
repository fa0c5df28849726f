from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_files() -> list[str]:
    """Load .env from the project root, then a local .env."""
    base = Path(__file__).resolve().parent.parent
    return [str(base / ".env"), ".env"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=_env_files(),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Queue ────────────────────────────────────────────────────────────────
    queue_url: str = "redis://localhost:6379/0"  # or memory://
    queue_namespace: str = "thumbnailer"
    queue_name: str = "images"

    # ── Blob store ───────────────────────────────────────────────────────────
    blob_backend: str = "s3"  # "s3" | "memory"
    originals_bucket: str = "images"
    derivatives_bucket: str = "thumbs"
    read_chunk_size: int = 256 * 1024

    # ── AWS ───────────────────────────────────────────────────────────────────
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_region: str = "ap-south-1"
    s3_bucket_media: str = "photo-media-dev"
    s3_endpoint_url: str | None = None  # MinIO / localstack
    s3_part_size: int = 8 * 1024 * 1024  # S3 multipart minimum is 5 MiB

    # ── Thumbnails ────────────────────────────────────────────────────────────
    thumbnail_width: int = 100
    thumbnail_height: int = 100
    jpeg_quality: int = 85
    max_original_bytes: int = 20 * 1024 * 1024  # 20 MB
    skip_existing_derivatives: bool = True

    # ── Worker ────────────────────────────────────────────────────────────────
    worker_concurrency: int = 1
    message_timeout_seconds: float = 120.0
    ack_timeout_seconds: int = 300
    requeue_delay_seconds: float = 2.0
    reconnect_initial_delay_seconds: float = 1.0
    reconnect_max_delay_seconds: float = 30.0

    # ── Logging / HTTP ────────────────────────────────────────────────────────
    log_level: str = "INFO"
    env_name: str = "development"
    cors_origins: str = "http://localhost:3000"

    @property
    def cors_origins_list(self) -> list[str]:
        return [x.strip() for x in self.cors_origins.split(",") if x.strip()]

    @model_validator(mode="after")
    def check_deadline_fits_ack_timeout(self) -> "Settings":
        # A channel's liveness key must outlast any handler run plus its requeue pause
        budget = self.message_timeout_seconds + self.requeue_delay_seconds
        if budget >= self.ack_timeout_seconds:
            raise ValueError(
                f"message_timeout_seconds + requeue_delay_seconds ({budget}) must be "
                f"less than ack_timeout_seconds ({self.ack_timeout_seconds})."
            )
        return self
