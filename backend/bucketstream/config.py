"""
Client configuration using Pydantic Settings.
All environment variables are loaded here with sensible defaults.
"""
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from bucketstream.version import __version__

# Resumable uploads require every non-final chunk to be a multiple of 256 KiB
UPLOAD_CHUNK_GRANULARITY = 256 * 1024


class Settings(BaseSettings):
    """Storage client settings loaded from STORAGE_* environment variables."""

    # Core options consumed by the request pipeline
    base_url: str = "https://www.googleapis.com/storage/v1"
    scopes: List[str] = Field(
        default_factory=lambda: ["https://www.googleapis.com/auth/devstorage.full_control"]
    )
    user_agent: str = f"bucketstream/{__version__}"
    project_id_required: bool = False

    # Service endpoints
    download_base_url: str = "https://storage.googleapis.com"
    upload_base_url: str = "https://www.googleapis.com/upload/storage/v1"

    # Project / buckets
    project_id: Optional[str] = None
    bucket: Optional[str] = None  # Used by client.bucket() without a name
    tmp_bucket: Optional[str] = None  # Used by client.tmp_bucket()

    # Credentials
    # NOTE: when unset, tokens come from the GCE metadata server
    access_token: Optional[str] = None

    # Transport
    request_timeout: float = 60.0
    upload_chunk_size: int = 8 * 1024 * 1024  # 8 MiB

    # Logging
    service_name: str = "bucketstream"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("base_url", "download_base_url", "upload_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("upload_chunk_size")
    @classmethod
    def _check_chunk_size(cls, value: int) -> int:
        if value <= 0 or value % UPLOAD_CHUNK_GRANULARITY != 0:
            raise ValueError(
                f"upload_chunk_size must be a positive multiple of {UPLOAD_CHUNK_GRANULARITY}"
            )
        return value

    @property
    def bucket_base_url(self) -> str:
        """JSON API root for bucket-scoped calls (list, delete)."""
        return f"{self.base_url}/b"


# Global settings instance
settings = Settings()
