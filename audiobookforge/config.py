"""Configuration management using Pydantic settings."""

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables and ``.env``.

    Provider credentials are optional here; a provider that needs them raises
    ProviderConfigError when it is initialized without them.
    """

    model_config = {
        "extra": "ignore",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    # Amazon Polly / S3
    aws_region: str = "us-east-1"
    s3_bucket_name: Optional[str] = None
    polly_engine: str = "neural"

    # Google Cloud TTS: service-account JSON, or GOOGLE_APPLICATION_CREDENTIALS
    google_tts_credentials: Optional[str] = None

    # Qwen TTS via DashScope
    dashscope_api_key: Optional[str] = None
    dashscope_region: str = "intl"  # "intl" or "cn"

    # Defaults for new projects
    default_provider: str = "google"
    default_language: str = "es"
    default_speech_rate: str = "100%"

    # Chapter concurrency
    parallel_chapter_limit: int = 3
    max_concurrency: int = 4

    # Job-level retries
    job_max_retries: int = 3
    retry_backoff_seconds: float = 2.0
    retry_max_wait_seconds: float = 60.0

    # Timeouts (seconds)
    ffmpeg_probe_timeout: int = 30
    mastering_timeout: int = 1800
    download_timeout: int = 300
    provider_request_timeout: int = 120
    task_poll_interval: float = 5.0
    task_timeout: int = 900

    # Paths
    work_dir: Path = Path("work")
    output_dir: Path = Path("output")

    signed_url_expiry_seconds: int = 3600

    log_level: str = "INFO"


# Global settings instance
settings = Settings()


def get_config() -> Settings:
    """Get the global configuration instance."""
    return settings
