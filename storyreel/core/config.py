"""
Storyreel Configuration

Pydantic settings for the pipeline, read from STORYREEL_* environment
variables and the project .env file.
"""

from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings

from storyreel.core.retry import PollPolicy, RetryConfig


class Settings(BaseSettings):
    """Application settings."""

    # Paths
    media_root: Path = Field(default=Path("storage/media"))
    media_base_url: str = Field(default="/media")
    scratch_dir: Path = Field(default=Path("storage/tmp"))
    data_file: str = Field(default="")  # empty keeps records in memory

    # Task queue
    queue_lane: str = Field(default="pipeline")
    max_workers: int = Field(default=4)
    worker_timeout: float = Field(default=600)
    stage_worker_tries: int = Field(default=3)
    stage_worker_backoff: float = Field(default=30)
    clip_submit_tries: int = Field(default=3)
    clip_submit_backoff: float = Field(default=30)

    # Polling
    clip_poll_interval: float = Field(default=30)
    clip_poll_max_attempts: int = Field(default=60)
    clip_poll_initial_delay: float = Field(default=60)
    final_poll_interval: float = Field(default=15)
    final_poll_max_attempts: int = Field(default=120)
    image_poll_interval: float = Field(default=5)
    image_poll_max_attempts: int = Field(default=60)
    poll_error_backoff_factor: float = Field(default=2.0)

    # Clip generation
    clip_duration: str = Field(default="5")
    clip_mode: str = Field(default="pro")
    auto_generate_clips: bool = Field(default=False)

    # Media tooling
    ffmpeg_binary: str = Field(default="ffmpeg")
    ffprobe_binary: str = Field(default="ffprobe")
    probe_timeout: float = Field(default=30)
    encode_timeout: float = Field(default=120)
    concat_timeout: float = Field(default=300)

    # Text generation
    text_model: str = Field(default="claude-sonnet-4-20250514")
    text_max_tokens: int = Field(default=4096)
    text_timeout: float = Field(default=120)

    # API server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"]
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_file: str = Field(default="")

    class Config:
        env_prefix = "STORYREEL_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    def poll_policy(self, kind: str) -> PollPolicy:
        """Poll policy for "clip", "final" or "image" jobs."""
        if kind == "clip":
            return PollPolicy(
                interval=self.clip_poll_interval,
                max_attempts=self.clip_poll_max_attempts,
                initial_delay=self.clip_poll_initial_delay,
                error_backoff_factor=self.poll_error_backoff_factor,
            )
        if kind == "final":
            return PollPolicy(
                interval=self.final_poll_interval,
                max_attempts=self.final_poll_max_attempts,
                initial_delay=self.final_poll_interval,
                error_backoff_factor=self.poll_error_backoff_factor,
            )
        if kind == "image":
            return PollPolicy(
                interval=self.image_poll_interval,
                max_attempts=self.image_poll_max_attempts,
                initial_delay=self.image_poll_interval,
                error_backoff_factor=self.poll_error_backoff_factor,
            )
        raise ValueError(f"Unknown poll policy: {kind}")

    def stage_retry(self) -> RetryConfig:
        return RetryConfig.fixed(self.stage_worker_tries, self.stage_worker_backoff)

    def clip_submit_retry(self) -> RetryConfig:
        return RetryConfig.fixed(self.clip_submit_tries, self.clip_submit_backoff)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
