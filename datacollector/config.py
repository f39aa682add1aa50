"""Application configuration using Pydantic Settings."""

from dataclasses import dataclass
from typing import Dict

from pydantic_settings import BaseSettings, SettingsConfigDict

from datacollector.schemas.job import JobType


@dataclass(frozen=True)
class QueueConfig:
    """Per-type queue and worker pool settings."""

    concurrency: int
    max_attempts: int
    backoff_delay: float
    timeout: float


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite:///./datacollector.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Worker pools (0 disables the queue for that type)
    COLLECTION_CONCURRENCY: int = 2
    PROCESSING_CONCURRENCY: int = 4
    INDEXING_CONCURRENCY: int = 3
    SEARCH_CONCURRENCY: int = 1

    # Retries
    COLLECTION_MAX_ATTEMPTS: int = 3
    PROCESSING_MAX_ATTEMPTS: int = 3
    INDEXING_MAX_ATTEMPTS: int = 3
    SEARCH_MAX_ATTEMPTS: int = 1
    JOB_BACKOFF_DELAY: float = 5.0  # seconds, doubled per attempt

    # Timeouts (seconds)
    JOB_TIMEOUT: float = 30 * 60
    SHUTDOWN_GRACE_PERIOD: float = 30.0
    STALE_JOB_THRESHOLD: float = 30 * 60
    WORKER_POLL_INTERVAL: float = 1.0
    WATCHDOG_INTERVAL: float = 1.0
    STATE_STORE_RETRIES: int = 3

    # Queue accounting
    DEFAULT_JOB_DURATION: float = 2 * 60  # used for ETA until real durations exist

    # Retention
    COMPLETED_RETENTION_HOURS: int = 24
    FAILED_RETENTION_DAYS: int = 7

    # Downloads
    DOWNLOAD_DIR: str = "./downloads"
    DOWNLOAD_TIMEOUT: float = 30.0
    DOWNLOAD_MAX_BYTES: int = 100 * 1024 * 1024
    DOWNLOAD_MAX_RETRIES: int = 3

    # File processing
    CHUNK_TARGET_SIZE: int = 1000
    CHUNK_OVERLAP_PERCENT: float = 0.2
    MAX_TEXT_LENGTH: int = 1_000_000

    # Embeddings (Ollama)
    OLLAMA_BASE_URL: str = "http://localhost:11434"
    OLLAMA_MODEL: str = "nomic-embed-text"
    EMBED_DIM: int = 768

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

    def queue_configs(self) -> Dict[JobType, QueueConfig]:
        """Build queue settings for every enabled job type."""
        configs = {}
        for job_type in JobType:
            prefix = job_type.value.upper()
            concurrency = getattr(self, f"{prefix}_CONCURRENCY")
            if concurrency <= 0:
                continue
            configs[job_type] = QueueConfig(
                concurrency=concurrency,
                max_attempts=max(1, getattr(self, f"{prefix}_MAX_ATTEMPTS")),
                backoff_delay=self.JOB_BACKOFF_DELAY,
                timeout=self.JOB_TIMEOUT,
            )
        return configs
