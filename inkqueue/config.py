"""Environment settings for the queue service."""

from functools import lru_cache
from typing import List, Optional
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import QueueConfig


class Settings(BaseSettings):
    """Service settings read from ``INKQUEUE_*`` variables and ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="INKQUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    data_dir: str = ".inkqueue"
    # Comma separated provider keys. GEMINI_API_KEYS is accepted for existing deployments.
    api_keys: str = Field(default="", validation_alias=AliasChoices("INKQUEUE_API_KEYS", "GEMINI_API_KEYS"))
    host: str = "127.0.0.1"
    port: int = 3001
    log_level: str = "INFO"

    max_concurrent: int = Field(default=3, ge=1)
    task_timeout: float = Field(default=300.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=3.0, ge=0)
    disable_threshold: int = Field(default=5, ge=1)

    # "package.module:attribute" of a HandlerRegistry to run jobs with.
    handlers: Optional[str] = None

    def key_list(self) -> List[str]:
        """Return configured API keys with blanks removed."""
        return [k.strip() for k in self.api_keys.split(",") if k.strip()]

    def queue_defaults(self) -> QueueConfig:
        """Queue settings used when a data file is created for the first time."""
        return QueueConfig(
            max_concurrent=self.max_concurrent,
            task_timeout=self.task_timeout,
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
