"""Runtime configuration for the delivery service."""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from outpost.core.message import DEFAULT_MAX_RETRY
from outpost.core.retry import DEFAULT_BASE_DELAY, RetryPolicy


class DeliveryConfig(BaseSettings):
    """Tunables for the scavenger, the retry policy and message defaults.

    Values can be passed directly or read from ``OUTPOST_*`` environment
    variables (and an optional ``.env`` file), e.g. ``OUTPOST_BATCH_LIMIT=50``.
    """

    model_config = SettingsConfigDict(
        env_prefix="OUTPOST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Scavenger
    scavenge_interval: float = Field(default=30.0, gt=0)
    batch_limit: int = Field(default=100, ge=1)
    stop_grace: float = Field(default=5.0, ge=0)
    concurrency: int = Field(default=1, ge=1)
    handler_timeout: float | None = Field(default=None, gt=0)

    # Retry policy
    base_delay: float = Field(default=DEFAULT_BASE_DELAY, gt=0)
    jitter: float = Field(default=0.0, ge=0, le=1)
    max_delay: float | None = Field(default=None, gt=0)

    # Message defaults
    default_max_retry: int = Field(default=DEFAULT_MAX_RETRY, ge=1)
    max_retry_by_type: dict[str, int] = Field(default_factory=dict)

    log_level: str = "INFO"

    @field_validator("max_retry_by_type")
    @classmethod
    def validate_overrides(cls, v: dict[str, int]) -> dict[str, int]:
        for message_type, max_retry in v.items():
            if max_retry < 1:
                raise ValueError(
                    f"max_retry for {message_type!r} must be >= 1, got {max_retry}"
                )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v!r}")
        return level

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(base_delay=self.base_delay, jitter=self.jitter, max_delay=self.max_delay)
