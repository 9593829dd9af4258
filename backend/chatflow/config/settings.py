# /chatflow/config/settings.py

import sys
from typing import Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # App
    environment: str = Field(default="development")
    api_version: str = "v1"
    workers: int = 4
    api_key: Optional[str] = None  # guards the session API and /metrics when set

    # MongoDB (unset = in-memory stores, single process only)
    mongo_uri: Optional[str] = None
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = False

    # Redis (unset = in-process locks, no dedupe cache)
    redis_url: Optional[str] = None

    # Interpreter limits
    max_steps_per_invocation: int = 100
    invocation_budget_seconds: float = 30.0
    node_timeout_seconds: float = 15.0
    default_max_retries: int = 2
    retry_backoff_seconds: float = 0.0
    retry_backoff_max_seconds: float = 10.0

    # Locking
    lock_timeout_seconds: float = 10.0
    lock_lease_seconds: float = 60.0

    # Session lifecycle
    session_ttl_hours: int = 72
    timer_grace_seconds: int = 900
    processed_message_history: int = 50

    # Follow-up scheduler
    follow_up_poll_seconds: int = 30
    follow_up_batch_size: int = 50
    follow_up_max_retries: int = 3

    # Collaborators
    channel_gateway_url: Optional[str] = None
    channel_gateway_token: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    alerting_webhook_url: Optional[str] = None

    # ---------------- Validators ---------------- #

    @field_validator("environment")
    @classmethod
    def environment_must_be_known(cls, v: str) -> str:
        v = v.lower()
        if v not in ("development", "test", "staging", "production"):
            raise ValueError(f"Unknown ENVIRONMENT '{v}'")
        return v

    @field_validator("max_steps_per_invocation", "default_max_retries", "processed_message_history")
    @classmethod
    def must_not_be_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Engine limits cannot be negative")
        return v

    @model_validator(mode="after")
    def backoff_cap_covers_base(self):
        if self.retry_backoff_max_seconds < self.retry_backoff_seconds:
            self.retry_backoff_max_seconds = self.retry_backoff_seconds
        return self


def validate_environment(settings_obj: Settings) -> Settings:
    try:
        if settings_obj.environment == "production":
            # Several workers share sessions, so both stores must be external.
            for var in ["mongo_uri", "redis_url"]:
                if not getattr(settings_obj, var):
                    raise ValueError(f"{var.upper()} is required in production")
        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
