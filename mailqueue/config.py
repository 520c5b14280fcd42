"""Configuration for the HR mail queue."""

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./mail_queue.db"
    api_prefix: str = "/api/v1"
    debug: bool = False

    # Resend (email provider)
    resend_api_key: str = ""
    resend_base_url: str = "https://api.resend.com"
    mail_from: str = "system@company.com"
    delivery_timeout_seconds: float = 15.0
    idempotency_keys: bool = True

    # Tag attached to every outbound message for provider-side filtering
    source_tag: str = "hr-system"

    # Queue policy
    batch_size: int = 10
    default_priority: int = 5
    default_max_retries: int = 3
    recent_jobs_limit: int = 20

    model_config = {"env_prefix": "MAILQ_"}

    @field_validator("batch_size", "default_max_retries", "recent_jobs_limit")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value


settings = Settings()
