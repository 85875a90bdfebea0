"""Application configuration."""
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = "development"
    database_url: str

    # Redis (task store, queue, locks and Celery broker)
    redis_url: str = "redis://localhost:6379/0"

    # Base URL used by the subtask self-trigger
    app_url: Optional[str] = None
    vercel_url: Optional[str] = None
    vercel_project_production_url: Optional[str] = None
    port: int = 8000

    # Batch upload
    batch_dispatch_mode: Literal["chain", "worker"] = "chain"
    batch_size: int = Field(1, ge=1, le=10)
    max_resources_per_upload: int = 500
    max_resource_name_length: int = 100
    task_expire_seconds: int = 7 * 24 * 3600
    progress_expire_seconds: int = 3 * 24 * 3600
    max_user_active_tasks: int = 50
    subtask_trigger_delay: float = 0.1
    subtask_trigger_timeout: float = 60.0
    max_processing_time: float = Field(45.0, ge=10, le=300)

    # Recovery
    task_recovery_timeout: int = Field(300, ge=60)
    recovery_lock_ttl: int = Field(300, ge=60, le=3600)
    recovery_lock_attempts: int = 3
    recovery_lock_backoff: float = 0.2
    recovery_scan_interval: int = 300

    # AI enrichment / review (OpenAI-compatible endpoint)
    siliconflow_api_key: str = ""
    siliconflow_base_url: str = "https://api.siliconflow.cn/v1"
    ai_model: str = "Qwen/Qwen2.5-7B-Instruct"
    ai_timeout: float = 10.0
    ai_review_enabled: bool = True
    ai_auto_approve_threshold: int = 60

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
