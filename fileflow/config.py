"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # Backends
    storage_backend: str = "local"  # "local" or "supabase"
    record_store_backend: str = "memory"  # "memory" or "supabase"
    storage_bucket: str = "uploads"
    local_storage_dir: str = "/tmp/fileflow_blobs"

    # Upload limits
    max_file_size: int = 1024 * 1024 * 1024  # 1 GB
    allowed_file_types: str = ".txt,.csv,.log,.json,.jsonl"

    # Job processing
    max_concurrent_jobs: int = 3
    job_retry_attempts: int = 3
    job_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 2.0
    shutdown_grace_seconds: float = 30.0

    # Batching
    batch_size: int = 1000
    batch_timeout_seconds: float = 5.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "text"

    port: int = 3001

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def allowed_extensions(self) -> List[str]:
        return [ext.strip().lower() for ext in self.allowed_file_types.split(",") if ext.strip()]


settings = Settings()
