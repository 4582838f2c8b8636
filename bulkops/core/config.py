# core/config.py

"""
Application Configuration
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "Bulk Operations API"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"

    # API Settings
    api_prefix: str = "/api"
    host: str = "0.0.0.0"
    port: int = 8000

    # Downstream API Settings
    api_base_url: str = "https://www.wixapis.com"
    request_timeout_seconds: float = 15.0
    registration_password: str = "Password123!"

    # Delay Settings
    default_delay_seconds: float = 5.0
    dependent_delete_delay_seconds: float = 1.0

    # Storage Settings
    store_backend: str = "memory"
    store_dir: str = "job_store"

    class Config:
        env_prefix = "BULKOPS_"
        case_sensitive = False


settings = Settings()
