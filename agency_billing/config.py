"""Configuration module.

Centralizes runtime configuration for the billing service. Values can be
provided via environment variables or a local `.env` file at the repository
root.
"""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


PROJECT_ROOT = Path(__file__).resolve().parent.parent
ENV_FILE_PATH = PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    app_name: str = "Agency Billing"
    environment: str = "development"
    debug: bool = True
    secret_key: str = "change-me-in-production"
    database_url: str = "sqlite:///./agency_billing.db"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    session_max_age_hours: int = 12
    housekeeping_enabled: bool = True

    # Use an absolute path so `.env` is consistently discovered regardless of
    # the process working directory used to start uvicorn.
    model_config = SettingsConfigDict(env_file=ENV_FILE_PATH, env_file_encoding="utf-8")


settings = Settings()
