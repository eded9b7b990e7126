# propertyhub/config.py
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # --- Application ---
    app_env: str = "development"
    log_level: str = "INFO"
    # Include exception text in 500 responses. Never enable in production.
    expose_error_details: bool = False

    # --- Database ---
    database_url: str = "sqlite:///./propertyhub.db"
    database_timeout_seconds: float = 5.0

    # --- Security / JWT ---
    jwt_secret: str = "dev-secret-please-change"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24  # 24 hours
    login_rate_limit: int = 10
    login_rate_window_seconds: int = 60

    # --- CORS ---
    cors_origins: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # --- File storage ---
    file_storage_backend: str = "local"
    uploads_dir: str = "uploads"
    uploads_public_prefix: str = "uploads"
    s3_bucket: Optional[str] = None
    s3_region: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_endpoint_url: Optional[str] = None
    max_photo_bytes: int = 5 * 1024 * 1024
    max_photos_per_upload: int = 5
    storage_timeout_seconds: float = 10.0

    # --- Email / notifications ---
    email_backend: str = "local"
    email_output_dir: str = "uploads/emails"
    email_from_address: Optional[str] = None
    email_from_name: str = "PropertyHub"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    notification_timeout_seconds: float = 5.0

    # --- Rent evaluator ---
    rent_reminder_window_days: int = 3
    run_rent_scan_on_startup: bool = True

    @property
    def uploads_root_path(self) -> Path:
        return Path(self.uploads_dir).resolve()

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in {"production", "prod"}


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
