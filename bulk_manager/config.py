"""
Configuration management.
Simple .env based config for VPS deployment.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    # Security
    session_secret: str = "change-me-in-production-use-random-string"
    admin_password_hash: str = ""  # bcrypt hash

    # Shopify store
    shopify_domain: str = ""  # e.g., "mystore.myshopify.com"
    shopify_access_token: str = ""  # Admin API token (shpat_...)
    shopify_api_version: str = "2025-01"

    # Rate window: ~2 requests/second sustained
    batch_group_size: int = 2
    batch_window_delay_ms: int = 1100

    # Database
    database_path: str = "./data/app.db"
    history_max_entries: int = 5000

    # Logging
    log_level: str = "INFO"


# Global settings instance
settings = Settings()
