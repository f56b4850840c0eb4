"""
SiteMetrics — Configuration via environment variables.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """All settings read from env / .env file."""

    # Counter store
    store_backend: str = Field(
        default="sql",
        description="Counter store backend: 'sql', 'firestore' or 'memory'",
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./sitemetrics.db",
        description="Async SQLAlchemy DB URL (sql backend)",
    )
    transaction_max_attempts: int = Field(
        default=5, description="Attempts before a conflicting transaction gives up"
    )

    # Firebase / Firestore
    firebase_cred_path: str = Field(
        default="", description="Path to Firebase service account key JSON"
    )
    firebase_project_id: str = Field(default="", description="GCP project id override")

    # Day keys
    site_timezone: str = Field(
        default="Asia/Tokyo",
        description="IANA zone used for day/hour/weekday when the visitor clock is unknown",
    )

    # Ingestion
    stay_max_seconds: int = Field(
        default=60, description="Stay durations above this are dropped (backgrounded tabs)"
    )
    excluded_pages: list[str] = Field(
        default=["login", "analytics", "community", "postList"],
        description="Page ids that are never counted",
    )
    visitor_cookie_name: str = Field(default="sm_vid")

    # Geo lookup (best effort)
    geo_lookup_url: str = Field(default="https://ipapi.co/{ip}/json/")
    geo_timeout_seconds: float = Field(default=5.0)

    # HTTP
    cors_origins: list[str] = Field(default=["*"])
    log_level: str = Field(default="INFO")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
