from __future__ import annotations

from typing import Annotated, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from vanguard_db.db.config import ConnectionDescriptor


class AppSettings(BaseSettings):
    """
    Application settings for the data-access layer and its HTTP surface.

    CONNECTION_STRINGS is read as a JSON object from the environment (or .env):

        CONNECTION_STRINGS='{"Default": {"connectionString": "...", "dbType": "PostgreSQL"}}'
    """

    # FastAPI metadata
    APP_NAME: str = Field(default="Vanguard DB API")
    APP_DESCRIPTION: str = Field(
        default=(
            "Multi-database data-access layer: one repository contract routed "
            "to many databases by database code."
        )
    )
    APP_VERSION: str = Field(default="0.1.0")

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["*"],
        description="Comma-separated list of allowed origins. Default: *",
    )
    CORS_ALLOW_CREDENTIALS: bool = Field(default=False)
    CORS_ALLOW_METHODS: List[str] = Field(default_factory=lambda: ["*"])
    CORS_ALLOW_HEADERS: List[str] = Field(default_factory=lambda: ["*"])

    # Connection registry
    CONNECTION_STRINGS: Dict[str, ConnectionDescriptor] = Field(
        default_factory=dict,
        description="Mapping of database code to {connectionString, dbType}.",
    )
    CONNECTION_STRINGS_FILE: Optional[str] = Field(
        default=None,
        description="Optional appsettings-style JSON file with a ConnectionStrings section.",
    )
    DEFAULT_DB_CODE: str = Field(default="Default")

    # SQLAlchemy engine options
    SQL_ECHO: bool = Field(
        default=False, description="Echo SQL statements for debugging (default False)"
    )
    POOL_SIZE: int = Field(default=10, ge=1)
    MAX_OVERFLOW: int = Field(default=20, ge=0)
    POOL_RECYCLE: int = Field(default=3600, description="Seconds before a pooled connection is recycled")

    # Repository behavior
    BULK_BATCH_SIZE: int = Field(default=5000, ge=1, description="Rows per batch on the fast insert path")
    QUERY_TIMEOUT: Optional[float] = Field(
        default=None, gt=0, description="Default per-call timeout in seconds (None disables)"
    )

    # Startup behavior
    CREATE_TABLES_ON_STARTUP: bool = Field(
        default=False,
        description="If true, create mapped tables on the default database at app startup.",
    )
    LOG_LEVEL: str = Field(default="INFO")

    # Environment label
    ENVIRONMENT: Optional[str] = Field(
        default=None, description="Environment label (dev/test/prod)"
    )

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        """Accept a comma-separated string as well as a list."""
        if v is None:
            return ["*"]
        if isinstance(v, str):
            parts = [p.strip() for p in v.split(",") if p.strip()]
            return parts or ["*"]
        return list(v) or ["*"]

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _normalize_log_level(cls, v):
        """Accept lowercase level names."""
        if isinstance(v, str):
            return v.strip().upper() or "INFO"
        return v


# PUBLIC_INTERFACE
def get_app_settings() -> AppSettings:
    """
    Return a new AppSettings instance populated from environment variables.

    Note:
      A new instance is built on every call so tests can change the environment
      between calls.
    """
    return AppSettings()
