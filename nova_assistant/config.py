"""Configuration management for the Nova assistant."""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="NOVA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    app_name: str = "Nova Assistant"
    host: str = "0.0.0.0"
    port: int = 8000

    # Backend (Supabase project hosting the edge functions and tables)
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: str = ""
    functions_path: str = "/functions/v1"
    conversations_table: str = "nova_conversations"
    user_id: str | None = None

    # Timeouts (seconds); streams have no read timeout
    http_timeout: float = 30.0
    connect_timeout: float = 10.0

    # Assistant behaviour
    completion_streaming: bool = True
    history_window: int = Field(default=5, ge=0)
    default_workflow: str = "feature_discovery"
    in_memory_persistence: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    service_name: str = "nova-assistant"

    @field_validator("supabase_url")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Validate backend URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("supabase_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("functions_path")
    @classmethod
    def validate_functions_path(cls, v: str) -> str:
        return "/" + v.strip("/")

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v

    @property
    def functions_url(self) -> str:
        return f"{self.supabase_url}{self.functions_path}"

    @property
    def rest_url(self) -> str:
        return f"{self.supabase_url}/rest/v1"


@lru_cache
def get_settings() -> Settings:
    return Settings()

