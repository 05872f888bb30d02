"""
Application configuration using Pydantic Settings.
"""
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from GROK_* environment variables."""

    api_key: Optional[str] = None
    api_url: str = "https://api.x.ai/v1"
    model: str = "grok-beta"
    timeout_ms: int = 30000
    max_retries: int = Field(default=3, ge=0)
    use_offline_responder: bool = False

    max_tokens: int = 2000
    temperature: float = 0.7
    top_p: float = 0.9
    history_limit: int = 10

    drain_spacing_ms: int = 500
    offline_delay_ms: int = 1500
    project_context: Optional[str] = None

    database_path: str = "data/chat.db"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="GROK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def offline_mode(self) -> bool:
        """True when requests must never reach the network."""
        return self.use_offline_responder or not self.api_key


# Global settings instance
settings = Settings()
