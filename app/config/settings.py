"""
Configuration settings for the Chatsetter trigger engine.
Centralizes all environment variables and configuration constants.
"""

import re
from typing import Optional
from pydantic import validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # OpenAI Configuration
    openai_api_key: str = ""
    # Default chat model for replies and first messages
    openai_chat_model: str = "gpt-4o"
    openai_max_tokens: int = 500
    openai_temperature: float = 0.7

    # Messaging gateway (Evolution API compatible)
    messaging_api_url: str = ""
    messaging_api_key: str = ""

    # Server Configuration
    app_base_url: str = "http://localhost:8000"
    port: int = 8000
    cron_secret: Optional[str] = None

    # Database
    database_url: str = "sqlite:///./chatsetter.db"
    sql_echo: bool = False

    log_level: str = "INFO"

    # Trigger engine
    test_mode_minutes: int = 5
    poll_default_lookback_minutes: int = 2
    activecampaign_lookback_minutes: int = 30
    crm_http_timeout_seconds: int = 20

    # Conversation engine
    max_reply_length: int = 1000
    message_history_limit: int = 20
    default_timezone: str = "Europe/Berlin"

    @validator('app_base_url')
    def clean_base_url(cls, v: str) -> str:
        """Strip trailing slashes so callback URLs can be joined safely."""
        return re.sub(r'/+$', '', v)

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
