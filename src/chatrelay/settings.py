from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 3000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_dir: Path = Path("logs")

    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    max_tokens: int = 8192
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    model_retry_attempts: int = 3

    system_prompt: str = (
        "You are a friendly and helpful travel guide. You help people find "
        "good travel deals and package holidays.\n\n"
        "Ask about travel dates, number of travellers and the kind of trip "
        "they dream of before searching. Use the available tools to look up "
        "offers, and never invent prices or availability.\n\n"
        "Keep your answers short, warm and concrete."
    )
    prompt_timezone: str = "Europe/Copenhagen"
    fallback_response: str = "I could not generate a response. Please try again."

    max_history_length: int = 20
    session_timeout_seconds: int = 86400  # 24 hours
    session_cleanup_interval_seconds: int = 1800  # 30 minutes

    max_context_messages: int = 15
    cache_budget: int = 3
    max_tool_iterations: int = 25

    # "name=command arg ...;name=command arg ..."
    mcp_servers: str | None = None

    cors_origins: str = "*"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
