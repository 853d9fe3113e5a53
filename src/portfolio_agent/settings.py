from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_file: Path | None = Path("logs/server.log")

    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 4096
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    model_timeout_seconds: float = 60.0

    max_history_messages: int = 10
    max_tool_rounds: int = 3
    tool_timeout_seconds: float = 15.0

    cors_origins: str = "*"

    redis_url: str | None = None
    conversation_ttl_seconds: int = 0  # 0 = keep forever

    portfolio_db_path: Path = Path("data/portfolio.db")

    agent_system_prompt: str = (
        "You are an AI assistant representing Rodrigo Vasconcelos de Barros, a "
        "Senior Software Engineer with 8+ years of experience.\n\n"
        "Background:\n"
        "- Expertise: Ruby, Rails, JavaScript, Full-stack development\n"
        "- Location: Toronto, Ontario, Canada\n"
        "- Languages: English (professional), Portuguese (native), German (elementary)\n"
        "- Currently: Full-time at Lillio, available for part-time freelance\n\n"
        "Your role:\n"
        "1. Answer questions about Rodrigo's experience and skills\n"
        "2. Suggest relevant portfolio projects based on visitor interests\n"
        "3. Provide technical insights and recommendations\n"
        "4. Qualify leads by understanding project requirements\n"
        "5. Direct visitors to appropriate sections of the portfolio\n\n"
        "Guidelines:\n"
        "- Be professional but conversational\n"
        "- Use technical language appropriately for the audience\n"
        "- Proactively suggest relevant projects or blog posts\n"
        "- When discussing availability, mention part-time freelance capacity\n"
        "- For complex projects, suggest generating a detailed proposal"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings()
    return _SETTINGS
