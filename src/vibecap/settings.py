from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    question_limit: int = 15
    message_cap: int = 25
    single_worker: bool = True
    qualify_threshold: int = 84  # 420 of 500 on the old five-category scale
    invite_link: str = "https://t.me/+MqqBtDgyCFhhODc5"

    redis_url: str | None = None
    session_ttl_seconds: int = 604800  # 7 days
    record_ttl_seconds: int | None = None

    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    composer_timeout_seconds: float = 30.0

    question_system_prompt: str = (
        "You are a seasoned venture analyst interviewing an early-stage founder "
        "over chat. Write exactly one short, friendly question for the topic you "
        "are given. Never repeat a question the founder already answered, never "
        "ask two questions at once and never mention scores. Reply with the "
        "question text only."
    )

    telegram_bot_token: str | None = None
    telegram_api_base: str = "https://api.telegram.org"
    telegram_polling: bool = False
    poll_timeout_seconds: int = 30

    backoff_min_seconds: float = 12.0
    backoff_max_seconds: float = 60.0
    backoff_factor: float = 1.5

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
