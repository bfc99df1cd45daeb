from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Gateway settings loaded from environment variables.
    Built once and handed to each component at construction.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Archive database
    DATABASE_URL: str = "sqlite:///./chat_records.db"

    LOG_LEVEL: str = "INFO"

    # Messaging platform
    WECHAT_TOKEN: str = ""
    WECHAT_ORIGINAL_ID: str = ""

    # Model backend
    OPENAI_API_KEY: str = ""
    OPENAI_ENDPOINT: str = "https://api.openai.com/v1/chat/completions"
    OPENAI_MODEL: str = "gpt-3.5-turbo"
    OPENAI_TIMEOUT_SECONDS: float = 5.0

    # Conversation context cache
    CONTEXT_TTL_SECONDS: int = 1800
    CONTEXT_MAX_CHARS: int = 3000
    # How often expired contexts of inactive users are swept
    CONTEXT_PURGE_INTERVAL_SECONDS: float = 60.0

    # Fire-and-forget work (archival, login binding)
    BACKGROUND_QUEUE_SIZE: int = 1000
    BACKGROUND_WORKERS: int = 2


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
