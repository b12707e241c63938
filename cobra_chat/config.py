from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

class Settings(BaseSettings):
    ENVIRONMENT: str = "development"
    PORT: int = 8000
    HOST: str = "0.0.0.0"
    LOG_LEVEL: str = "INFO"

    # Gemini Conf (required: generation and remote embeddings)
    GEMINI_API_KEY: str
    GEMINI_CHAT_MODEL: str = "gemini-2.5-flash"
    GEMINI_EMBEDDING_MODEL: str = "models/text-embedding-004"

    # Fallback generator
    GROQ_API_KEY: Optional[str] = None
    GROQ_CHAT_MODEL: str = "llama-3.3-70b-versatile"

    # Optional DB Conf (in-memory store when unset)
    SUPABASE_URL: Optional[str] = None
    SUPABASE_KEY: Optional[str] = None
    SUPABASE_TABLE: str = "kv_store"

    # Semantic cache / knowledge base
    LOCAL_EMBEDDING_DIMENSION: int = 300
    CACHE_THRESHOLD_REMOTE: float = 0.75
    CACHE_THRESHOLD_LOCAL: float = 0.85
    GUIDELINES_THRESHOLD: float = 0.70
    GUIDELINES_TOP_K: int = 3
    CACHE_PRUNE_MAX_AGE_DAYS: int = 30
    CACHE_PRUNE_MIN_HITS: int = 2

    # Usage limits
    CHAT_LIMIT: int = 5
    CHAT_LIMIT_WINDOW_HOURS: int = 5

    # Input limits
    MAX_MESSAGE_LENGTH: int = 4000
    MAX_FILE_SIZE_MB: int = 10
    MAX_DOCUMENT_CHARS: int = 60000
    MAX_HISTORY_MESSAGES: int = 20

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """Loads settings once per process. Raises if GEMINI_API_KEY is missing."""
    return Settings()
