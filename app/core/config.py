"""Configuration management for the document relevance engine."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    # Environment variables should be set directly
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")

    # Text analysis providers
    ANTHROPIC_API_KEY: str = Field(default="", description="Anthropic API key")
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")
    TEXT_ANALYSIS_PROVIDER: str = Field(
        default="anthropic", description="Text analysis provider: anthropic or openai"
    )
    ANALYSIS_MODEL: str = Field(
        default="claude-haiku-4-5-20251001", description="Model for document fingerprinting"
    )
    DESCRIPTION_MODEL: str = Field(
        default="claude-haiku-4-5-20251001", description="Model for relationship descriptions"
    )
    LLM_TIMEOUT_SECONDS: float = Field(
        default=20.0, description="Timeout for a single text analysis call"
    )

    # Admin API key for internal tools
    ADMIN_API_KEY: str = Field(default="", description="Admin API key (X-API-Key header)")

    # Environment
    RELEVANCE_ENV: str = Field(default="dev", description="Environment: dev, staging, prod")

    # Analysis limits
    ANALYSIS_MAX_CHARS: int = Field(
        default=5000, description="Max characters of document text sent for analysis"
    )
    DESCRIPTION_EXCERPT_CHARS: int = Field(
        default=1500, description="Max characters per document excerpt in descriptions"
    )

    # Background queue configuration
    QUEUE_CONCURRENCY: int = Field(default=3, description="Max relationship jobs running at once")
    QUEUE_MAX_ATTEMPTS: int = Field(default=3, description="Attempts before a job is dropped")
    QUEUE_BACKOFF_SECONDS: list[float] = Field(
        default=[1.0, 5.0, 30.0], description="Delay before each retry, by attempt"
    )
    START_WORKERS_ON_BOOT: bool = Field(
        default=True, description="Start queue workers with the API process"
    )

    # Upload-time auto linking
    AUTO_LINK_LIMIT: int = Field(
        default=5, description="Max existing documents linked when a document is uploaded"
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    return Settings()
