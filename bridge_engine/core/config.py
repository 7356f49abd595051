"""Configuration management for the Task Bridge Engine."""

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

    # OpenAI configuration (required)
    OPENAI_API_KEY: str = Field(..., description="OpenAI API key")

    # Environment
    BRIDGE_ENGINE_ENV: str = Field(default="dev", description="Environment: dev, staging, prod")

    # Embedding configuration
    EMBEDDING_MODEL: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )
    EMBEDDING_DIM: int = Field(default=1536, description="Embedding vector dimension")

    # Gap detection
    GAP_TIME_THRESHOLD_DAYS: float = Field(
        default=7.0, description="Days between tasks above which time_gap fires"
    )
    WORKFLOW_VOCABULARY_PATH: str | None = Field(
        default=None, description="JSON file overriding the bundled workflow/skill vocabulary"
    )

    # Bridging task generation
    BRIDGING_MODEL: str = Field(default="gpt-4o-mini", description="Model for bridging tasks")
    BRIDGING_TEMPERATURE: float = Field(default=0.3, description="Bridging generation temperature")
    BRIDGING_SEARCH_THRESHOLD: float = Field(
        default=0.6, description="Min similarity for example tasks fed to the generator"
    )
    BRIDGING_SEARCH_TOP_K: int = Field(default=5, description="Example tasks fed to the generator")

    # Graph-safe insertion
    DUPLICATE_SIMILARITY_THRESHOLD: float = Field(
        default=0.9, description="Similarity above which a bridging task is a duplicate"
    )
    DUPLICATE_SEARCH_TOP_K: int = Field(
        default=3, description="Nearest tasks checked during duplicate detection"
    )
    REQUIRE_SAME_DOCUMENT: bool = Field(
        default=False,
        description="Reject candidates whose predecessor and successor come from different documents",
    )

    # Clustering
    CLUSTER_SIMILARITY_THRESHOLD: float = Field(
        default=0.75, description="Default cosine similarity threshold for clustering"
    )

    # Gap-filling orchestration
    MAX_CONCURRENT_GENERATIONS: int = Field(
        default=3, description="Max bridging generations running at once"
    )
    GENERATION_MAX_RETRIES: int = Field(
        default=1, description="Retries per gap on transient generation errors"
    )
    GENERATION_RETRY_DELAY: float = Field(
        default=1.0, description="Initial backoff delay in seconds"
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
