"""Configuration management for the curriculum engine."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required): document registry, projects, versions, blobs
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")

    # Postgres with pgvector (required): chunk store
    DATABASE_URL: str = Field(..., description="Postgres connection URL for the chunk store")
    DB_POOL_MIN: int = Field(default=1, description="Minimum pooled chunk store connections")
    DB_POOL_MAX: int = Field(default=5, description="Maximum pooled chunk store connections")

    # Environment
    CURRICULUM_ENV: str = Field(default="dev", description="Environment: dev, test, staging, prod")

    # LLM configuration
    LLM_PROVIDER: str = Field(default="openai", description="Chat provider: openai or anthropic")
    LLM_BASE_URL: str = Field(
        default="https://api.openai.com/v1", description="OpenAI-compatible chat base URL"
    )
    LLM_API_KEY: str = Field(default="", description="API key for the chat provider")
    LLM_MODEL: str = Field(default="gpt-4o-mini", description="Chat model")
    ANTHROPIC_API_KEY: str = Field(default="", description="Anthropic API key")
    ANTHROPIC_MODEL: str = Field(
        default="claude-3-5-haiku-20241022", description="Anthropic chat model"
    )
    LLM_TEMPERATURE: float = Field(default=0.7, description="Sampling temperature")
    LLM_MAX_TOKENS: int = Field(default=2000, description="Max completion tokens")
    LLM_MAX_RETRIES: int = Field(default=3, description="Retries for retryable chat failures")
    LLM_CONCURRENCY: int = Field(default=3, description="Concurrent LLM calls process-wide")
    GENERATION_TIMEOUT_SECONDS: float = Field(
        default=45.0, description="Total timeout for non-streaming generation"
    )
    STREAM_IDLE_TIMEOUT_SECONDS: float = Field(
        default=120.0, description="Idle timeout between streamed tokens"
    )

    # Embedding configuration
    EMBEDDING_PROVIDER: str = Field(
        default="dashscope", description="Embedding dialect: dashscope or openai"
    )
    EMBEDDING_BASE_URL: str = Field(
        default="https://dashscope.aliyuncs.com/api/v1", description="Embedding API base URL"
    )
    EMBEDDING_API_KEY: str = Field(default="", description="Embedding API key")
    EMBEDDING_MODEL: str = Field(default="text-embedding-v3", description="Embedding model")
    EMBEDDING_DIM: int = Field(default=1536, description="Embedding vector dimension")
    EMBEDDING_MODE: str = Field(default="strict", description="Failure mode: strict or lenient")
    EMBEDDING_TIMEOUT_SECONDS: float = Field(default=30.0, description="Embedding call timeout")
    EMBEDDING_MAX_CHARS: int = Field(default=2000, description="Per-text character budget")
    EMBEDDING_BATCH_SIZE: int = Field(default=20, description="Texts per embedding request")

    # Document processing
    CHUNK_SIZE: int = Field(default=500, description="Chunk window in characters")
    CHUNK_OVERLAP: int = Field(default=100, description="Chunk overlap in characters")
    MAX_PROCESSING_ATTEMPTS: int = Field(
        default=5, description="Lifetime processing attempts per document"
    )
    DOCUMENT_BUCKET: str = Field(default="kb-documents", description="Storage bucket for uploads")

    # Generation
    RAG_TOP_K: int = Field(default=5, description="Chunks retrieved per generation")
    GENERATION_CACHE_TTL_SECONDS: float = Field(
        default=120.0, description="Result cache lifetime for identical requests"
    )

    # Web search
    WEB_SEARCH_ENABLED: bool = Field(default=False, description="Enable web search")
    SERPER_API_KEY: str | None = Field(default=None, description="Serper API key")
    FIRECRAWL_API_KEY: str | None = Field(default=None, description="Firecrawl API key")
    JINA_API_KEY: str | None = Field(default=None, description="Jina reader API key")
    WEB_SEARCH_MAX_K: int = Field(default=5, description="Max web results (1-20)")
    WEB_SEARCH_LANGUAGE: str = Field(default="zh-CN", description="Search language")
    WEB_SEARCH_REGION: str = Field(default="", description="Search region code")
    WEB_SEARCH_USE_FIRECRAWL: bool = Field(default=True, description="Enrich via Firecrawl")
    WEB_SEARCH_USE_JINA: bool = Field(default=True, description="Enrich via Jina fallback")


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
