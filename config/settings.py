"""
Application settings loaded from environment variables.

Uses pydantic-settings for validation and type safety.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings.

    All values loaded from .env file or environment variables.
    Validation happens automatically on startup.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),  # Check current dir, then parent
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"  # Ignore extra env vars
    )

    # ===================
    # STORAGE
    # ===================
    storage_backend: str = Field(
        default="memory",
        pattern="^(memory|supabase)$",
        description="Record store backend"
    )
    supabase_url: Optional[str] = Field(
        None,
        description="Supabase project URL"
    )
    supabase_key: Optional[str] = Field(
        None,
        description="Supabase anon/public key"
    )
    supabase_service_key: Optional[str] = Field(
        None,
        description="Supabase service role key; used instead of the anon key when set"
    )
    storage_bucket: str = Field(
        default="attendance-uploads",
        description="Storage bucket holding uploaded attendance files"
    )

    # ===================
    # DIRECTORY
    # ===================
    directory_file: Optional[str] = Field(
        None,
        description="CSV of directory entries loaded by the memory backend"
    )
    directory_page_size: int = Field(
        default=500,
        ge=10,
        le=5000,
        description="Entries fetched per directory page"
    )

    # ===================
    # MATCHING ORACLE
    # ===================
    oracle_provider: str = Field(
        default="claude",
        pattern="^(claude|none)$",
        description="External name-matching oracle"
    )
    anthropic_api_key: Optional[str] = Field(
        None,
        description="Anthropic API key for the Claude oracle"
    )
    oracle_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Claude model used for name matching"
    )
    oracle_max_tokens: int = Field(
        default=512,
        ge=64,
        le=4096,
        description="Maximum tokens in an oracle response"
    )
    oracle_timeout_seconds: float = Field(
        default=12.0,
        gt=0,
        le=60,
        description="Hard timeout for one oracle call"
    )
    oracle_job_budget_seconds: float = Field(
        default=60.0,
        ge=0,
        le=3600,
        description="Cumulative oracle time allowed per job"
    )
    oracle_max_candidates: int = Field(
        default=25,
        ge=1,
        le=200,
        description="Directory entries sent to the oracle per row"
    )

    # ===================
    # MATCHING
    # ===================
    match_confidence_threshold: float = Field(
        default=0.7,
        ge=0,
        le=1,
        description="Default acceptance threshold before feedback adjustments"
    )
    suggestion_limit: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Suggestions carried on an unmatched row"
    )
    pattern_top_k: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Candidates kept by the pattern stage"
    )
    auto_verify_confidence: float = Field(
        default=0.9,
        ge=0,
        le=1,
        description="Matched rows at or above this are flagged verified"
    )
    learned_alias_confidence: float = Field(
        default=0.95,
        ge=0,
        le=1,
        description="Score given to a name confirmed by earlier feedback"
    )
    ambiguity_margin: float = Field(
        default=0.02,
        ge=0,
        le=1,
        description="Two acceptable pattern candidates this close are left for review"
    )
    row_concurrency: int = Field(
        default=8,
        ge=1,
        le=64,
        description="Rows matched concurrently within one job"
    )

    # ===================
    # COLUMN DETECTION
    # ===================
    column_sample_rows: int = Field(
        default=20,
        ge=1,
        le=500,
        description="Data rows sampled for column detection"
    )
    column_min_confidence: float = Field(
        default=0.3,
        ge=0,
        le=1,
        description="Minimum confidence for a column to take a role"
    )

    # ===================
    # FEEDBACK LEARNING
    # ===================
    feedback_learning_enabled: bool = Field(
        default=True,
        description="Let feedback move per-organization thresholds"
    )
    feedback_window: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Most recent feedback records used for recomputation"
    )
    feedback_max_adjustment: float = Field(
        default=0.15,
        ge=0,
        le=0.5,
        description="Largest distance the threshold may drift from the default"
    )
    threshold_min: float = Field(
        default=0.5,
        ge=0,
        le=1,
        description="Lower clamp for learned thresholds"
    )
    threshold_max: float = Field(
        default=0.95,
        ge=0,
        le=1,
        description="Upper clamp for learned thresholds"
    )
    feedback_dedupe_bucket_seconds: int = Field(
        default=300,
        ge=1,
        le=86400,
        description="Window in which identical feedback counts once"
    )

    # ===================
    # UPLOADS
    # ===================
    max_upload_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1024,
        description="Maximum accepted upload size"
    )
    allowed_file_types: str = Field(
        default="csv,tsv,txt,xlsx",
        description="Comma separated list of accepted extensions"
    )

    # ===================
    # APP SETTINGS
    # ===================
    environment: str = Field(
        default="development",
        pattern="^(development|staging|production)$",
        description="Application environment"
    )
    debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="API host"
    )
    api_port: int = Field(
        default=8000,
        ge=1000,
        le=65535,
        description="API port"
    )
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma separated list of allowed browser origins"
    )

    @model_validator(mode="after")
    def check_threshold_range(self) -> "Settings":
        if not (self.threshold_min <= self.match_confidence_threshold <= self.threshold_max):
            raise ValueError(
                "match_confidence_threshold must lie within [threshold_min, threshold_max]"
            )
        return self

    # ===================
    # COMPUTED PROPERTIES
    # ===================
    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def oracle_configured(self) -> bool:
        """Check if the Claude oracle can be used."""
        return self.oracle_provider == "claude" and bool(self.anthropic_api_key)

    @property
    def allowed_extensions(self) -> list[str]:
        return [
            ext.strip().lower().lstrip(".")
            for ext in self.allowed_file_types.split(",")
            if ext.strip()
        ]

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload.

    Returns:
        Settings: Application settings

    Raises:
        ValidationError: If env vars are invalid
    """
    return Settings()


# For convenient imports: from config.settings import settings
settings = get_settings()
