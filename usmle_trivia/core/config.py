from typing import Dict, List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables or .env.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"  # Ignore extra fields in .env file
    )

    # -------------------------
    # Application
    # -------------------------
    PROJECT_NAME: str = "USMLE Trivia API"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    CORS_ORIGINS: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])

    # -------------------------
    # Hosted backend (Supabase)
    # -------------------------
    BACKEND: str = Field(
        default="supabase",
        description="Backend adapter: 'supabase' or 'memory'"
    )
    SUPABASE_URL: str = "http://localhost:54321"
    SUPABASE_ANON_KEY: str = ""

    # Only the out-of-band scripts use this key. The API never sends it.
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None

    BACKEND_TIMEOUT_SECONDS: float = Field(
        default=12.0,
        gt=0,
        le=60,
        description="Per-request timeout for backend calls"
    )

    # -------------------------
    # Redis (drafts + ARQ)
    # -------------------------
    REDIS_URL: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for quiz drafts and the task queue"
    )
    DRAFT_STORE: str = Field(
        default="redis",
        description="Draft store: 'redis' or 'memory'"
    )
    DRAFT_TTL_SECONDS: int = Field(
        default=7 * 24 * 3600,
        ge=60,
        description="How long an unfinished quiz draft is kept"
    )

    # =========================================================
    # Retry / Backoff
    # =========================================================
    RETRY_JITTER_MS: int = Field(
        default=500,
        ge=0,
        le=5000,
        description="Upper bound of the random jitter added to each retry delay"
    )

    # =========================================================
    # Quiz rules
    # =========================================================
    # session_type -> "points" (sum of points for correct answers)
    #              or "accuracy" (percentage of correct answers)
    SCORING_RULES: Dict[str, str] = Field(
        default_factory=lambda: {
            "quick": "points",
            "custom": "points",
            "self_paced": "points",
            "timed": "accuracy",
        }
    )

    RECOVERY_INTERVAL_MINUTES: int = Field(
        default=5,
        ge=1,
        le=60,
        description="How often the worker retries unsaved quiz completions"
    )
    RECOVERY_DEFER_SECONDS: int = Field(
        default=60,
        ge=0,
        description="Delay before an on-demand recovery run queued by the API"
    )

    @field_validator("BACKEND")
    def validate_backend(cls, v):
        allowed = {"supabase", "memory"}
        if v not in allowed:
            raise ValueError(f"BACKEND must be one of: {allowed}")
        return v

    @field_validator("DRAFT_STORE")
    def validate_draft_store(cls, v):
        allowed = {"redis", "memory"}
        if v not in allowed:
            raise ValueError(f"DRAFT_STORE must be one of: {allowed}")
        return v

    @field_validator("SCORING_RULES")
    def validate_scoring_rules(cls, v):
        for session_type, rule in v.items():
            if rule not in ("points", "accuracy"):
                raise ValueError(
                    f"Unknown scoring rule '{rule}' for session type '{session_type}'"
                )
        return v

    @field_validator("SUPABASE_URL")
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")


settings = Settings()
