"""
Catalog Autotune - Configuration
================================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Catalog Autotune"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./catalog_autotune.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Catalog Pipeline
    # ==========================================================================
    CATALOG_INPUT_PATH: str | None = None
    STORE_ID: str = "default"
    OUTPUT_DIR: str = "outputs"
    CATEGORY_RULES_PATH: str = "data/category_rules.json"
    FALLBACK_CATEGORY_SLUG: str = "uncategorized"

    # ==========================================================================
    # Canary Loops
    # ==========================================================================
    CANARY_SAMPLE_SIZE: int = Field(default=200, gt=0)
    CANARY_FIXED_RATIO: float = Field(default=0.3, ge=0, le=1)
    CANARY_RANDOM_SEED: int = 42
    CANARY_AUTO_ACCEPT_THRESHOLD: float = Field(default=0.75, ge=0, le=1)
    CANARY_SUBSET_PATH: str = "outputs/canary_input.csv"
    CANARY_STATE_PATH: str = "outputs/canary_state.json"

    # ==========================================================================
    # Evaluation Harness
    # ==========================================================================
    HARNESS_MAX_FALLBACK_RATE: float = 0.06
    HARNESS_MAX_NEEDS_REVIEW_RATE: float = 0.35
    HARNESS_MIN_L1_DELTA: float = 0.0
    HARNESS_MIN_L2_DELTA: float = 0.0
    HARNESS_MIN_L3_DELTA: float = 0.0

    # ==========================================================================
    # Self-Improvement Loop
    # ==========================================================================
    SELF_IMPROVE_MAX_LOOPS: int = Field(default=10, gt=0)
    SELF_IMPROVE_RETRY_LIMIT: int = Field(default=1, ge=0)
    SELF_IMPROVE_AUTO_APPLY_POLICY: Literal["if_gate_passes", "manual"] = "if_gate_passes"
    SELF_IMPROVE_WORKER_POLL_SECONDS: float = Field(default=5.0, gt=0)
    SELF_IMPROVE_STALE_AFTER_MINUTES: int = Field(default=30, gt=0)
    SELF_IMPROVE_MAX_PROPOSALS_PER_LOOP: int = Field(default=40, gt=0)
    SELF_IMPROVE_MAX_STRUCTURAL_CHANGES_PER_LOOP: int = Field(default=2, ge=0)
    SELF_IMPROVE_POST_APPLY_WATCH_LOOPS: int = Field(default=2, ge=0)
    SELF_IMPROVE_ROLLBACK_ON_DEGRADE: bool = True
    SELF_IMPROVE_CANARY_RETRY_DEGRADE_ENABLED: bool = True
    SELF_IMPROVE_CANARY_RETRY_MIN_PROPOSAL_CONFIDENCE: float = Field(default=0.75, ge=0, le=1)
    SELF_IMPROVE_CANARY_PARTIAL_APPLY_THRESHOLD: float = Field(default=0.7, ge=0, le=1)
    SELF_IMPROVE_GATE_MIN_SAMPLE_SIZE: int = Field(default=50, ge=0)

    # "package.module:factory" paths resolved by the worker
    SELF_IMPROVE_PIPELINE_RUNNER: str | None = None
    SELF_IMPROVE_CANARY_BUILDER: str | None = None

    @model_validator(mode="after")
    def check_canary_thresholds(self) -> "Settings":
        if self.SELF_IMPROVE_CANARY_PARTIAL_APPLY_THRESHOLD > self.CANARY_AUTO_ACCEPT_THRESHOLD:
            raise ValueError(
                "SELF_IMPROVE_CANARY_PARTIAL_APPLY_THRESHOLD must be less than or equal to "
                "CANARY_AUTO_ACCEPT_THRESHOLD"
            )
        return self

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
