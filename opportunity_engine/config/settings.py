from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings
from typing import Dict, List
from pathlib import Path

from opportunity_engine.errors import ConfigurationError


DEFAULT_CATEGORY_TTL: Dict[str, int] = {
    "market_trends": 3600,       # 1 hour
    "technology": 7200,          # 2 hours
    "investment": 1800,          # 30 min, volatile
    "regulation": 86400,         # 24 hours, stable
    "consumer_behavior": 3600,
    "competition": 3600,
    "macroeconomics": 1800,      # 30 min, volatile
}

DEFAULT_CRITERIA_WEIGHTS: Dict[str, float] = {
    "logical_consistency": 0.35,
    "actionable_specificity": 0.35,
    "data_support": 0.15,
    "clarity": 0.15,
}


class Settings(BaseSettings):
    """Global configuration for the Opportunity Report Engine"""

    # Project paths
    BASE_DIR: Path = Path(__file__).parent.parent.parent
    REPORTS_DIR: Path = BASE_DIR / "reports"
    LOGS_DIR: Path = BASE_DIR / "logs"

    # API Keys (from .env)
    DEEPSEEK_API_KEY: str = ""
    GEMINI_API_KEY: str = ""
    SERPER_API_KEY: str = ""           # Paid web search

    # Fan-out
    MAX_PARALLEL_REQUESTS: int = 5
    MAX_WORK_ITEMS: int = 5
    LOOKUP_TIMEOUT_SECONDS: float = 30.0
    GENERATION_TIMEOUT_SECONDS: float = 120.0
    RUN_DEADLINE_SECONDS: float = 600.0  # 10 minutes
    MAX_FAILURE_FRACTION: float = 0.5

    # Budget (yen per month)
    MONTHLY_BUDGET: float = 2000.0
    ALERT_THRESHOLD_FRACTION: float = 0.8
    ENFORCE_BUDGET_LIMIT: bool = True

    # Quality gate
    QUALITY_PASSING_THRESHOLD: float = 80.0
    MAX_REVISIONS: int = 2

    # Caching
    CACHE_MAX_BYTES: int = 100 * 1024 * 1024
    CACHE_DEFAULT_TTL: int = 3600
    CACHE_SWEEP_INTERVAL: float = 300.0
    CACHE_TTL_BY_CATEGORY: Dict[str, int] = dict(DEFAULT_CATEGORY_TTL)
    REAL_TIME_CATEGORIES: List[str] = ["investment", "macroeconomics"]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


class PipelineConfig(BaseModel):
    """
    Per-run configuration.

    Built from the global settings and overridden per call; every
    pipeline instance owns one, so runs never share mutable config.
    """

    max_parallel_requests: int = Field(default=5, ge=1)
    monthly_budget: float = 2000.0
    alert_threshold_fraction: float = Field(default=0.8, gt=0, le=1)
    quality_passing_threshold: float = Field(default=80.0, ge=0, le=100)
    max_revisions: int = Field(default=2, ge=0)
    cache_ttl_by_category: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_CATEGORY_TTL))
    real_time_categories: List[str] = Field(default_factory=lambda: ["investment", "macroeconomics"])

    max_work_items: int = Field(default=5, ge=0)
    lookup_timeout_seconds: float = Field(default=30.0, gt=0)
    generation_timeout_seconds: float = Field(default=120.0, gt=0)
    run_deadline_seconds: float = Field(default=600.0, gt=0)
    max_failure_fraction: float = Field(default=0.5, ge=0, le=1)
    cache_max_bytes: int = Field(default=100 * 1024 * 1024, gt=0)
    cache_default_ttl: int = Field(default=3600, gt=0)
    cache_sweep_interval: float = Field(default=300.0, gt=0)
    criteria_weights: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_CRITERIA_WEIGHTS))
    enforce_budget_limit: bool = True

    @field_validator("monthly_budget")
    @classmethod
    def _positive_budget(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("monthly_budget must be positive")
        return value

    @field_validator("cache_ttl_by_category")
    @classmethod
    def _positive_ttls(cls, value: Dict[str, int]) -> Dict[str, int]:
        for category, ttl in value.items():
            if ttl <= 0:
                raise ValueError(f"TTL for '{category}' must be positive")
        return value

    @model_validator(mode="after")
    def _weights_sum_to_one(self):
        total = sum(self.criteria_weights.values())
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"criteria weights must sum to 1 (got {total:.4f})")
        return self

    @classmethod
    def from_settings(cls, source: "Settings" = None, **overrides) -> "PipelineConfig":
        """Build a run config from settings plus keyword overrides."""
        source = source or settings
        values = {
            "max_parallel_requests": source.MAX_PARALLEL_REQUESTS,
            "monthly_budget": source.MONTHLY_BUDGET,
            "alert_threshold_fraction": source.ALERT_THRESHOLD_FRACTION,
            "quality_passing_threshold": source.QUALITY_PASSING_THRESHOLD,
            "max_revisions": source.MAX_REVISIONS,
            "cache_ttl_by_category": dict(source.CACHE_TTL_BY_CATEGORY),
            "real_time_categories": list(source.REAL_TIME_CATEGORIES),
            "max_work_items": source.MAX_WORK_ITEMS,
            "lookup_timeout_seconds": source.LOOKUP_TIMEOUT_SECONDS,
            "generation_timeout_seconds": source.GENERATION_TIMEOUT_SECONDS,
            "run_deadline_seconds": source.RUN_DEADLINE_SECONDS,
            "max_failure_fraction": source.MAX_FAILURE_FRACTION,
            "cache_max_bytes": source.CACHE_MAX_BYTES,
            "cache_default_ttl": source.CACHE_DEFAULT_TTL,
            "cache_sweep_interval": source.CACHE_SWEEP_INTERVAL,
            "enforce_budget_limit": source.ENFORCE_BUDGET_LIMIT,
        }
        values.update(overrides)
        return cls.build(**values)

    @classmethod
    def build(cls, **values) -> "PipelineConfig":
        """Validate values, converting pydantic errors into ConfigurationError."""
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e


# Create singleton instance
settings = Settings()
