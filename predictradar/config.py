"""
Configuration management for PredictRadar using Pydantic Settings.

Loads configuration from environment variables with type validation and sane defaults.
"""

from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: str = Field(default="development", description="Environment: development, staging, production")
    debug: bool = Field(default=False, description="Debug mode")

    # Database
    database_url: str = Field(default="sqlite:///predictradar.db", description="SQLAlchemy connection URL")

    # Signal aggregation
    signal_lookback_hours: int = Field(default=24, description="Window of signal items used for one aggregate")
    unknown_source_weight: float = Field(default=0.3, description="Trust weight for signals without a known source")
    source_weights: str = Field(default="", description="Registered source trust weights, e.g. 'reuters=1.0,wsb=0.8'")
    signal_feeds: str = Field(default="", description="Comma-separated JSON signal feed files read by the ingest job")
    model_variants: str = Field(
        default="fundamentals:news,hype:social",
        description="Model variants and the signal channels they consume",
    )

    # Confidence scoring
    confidence_formula: str = Field(default="v2-gated", description="Confidence formula version: v2-gated or v1-legacy")
    volatility_window_days: int = Field(default=7, description="Lookback for daily return volatility")

    # Prediction lifecycle
    prediction_horizon_hours: int = Field(default=24, description="Time between baseline and target")
    baseline_max_age_minutes: int = Field(default=24 * 60, description="Oldest quote accepted as a baseline price")
    flat_threshold_pct: float = Field(default=0.5, description="Absolute % move below which a price is flat")

    # Market data scheduler
    fetch_budget: int = Field(default=60, description="Maximum quote fetches per scheduler cycle")
    fetch_min_interval_seconds: float = Field(default=1.0, description="Minimum delay between quote requests")
    max_consecutive_failures: int = Field(default=5, description="Failures that deactivate an entity")
    quote_source: str = Field(default="yahoo", description="Label stored with fetched quotes")

    # Analytics
    calibration_buckets: str = Field(
        default="0.0,0.4,0.5,0.6,0.7,0.8,0.9,1.0",
        description="Confidence bucket edges for calibration",
    )
    calibration_gap_threshold: float = Field(default=10.0, description="Gap (percentage points) flagged as miscalibrated")
    calibration_min_count: int = Field(default=5, description="Minimum bucket size before flagging miscalibration")

    # Logging
    log_level: str = Field(default="INFO", description="Log level: DEBUG, INFO, WARNING, ERROR")
    log_format: str = Field(default="text", description="Log format: json or text")
    log_file: str = Field(default="", description="Log file path (empty disables file logging)")
    log_rotation: str = Field(default="50 MB", description="Rotate the log file at this size or interval")
    log_retention: str = Field(default="14 days", description="How long rotated log files are kept")

    # Scheduler
    scheduler_enabled: bool = Field(default=True, description="Enable background scheduler")
    ingest_interval_minutes: int = Field(default=30, description="Ingest + aggregate interval")
    predictions_interval_minutes: int = Field(default=60, description="Prediction creation interval")
    fetch_prices_interval_minutes: int = Field(default=2, description="Prioritized quote fetch interval")
    track_interval_minutes: int = Field(default=15, description="Live deviation tracking interval")
    evaluate_interval_minutes: int = Field(default=30, description="Evaluation interval")

    @field_validator("confidence_formula")
    @classmethod
    def validate_formula(cls, v: str) -> str:
        """Only known formula versions are accepted."""
        if v not in ("v2-gated", "v1-legacy"):
            raise ValueError(f"Unknown confidence formula: {v}")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"

    @property
    def source_weight_map(self) -> dict:
        """Parse 'source=weight' pairs into a dict."""
        weights = {}
        for pair in self.source_weights.split(","):
            if not pair.strip():
                continue
            name, _, value = pair.partition("=")
            weights[name.strip()] = float(value)
        return weights

    @property
    def model_variant_map(self) -> dict:
        """Parse 'variant:channel|channel' entries into {variant: [channels]}."""
        variants = {}
        for entry in self.model_variants.split(","):
            if not entry.strip():
                continue
            name, _, channels = entry.partition(":")
            variants[name.strip()] = [c.strip() for c in channels.split("|") if c.strip()]
        return variants

    @property
    def calibration_bucket_edges(self) -> List[float]:
        """Parse comma-separated bucket edges."""
        return [float(edge) for edge in self.calibration_buckets.split(",")]


# Global settings instance
settings = Settings()
