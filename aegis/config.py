"""
Aegis Gateway — Configuration via Pydantic Settings.

All settings are loaded from environment variables or .env file
once at startup and treated as read-only afterwards.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class DetectionMode(str, Enum):
    """Which detector answers for the consumer loop."""
    RULES = "rules"
    ML = "ml"
    HYBRID = "hybrid"     # rules first, ML as fallback


class Settings(BaseSettings):
    """Application-wide settings loaded from env / .env."""

    # ── General ──────────────────────────────────────────────
    app_name: str = "Aegis Gateway"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"
    environment: str = "dev"

    # ── Detection mode ───────────────────────────────────────
    detection_mode: DetectionMode = DetectionMode.HYBRID

    # ── Feature stream ───────────────────────────────────────
    feature_queue_capacity: int = Field(
        default=1000, description="Max buffered feature events before dropping the oldest",
    )
    seed_file: Optional[str] = Field(
        default=None, description="YAML file of feature events replayed at startup",
    )

    # ── Rule thresholds ──────────────────────────────────────
    rps_threshold: float = Field(
        default=100.0, description="Requests per second per (client, route)",
    )
    four_xx_threshold: int = Field(
        default=20, description="4xx responses per error window",
    )
    five_xx_threshold: int = Field(
        default=5, description="5xx responses per error window",
    )
    waf_threshold: int = Field(
        default=0, description="WAF blocks per error window",
    )
    ua_entropy_threshold: float = Field(
        default=0.0, description="User-Agent entropy floor in bits (0 disables)",
    )

    # ── Windows ──────────────────────────────────────────────
    rps_window_seconds: int = 1
    error_window_seconds: int = 60
    window_ttl_minutes: int = Field(
        default=10, description="Idle minutes before a (client, route) window is evicted",
    )
    window_prune_interval_seconds: int = 60
    max_tracked_windows: int = 50_000

    # ── ML detector ──────────────────────────────────────────
    ml_algorithm: str = Field(
        default="pca", description="Outlier model: pca | isolation_forest",
    )
    pca_rank: int = 3
    baseline_sample_size: int = Field(
        default=500, description="Clean samples collected before first training",
    )
    training_window_minutes: int = Field(
        default=60, description="Age limit of samples used for retraining",
    )
    retrain_interval_minutes: float = 5.0
    score_quantile: float = Field(
        default=0.995, description="Quantile of training scores used as threshold",
    )
    min_samples_guard: int = Field(
        default=100, description="Skip a retrain cycle below this many fresh samples",
    )
    min_variance_guard: float = Field(
        default=1e-6, description="Below this total variance, use fallback RPS scoring",
    )
    baseline_buffer_cap: int = Field(
        default=20_000, description="Hard cap on buffered baseline vectors",
    )
    scorer_pool_size: int = 8
    retrain_grace_seconds: float = 5.0

    # ── Persistence ──────────────────────────────────────────
    model_path: str = "models/anomaly_model.pkl"
    threshold_path: str = "models/anomaly_threshold.txt"

    # ── Downstream ───────────────────────────────────────────
    anomaly_history_size: int = 1000
    incident_max_events: int = 50
    webhook_url: Optional[str] = None

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"debug", "info", "warning", "error", "critical"}
        if v.lower() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v.lower()

    @field_validator("score_quantile")
    @classmethod
    def validate_quantile(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("score_quantile must be in (0, 1]")
        return v

    @field_validator("feature_queue_capacity", "baseline_sample_size", "baseline_buffer_cap", "scorer_pool_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_baseline_sizes(self) -> "Settings":
        if self.baseline_buffer_cap < self.baseline_sample_size:
            raise ValueError("baseline_buffer_cap must be at least baseline_sample_size")
        if self.baseline_buffer_cap < self.min_samples_guard:
            raise ValueError("baseline_buffer_cap must be at least min_samples_guard")
        return self

    @property
    def fallback_marker_path(self) -> str:
        return self.model_path + ".fallback"

    model_config = {
        "env_prefix": "AEGIS_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }


# Singleton
settings = Settings()
