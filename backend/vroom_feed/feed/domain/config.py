"""Tunable configuration for feed assembly and impression recording.

Field names are the lower-cased environment variable names, so
``MAX_REPEATS_PER_PAGE=3`` in the environment (or ``.env``) overrides
``max_repeats_per_page``.
"""

from __future__ import annotations

from datetime import timedelta

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeedConfig(BaseSettings):
    page_size_default: int = Field(default=12, ge=1, le=50)
    page_deadline_ms: int = Field(default=250, gt=0)
    downstream_deadline_ms: int = Field(default=120, gt=0)

    repeat_cooldown_days: int = Field(default=30, ge=1)
    min_repeat_age_days: int = Field(default=7, ge=0)
    max_repeats_per_page: int = Field(default=2, ge=0)
    repeat_safe_prefix: int = Field(default=6, ge=0)
    repeat_min_score: float = 0.5

    freshness_tau_hours: float = Field(default=48.0, gt=0)
    freshness_cliff_days: int = Field(default=14, ge=1)
    freshness_floor: float = 0.01

    epsilon_explore: float = Field(default=0.10, ge=0.0, le=1.0)
    jitter_epsilon: float = Field(default=0.02, ge=0.0)

    max_per_creator_per_page: int = Field(default=2, ge=1)
    diversity_window: int = Field(default=3, ge=1)
    min_refresh_delta: int = Field(default=5, ge=0)

    inventory_waterline: int = Field(default=24, ge=0)
    working_multiple: int = Field(default=3, ge=1)
    trending_horizon_days: int = Field(default=7, ge=1)
    max_upload_duration_ms: int = Field(default=180_000, gt=0)

    session_ttl_seconds: int = Field(default=600, gt=0)
    page_memo_ttl_seconds: int = Field(default=60, gt=0)
    p95_target_ms: int = 200

    viewability_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    viewability_dwell_ms: int = Field(default=500, ge=0)
    ema_alpha: float = Field(default=0.2, gt=0.0, le=1.0)

    recorder_debounce_ms: int = Field(default=2000, ge=0)
    recorder_max_batch: int = Field(default=500, ge=1)
    retention_interval_seconds: int = Field(default=3600, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def repeat_cooldown(self) -> timedelta:
        return timedelta(days=self.repeat_cooldown_days)

    @property
    def min_repeat_age(self) -> timedelta:
        return timedelta(days=self.min_repeat_age_days)

    @property
    def freshness_cliff(self) -> timedelta:
        return timedelta(days=self.freshness_cliff_days)

    @property
    def trending_horizon(self) -> timedelta:
        return timedelta(days=self.trending_horizon_days)

    @property
    def page_deadline(self) -> float:
        return self.page_deadline_ms / 1000.0

    @property
    def downstream_deadline(self) -> float:
        return self.downstream_deadline_ms / 1000.0


feed_config = FeedConfig()


__all__ = ["FeedConfig", "feed_config"]
