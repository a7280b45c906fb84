"""Request/response schemas for the feed API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from vroom_feed.feed.domain import models
from vroom_feed.feed.domain.config import feed_config


class FeedRequest(BaseModel):
    viewer_id: str = Field(min_length=1)
    page_size: int = Field(default_factory=lambda: feed_config.page_size_default, ge=1, le=50)
    cursor: Optional[str] = None
    session_id: str = Field(min_length=1)
    session_opened_at: datetime
    refresh_nonce: int = Field(default=0, ge=0)
    force_refresh: bool = False
    locale: Optional[str] = None
    connection: models.Connection = models.Connection.UNKNOWN
    client_hour: Optional[int] = Field(default=None, ge=0, le=23)

    @field_validator("session_opened_at")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("session_opened_at must be timezone-aware")
        return value

    def viewer_context(self) -> models.ViewerContext:
        return models.ViewerContext(
            locale=self.locale,
            connection=self.connection,
            client_hour=self.client_hour,
        )


class Performance(BaseModel):
    elapsed_ms: float
    cache_lookup_ms: float = 0.0
    db_query_ms: float = 0.0
    deadline_exceeded: bool = False
    skipped_tiers: list[str] = Field(default_factory=list)


class VariationStats(BaseModel):
    previous_count: int
    current_count: int
    different_count: int
    variation: float
    low_variation: bool


class FeedResponse(BaseModel):
    items: list[models.RankedItem]
    next_cursor: Optional[str] = None
    cache_hit: bool
    used_refresh_nonce: int
    total_candidates: int = 0
    variation_stats: Optional[VariationStats] = None
    performance: Performance


class ViewEvent(BaseModel):
    viewer_id: str = Field(min_length=1)
    post_id: str = Field(min_length=1)
    became_visible_at: datetime
    visible_fraction: float = Field(ge=0.0, le=1.0)
    dwell_ms: int = Field(ge=0)
    play_ms: int = Field(default=0, ge=0)
    duration_ms: int = Field(gt=0)
    liked: bool = False
    commented: bool = False
    shared: bool = False
    session_id: str = Field(min_length=1)
    source_tier: models.SourceTier
    score: float = 0.0


class ImpressionBatchRequest(BaseModel):
    events: list[ViewEvent] = Field(default_factory=list, max_length=500)


class ImpressionBatchResponse(BaseModel):
    accepted: int
    rejected: int


class ErrorBody(BaseModel):
    code: str
    message: str
