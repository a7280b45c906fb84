"""Domain models for the feed ranker."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Visibility(str, Enum):
	PUBLIC = "public"
	SHADOW = "shadow"
	REMOVED = "removed"


class SourceTier(str, Enum):
	"""Provenance of an emitted item, in ladder order."""

	FRESH = "fresh"
	FOLLOWED = "followed"
	TRENDING = "trending"
	CONTROLLED_REPEAT = "controlled_repeat"
	FALLBACK_ANY = "fallback_any"

	@property
	def is_unseen(self) -> bool:
		return self in (SourceTier.FRESH, SourceTier.FOLLOWED, SourceTier.TRENDING)


class Connection(str, Enum):
	WIFI = "wifi"
	CELLULAR = "cellular"
	SLOW = "slow"
	UNKNOWN = "unknown"


class Post(BaseModel):
	"""A short video post with its engagement aggregates and author profile."""

	id: str
	author_id: str
	created_at: datetime
	ready: bool
	playback_id: Optional[str] = None
	duration_ms: int
	views: int = 0
	likes: int = 0
	comments: int = 0
	shares: int = 0
	visibility: Visibility = Visibility.PUBLIC
	locale: Optional[str] = None
	max_height: Optional[int] = None
	has_low_res: bool = False
	author_handle: Optional[str] = None
	author_avatar_url: Optional[str] = None

	model_config = ConfigDict(from_attributes=True)

	def is_eligible(self, max_duration_ms: int) -> bool:
		return (
			self.ready
			and self.visibility == Visibility.PUBLIC
			and 0 < self.duration_ms <= max_duration_ms
		)

	@property
	def keyset(self) -> tuple[datetime, str]:
		return (self.created_at, self.id)


class Impression(BaseModel):
	"""A viewability-confirmed showing of a post to a viewer."""

	viewer_id: str
	post_id: str
	shown_at: datetime
	source_tier: SourceTier
	session_id: str
	score_at_show: float = 0.0

	model_config = ConfigDict(from_attributes=True)


NEUTRAL_LIKE_RATE = 0.05
NEUTRAL_COMMENT_RATE = 0.01
NEUTRAL_SHARE_RATE = 0.005
NEUTRAL_WATCH_RATIO = 0.5
NEUTRAL_REPORT_RATE = 0.0


class InterestSignal(BaseModel):
	"""EMA-smoothed engagement propensities of a viewer."""

	viewer_id: str
	like_rate: float = NEUTRAL_LIKE_RATE
	comment_rate: float = NEUTRAL_COMMENT_RATE
	share_rate: float = NEUTRAL_SHARE_RATE
	watch_ratio: float = NEUTRAL_WATCH_RATIO
	updated_at: Optional[datetime] = None

	model_config = ConfigDict(from_attributes=True)

	@classmethod
	def neutral(cls, viewer_id: str) -> "InterestSignal":
		return cls(viewer_id=viewer_id)


class CreatorQuality(BaseModel):
	"""Rolling quality aggregates of a creator over the rollup horizon."""

	creator_id: str
	watch_ratio: float = NEUTRAL_WATCH_RATIO
	like_rate: float = NEUTRAL_LIKE_RATE
	report_rate: float = NEUTRAL_REPORT_RATE

	model_config = ConfigDict(from_attributes=True)

	@classmethod
	def neutral(cls, creator_id: str) -> "CreatorQuality":
		return cls(creator_id=creator_id)


class ViewerContext(BaseModel):
	"""Request-time context used by the context factor."""

	locale: Optional[str] = None
	connection: Connection = Connection.UNKNOWN
	client_hour: Optional[int] = Field(default=None, ge=0, le=23)


class SessionState(BaseModel):
	viewer_id: str
	session_id: str
	opened_at: datetime
	refresh_nonce: int = 0
	last_page_cursor: Optional[str] = None


class RankedItem(BaseModel):
	"""An emitted feed item with its provenance."""

	post_id: str
	playback_id: Optional[str] = None
	duration_ms: int
	author_id: str
	author_handle: Optional[str] = None
	author_avatar_url: Optional[str] = None
	source_tier: SourceTier
	score: float
	original_score: float
	jitter: float


class PageMemo(BaseModel):
	"""Memoized assembled page for a (viewer, session, nonce, page) key."""

	viewer_id: str
	session_id: str
	refresh_nonce: int
	page_key: str
	items: list[RankedItem]
	next_cursor: Optional[str] = None
	total_candidates: int = 0
	created_at: datetime
