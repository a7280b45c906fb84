import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional, Sequence

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from vroom_feed.feed.domain import models
from vroom_feed.feed.domain.config import FeedConfig
from vroom_feed.feed.infra.session_cache import SessionCache
from vroom_feed.feed.ranking.signals import ViewObservation, apply_observation
from vroom_feed.feed.services.assembler import FeedAssembler
from vroom_feed.infra import postgres
from vroom_feed.main import app

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from vroom_feed.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client


def make_post(
	post_id: str,
	author_id: str,
	*,
	age_hours: float = 1.0,
	likes: int = 0,
	comments: int = 0,
	shares: int = 0,
	views: int = 100,
	ready: bool = True,
	duration_ms: int = 15_000,
	visibility: models.Visibility = models.Visibility.PUBLIC,
	now: datetime = NOW,
) -> models.Post:
	return models.Post(
		id=post_id,
		author_id=author_id,
		created_at=now - timedelta(hours=age_hours),
		ready=ready,
		playback_id=f"pb-{post_id}",
		duration_ms=duration_ms,
		views=views,
		likes=likes,
		comments=comments,
		shares=shares,
		visibility=visibility,
		author_handle=f"@{author_id}",
	)


class InMemoryCandidateStore:
	"""Candidate store over a list of posts with optional per-call delays and failures."""

	def __init__(self, config: FeedConfig, posts: Iterable[models.Post] = (), follows: Iterable[tuple[str, str]] = ()) -> None:
		self.config = config
		self.posts = {post.id: post for post in posts}
		self.follows = set(follows)
		self.delays: dict[str, float] = {}
		self.failures: set[str] = set()
		self.calls: list[str] = []

	async def _gate(self, name: str) -> None:
		self.calls.append(name)
		if name in self.delays:
			await asyncio.sleep(self.delays[name])
		if name in self.failures:
			raise RuntimeError(f"{name} unavailable")

	def _eligible(self) -> list[models.Post]:
		return [post for post in self.posts.values() if post.is_eligible(self.config.max_upload_duration_ms)]

	async def fresh_eligible(self, limit, after_cursor=None, *, exclude_author=None):
		await self._gate("fresh_eligible")
		rows = [post for post in self._eligible() if post.author_id != exclude_author]
		if after_cursor is not None:
			rows = [post for post in rows if post.keyset < tuple(after_cursor)]
		rows.sort(key=lambda post: post.keyset, reverse=True)
		return rows[:limit]

	async def trending_eligible(self, limit, horizon=None, *, exclude_author=None, now=None):
		await self._gate("trending_eligible")
		since = (now or NOW) - (horizon or self.config.trending_horizon)
		rows = [
			post
			for post in self._eligible()
			if post.author_id != exclude_author and post.created_at >= since
		]
		rows.sort(key=lambda post: post.id, reverse=True)
		rows.sort(
			key=lambda post: 3 * post.likes + 5 * post.comments + 4 * post.shares + post.views,
			reverse=True,
		)
		return rows[:limit]

	async def followed_eligible(self, viewer_id, limit, after_cursor=None):
		await self._gate("followed_eligible")
		followees = {followee for follower, followee in self.follows if follower == viewer_id}
		rows = [post for post in self._eligible() if post.author_id in followees and post.author_id != viewer_id]
		if after_cursor is not None:
			rows = [post for post in rows if post.keyset < tuple(after_cursor)]
		rows.sort(key=lambda post: post.keyset, reverse=True)
		return rows[:limit]

	async def by_ids(self, ids: Sequence[str]):
		await self._gate("by_ids")
		eligible = {post.id: post for post in self._eligible()}
		return [eligible[post_id] for post_id in dict.fromkeys(ids) if post_id in eligible]

	async def has_eligible(self) -> bool:
		await self._gate("has_eligible")
		return bool(self._eligible())


class InMemoryImpressionLog:
	"""Impression log keyed by (viewer, post) with the cooldown upsert rule."""

	def __init__(self, config: FeedConfig) -> None:
		self.config = config
		self.rows: dict[tuple[str, str], models.Impression] = {}
		self.fail_exclude = False
		self.fail_record = False
		self.record_delay = 0.0

	def seed(self, viewer_id: str, post_id: str, *, shown_at: datetime, score: float = 0.0, session_id: str = "old") -> None:
		self.rows[(viewer_id, post_id)] = models.Impression(
			viewer_id=viewer_id,
			post_id=post_id,
			shown_at=shown_at,
			source_tier=models.SourceTier.FRESH,
			session_id=session_id,
			score_at_show=score,
		)

	async def exclude_set(self, viewer_id: str, since: datetime) -> set[str]:
		if self.fail_exclude:
			raise ConnectionError("impression log unavailable")
		return {post_id for (viewer, post_id), row in self.rows.items() if viewer == viewer_id and row.shown_at >= since}

	async def record(self, batch: Sequence[models.Impression]) -> int:
		if self.record_delay:
			await asyncio.sleep(self.record_delay)
		if self.fail_record:
			raise ConnectionError("impression log unavailable")
		written = 0
		for impression in batch:
			key = (impression.viewer_id, impression.post_id)
			existing = self.rows.get(key)
			repeat = impression.source_tier == models.SourceTier.CONTROLLED_REPEAT
			if (
				existing is None
				or existing.shown_at < impression.shown_at - self.config.repeat_cooldown
				or (repeat and existing.shown_at < impression.shown_at)
			):
				self.rows[key] = impression
				written += 1
		return written

	async def repeat_candidates(self, viewer_id: str, *, shown_before: datetime, min_score: float, limit: int):
		rows = [
			row
			for (viewer, _), row in self.rows.items()
			if viewer == viewer_id and row.shown_at < shown_before and row.score_at_show >= min_score
		]
		rows.sort(key=lambda row: row.post_id, reverse=True)
		rows.sort(key=lambda row: (-row.score_at_show, row.shown_at))
		return rows[:limit]

	async def least_recently_shown(self, viewer_id: str, limit: int):
		rows = [row for (viewer, _), row in self.rows.items() if viewer == viewer_id]
		rows.sort(key=lambda row: row.post_id, reverse=True)
		rows.sort(key=lambda row: row.shown_at)
		return rows[:limit]

	async def prune(self, older_than: datetime) -> int:
		stale = [key for key, row in self.rows.items() if row.shown_at < older_than]
		for key in stale:
			del self.rows[key]
		return len(stale)


class InMemorySignalStore:
	def __init__(self, config: FeedConfig) -> None:
		self.config = config
		self.interests: dict[str, models.InterestSignal] = {}
		self.quality: dict[str, models.CreatorQuality] = {}
		self.applied: list[tuple[str, ViewObservation]] = []
		self.fail = False

	async def interests_for(self, viewer_id: str) -> models.InterestSignal:
		if self.fail:
			raise ConnectionError("signals unavailable")
		return self.interests.get(viewer_id) or models.InterestSignal.neutral(viewer_id)

	async def quality_for(self, creator_ids: Sequence[str]) -> dict[str, models.CreatorQuality]:
		if self.fail:
			raise ConnectionError("signals unavailable")
		return {
			creator_id: self.quality.get(creator_id) or models.CreatorQuality.neutral(creator_id)
			for creator_id in set(creator_ids)
		}

	async def apply_view(self, viewer_id: str, observation: ViewObservation, *, now: Optional[datetime] = None) -> None:
		if self.fail:
			raise ConnectionError("signals unavailable")
		self.applied.append((viewer_id, observation))
		current = self.interests.get(viewer_id) or models.InterestSignal.neutral(viewer_id)
		self.interests[viewer_id] = apply_observation(current, observation, self.config.ema_alpha).model_copy(
			update={"updated_at": now}
		)


class FeedWorld:
	"""Bundle of in-memory stores wired into an assembler with a fixed clock."""

	def __init__(self, config: FeedConfig | None = None) -> None:
		self.config = config or FeedConfig()
		self.store = InMemoryCandidateStore(self.config)
		self.impressions = InMemoryImpressionLog(self.config)
		self.signals = InMemorySignalStore(self.config)
		self.cache = SessionCache(self.config)
		self.now = NOW

	def add_posts(self, posts: Iterable[models.Post]) -> None:
		for post in posts:
			self.store.posts[post.id] = post

	def assembler(self, **overrides) -> FeedAssembler:
		params = {
			"store": self.store,
			"impressions": self.impressions,
			"signals": self.signals,
			"cache": self.cache,
			"config": self.config,
			"clock": lambda: self.now,
		}
		params.update(overrides)
		return FeedAssembler(**params)


@pytest.fixture
def feed_world() -> FeedWorld:
	return FeedWorld()


@pytest.fixture
def post_factory():
	return make_post


@pytest.fixture
def now() -> datetime:
	return NOW


@pytest.fixture
def make_world():
	return FeedWorld
