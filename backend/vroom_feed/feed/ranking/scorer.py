"""Feed scoring: engagement, freshness, context and diversity with seeded jitter."""

from __future__ import annotations

import hashlib
import math
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence

from vroom_feed.feed.domain import models
from vroom_feed.feed.domain.config import FeedConfig, feed_config

DEFAULT_WEIGHTS: dict[str, float] = {
	"engagement": 0.40,
	"freshness": 0.30,
	"context": 0.20,
	"diversity": 0.10,
}

# Engagement-per-impression at which the post factor saturates.
_EPI_SATURATION = 0.25
# Creator like-rate at which the quality factor saturates.
_LIKE_RATE_SATURATION = 0.10
_REPORT_PENALTY = 4.0
_NEUTRAL = 0.5


@dataclass(slots=True)
class Candidate:
	"""A post offered by one selector tier."""

	post: models.Post
	tier: models.SourceTier
	score_at_show: Optional[float] = None


@dataclass(slots=True)
class ScoredCandidate:
	"""Candidate with its slot-independent factors resolved."""

	candidate: Candidate
	engagement: float
	freshness: float
	context: float
	jitter: float
	base: float = field(default=0.0)

	@property
	def post(self) -> models.Post:
		return self.candidate.post

	@property
	def tier(self) -> models.SourceTier:
		return self.candidate.tier


@dataclass(frozen=True, slots=True)
class JitterSeed:
	"""Identity of a ranking pass; jitter and exploration derive from it."""

	viewer_id: str
	session_id: str
	refresh_nonce: int

	def digest(self, *parts: object) -> int:
		material = "|".join([self.viewer_id, self.session_id, str(self.refresh_nonce), *map(str, parts)])
		raw = hashlib.blake2b(material.encode("utf-8"), digest_size=8).digest()
		return int.from_bytes(raw, "big")


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
	return max(low, min(high, value))


def seeded_jitter(seed: JitterSeed, post_id: str, epsilon: float) -> float:
	"""Deterministic jitter uniform in [-epsilon, +epsilon]."""

	if epsilon <= 0:
		return 0.0
	unit = seed.digest(post_id) / float(2**64)
	return (2.0 * unit - 1.0) * epsilon


def freshness_factor(
	created_at: datetime,
	now: datetime,
	*,
	tau_hours: float,
	cliff_hours: float,
	floor: float,
) -> float:
	age_hours = max(0.0, (now - created_at).total_seconds() / 3600.0)
	if age_hours > cliff_hours:
		return floor
	return max(floor, math.exp(-age_hours / max(0.1, tau_hours)))


def creator_quality_factor(quality: models.CreatorQuality) -> float:
	like_norm = _clamp(quality.like_rate / _LIKE_RATE_SATURATION)
	blended = 0.6 * _clamp(quality.watch_ratio) + 0.4 * like_norm
	return _clamp(blended - _REPORT_PENALTY * max(0.0, quality.report_rate))


def engagement_per_impression(post: models.Post) -> float:
	weighted = post.likes + 2 * post.comments + 3 * post.shares
	if weighted <= 0:
		return 0.0
	rate = weighted / max(post.views, 1)
	return _clamp(rate / _EPI_SATURATION)


def interest_alignment(post: models.Post, interests: models.InterestSignal, quality: models.CreatorQuality) -> float:
	"""Cosine between the viewer's propensities and the post's rates, blended with watch-ratio fit."""

	views = max(post.views, 1)
	post_vec = (post.likes / views, post.comments / views, post.shares / views)
	viewer_vec = (interests.like_rate, interests.comment_rate, interests.share_rate)
	norm_post = math.sqrt(sum(v * v for v in post_vec))
	norm_viewer = math.sqrt(sum(v * v for v in viewer_vec))
	if norm_post == 0 or norm_viewer == 0:
		cosine = _NEUTRAL
	else:
		cosine = _clamp(sum(a * b for a, b in zip(post_vec, viewer_vec)) / (norm_post * norm_viewer))
	watch_fit = 1.0 - abs(_clamp(interests.watch_ratio) - _clamp(quality.watch_ratio))
	return _clamp(0.7 * cosine + 0.3 * watch_fit)


def engagement_factor(
	post: models.Post,
	quality: models.CreatorQuality,
	interests: models.InterestSignal,
) -> float:
	return _clamp(
		0.4 * creator_quality_factor(quality)
		+ 0.4 * engagement_per_impression(post)
		+ 0.2 * interest_alignment(post, interests, quality)
	)


def _daypart(hour: int) -> int:
	return (hour % 24) // 6


def context_factor(post: models.Post, context: models.ViewerContext) -> float:
	if context.client_hour is None:
		time_match = _NEUTRAL
	else:
		time_match = 1.0 if _daypart(post.created_at.hour) == _daypart(context.client_hour) else _NEUTRAL

	height = post.max_height
	if context.connection == models.Connection.SLOW:
		resolution = 1.0 if post.has_low_res or (height is not None and height <= 540) else 0.3
	elif context.connection == models.Connection.CELLULAR:
		resolution = 1.0 if post.has_low_res or (height is not None and height <= 720) else 0.6
	else:
		resolution = 1.0

	if not context.locale or not post.locale:
		locale = _NEUTRAL
	elif context.locale.lower() == post.locale.lower():
		locale = 1.0
	elif context.locale.split("-")[0].lower() == post.locale.split("-")[0].lower():
		locale = 0.8
	else:
		locale = 0.2
	return (time_match + resolution + locale) / 3.0


def diversity_factor(author_id: str, recent_authors: Sequence[str], window: int) -> float:
	"""1 minus the share of the last ``window`` emitted items by the same author."""

	recent = list(recent_authors)[-window:]
	repeats = sum(1 for author in recent if author == author_id)
	return _clamp(1.0 - repeats / float(window))


class Scorer:
	"""Combines weighted factors into a scalar score with per-request jitter."""

	def __init__(
		self,
		config: FeedConfig | None = None,
		weights: dict[str, float] | None = None,
	) -> None:
		self.config = config or feed_config
		self.weights = dict(DEFAULT_WEIGHTS)
		for key, value in (weights or {}).items():
			if key in self.weights:
				self.weights[key] = float(value)

	def prepare(
		self,
		candidates: Iterable[Candidate],
		*,
		interests: models.InterestSignal,
		quality: dict[str, models.CreatorQuality],
		context: models.ViewerContext,
		seed: JitterSeed,
		now: datetime,
	) -> list[ScoredCandidate]:
		"""Resolve the slot-independent factors for every candidate."""

		cfg = self.config
		cliff_hours = cfg.freshness_cliff.total_seconds() / 3600.0
		scored: list[ScoredCandidate] = []
		for candidate in candidates:
			post = candidate.post
			creator_quality = quality.get(post.author_id) or models.CreatorQuality.neutral(post.author_id)
			item = ScoredCandidate(
				candidate=candidate,
				engagement=engagement_factor(post, creator_quality, interests),
				freshness=freshness_factor(
					post.created_at,
					now,
					tau_hours=cfg.freshness_tau_hours,
					cliff_hours=cliff_hours,
					floor=cfg.freshness_floor,
				),
				context=context_factor(post, context),
				jitter=seeded_jitter(seed, post.id, cfg.jitter_epsilon),
			)
			item.base = (
				self.weights["engagement"] * item.engagement
				+ self.weights["freshness"] * item.freshness
				+ self.weights["context"] * item.context
			)
			scored.append(item)
		scored.sort(key=lambda entry: (entry.base + entry.jitter, entry.post.id), reverse=True)
		return scored

	def slot_score(self, item: ScoredCandidate, recent_authors: Sequence[str]) -> tuple[float, float]:
		"""Return ``(original_score, score)`` for placing ``item`` after ``recent_authors``."""

		diversity = diversity_factor(item.post.author_id, recent_authors, self.config.diversity_window)
		original = item.base + self.weights["diversity"] * diversity
		return original, original + item.jitter

	def exploration_rng(self, seed: JitterSeed, page_index: int) -> random.Random:
		return random.Random(seed.digest("explore", page_index))


__all__ = [
	"Candidate",
	"DEFAULT_WEIGHTS",
	"JitterSeed",
	"ScoredCandidate",
	"Scorer",
	"context_factor",
	"diversity_factor",
	"engagement_factor",
	"freshness_factor",
	"seeded_jitter",
]
