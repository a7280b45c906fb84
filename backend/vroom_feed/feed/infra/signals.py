"""Interest and creator-quality signal storage."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

from vroom_feed.feed.domain import models
from vroom_feed.feed.domain.config import FeedConfig, feed_config
from vroom_feed.feed.ranking.signals import ViewObservation, apply_observation
from vroom_feed.infra.postgres import get_pool


class SignalStore:
	"""Point lookups of advisory ranking signals; missing rows read as neutral."""

	def __init__(self, config: FeedConfig | None = None) -> None:
		self.config = config or feed_config

	async def interests_for(self, viewer_id: str) -> models.InterestSignal:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				SELECT viewer_id, like_rate, comment_rate, share_rate, watch_ratio, updated_at
				FROM interest_signals
				WHERE viewer_id = $1
				""",
				viewer_id,
			)
		if row is None:
			return models.InterestSignal.neutral(viewer_id)
		return models.InterestSignal.model_validate(dict(row))

	async def quality_for(self, creator_ids: Sequence[str]) -> dict[str, models.CreatorQuality]:
		ids = sorted(set(creator_ids))
		if not ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT creator_id, watch_ratio, like_rate, report_rate
				FROM creator_quality
				WHERE creator_id = ANY($1::text[])
				""",
				ids,
			)
		found = {str(row["creator_id"]): models.CreatorQuality.model_validate(dict(row)) for row in rows}
		return {creator_id: found.get(creator_id) or models.CreatorQuality.neutral(creator_id) for creator_id in ids}

	async def apply_view(
		self,
		viewer_id: str,
		observation: ViewObservation,
		*,
		now: datetime | None = None,
	) -> None:
		"""Fold one confirmed view into the viewer's EMA in a single upsert."""

		alpha = self.config.ema_alpha
		seeded = apply_observation(models.InterestSignal.neutral(viewer_id), observation, alpha)
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				INSERT INTO interest_signals (viewer_id, like_rate, comment_rate, share_rate, watch_ratio, updated_at)
				VALUES (
					$1,
					$3::float8,
					$4::float8,
					$5::float8,
					$6::float8,
					$11::timestamptz
				)
				ON CONFLICT (viewer_id) DO UPDATE
				SET like_rate = (1 - $2::float8) * interest_signals.like_rate + $2::float8 * $7::float8,
				    comment_rate = (1 - $2::float8) * interest_signals.comment_rate + $2::float8 * $8::float8,
				    share_rate = (1 - $2::float8) * interest_signals.share_rate + $2::float8 * $9::float8,
				    watch_ratio = (1 - $2::float8) * interest_signals.watch_ratio + $2::float8 * $10::float8,
				    updated_at = $11::timestamptz
				""",
				viewer_id,
				alpha,
				seeded.like_rate,
				seeded.comment_rate,
				seeded.share_rate,
				seeded.watch_ratio,
				observation.like,
				observation.comment,
				observation.share,
				observation.watch_ratio,
				now or datetime.now(timezone.utc),
			)


__all__ = ["SignalStore"]
