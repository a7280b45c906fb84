"""Append-only per-viewer impression log backed by Postgres."""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

from vroom_feed.feed.domain import models
from vroom_feed.feed.domain.config import FeedConfig, feed_config
from vroom_feed.infra.postgres import get_pool


class ImpressionLog:
	"""Never-repeat bookkeeping keyed by (viewer, post).

	The table holds one row per (viewer, post). Re-recording within the
	cooldown window is a no-op; once the previous showing has aged past the
	cooldown the row is refreshed with the new showing. A controlled repeat
	always moves the row forward so the same repeat is not offered again
	until it ages past the minimum repeat age once more.
	"""

	def __init__(self, config: FeedConfig | None = None) -> None:
		self.config = config or feed_config

	async def exclude_set(self, viewer_id: str, since: datetime) -> set[str]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT post_id
				FROM feed_impressions
				WHERE viewer_id = $1 AND shown_at >= $2
				""",
				viewer_id,
				since,
			)
		return {str(row["post_id"]) for row in rows}

	async def record(self, batch: Sequence[models.Impression]) -> int:
		"""Insert a batch of impressions; returns the number of rows written."""

		if not batch:
			return 0
		cooldown = self.config.repeat_cooldown
		written = 0
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				for impression in batch:
					status = await conn.fetchval(
						"""
						INSERT INTO feed_impressions (viewer_id, post_id, shown_at, source_tier, session_id, score_at_show)
						VALUES ($1, $2, $3, $4, $5, $6)
						ON CONFLICT (viewer_id, post_id) DO UPDATE
						SET shown_at = EXCLUDED.shown_at,
						    source_tier = EXCLUDED.source_tier,
						    session_id = EXCLUDED.session_id,
						    score_at_show = EXCLUDED.score_at_show
						WHERE feed_impressions.shown_at < EXCLUDED.shown_at - $7::interval
						   OR (EXCLUDED.source_tier = $8 AND feed_impressions.shown_at < EXCLUDED.shown_at)
						RETURNING 1
						""",
						impression.viewer_id,
						impression.post_id,
						impression.shown_at,
						impression.source_tier.value,
						impression.session_id,
						float(impression.score_at_show),
						cooldown,
						models.SourceTier.CONTROLLED_REPEAT.value,
					)
					if status:
						written += 1
		return written

	async def repeat_candidates(
		self,
		viewer_id: str,
		*,
		shown_before: datetime,
		min_score: float,
		limit: int,
	) -> list[models.Impression]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT viewer_id, post_id, shown_at, source_tier, session_id, score_at_show
				FROM feed_impressions
				WHERE viewer_id = $1 AND shown_at < $2 AND score_at_show >= $3
				ORDER BY score_at_show DESC, shown_at ASC, post_id DESC
				LIMIT $4
				""",
				viewer_id,
				shown_before,
				min_score,
				limit,
			)
		return [models.Impression.model_validate(dict(row)) for row in rows]

	async def least_recently_shown(self, viewer_id: str, limit: int) -> list[models.Impression]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT viewer_id, post_id, shown_at, source_tier, session_id, score_at_show
				FROM feed_impressions
				WHERE viewer_id = $1
				ORDER BY shown_at ASC, post_id DESC
				LIMIT $2
				""",
				viewer_id,
				limit,
			)
		return [models.Impression.model_validate(dict(row)) for row in rows]

	async def prune(self, older_than: datetime) -> int:
		pool = await get_pool()
		async with pool.acquire() as conn:
			result = await conn.execute(
				"DELETE FROM feed_impressions WHERE shown_at < $1",
				older_than,
			)
		# asyncpg returns the command tag, e.g. "DELETE 42"
		try:
			return int(str(result).split()[-1])
		except (IndexError, ValueError):
			return 0


__all__ = ["ImpressionLog"]
