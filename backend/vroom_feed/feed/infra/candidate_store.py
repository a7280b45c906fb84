"""Read-only candidate access over eligible posts."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence, Tuple

from vroom_feed.feed.domain import models
from vroom_feed.feed.domain.config import FeedConfig, feed_config
from vroom_feed.infra.postgres import get_pool

CursorPair = Tuple[datetime, str]

# Weighted engagement used by the trending tier.
TRENDING_WEIGHTS = {"likes": 3, "comments": 5, "shares": 4, "views": 1}

_POST_COLUMNS = """
	p.id,
	p.author_id,
	p.created_at,
	p.media_ready AS ready,
	p.playback_id,
	p.duration_ms,
	p.view_count AS views,
	p.like_count AS likes,
	p.comment_count AS comments,
	p.share_count AS shares,
	p.visibility,
	p.locale,
	p.max_height,
	p.has_low_res,
	pr.handle AS author_handle,
	pr.avatar_url AS author_avatar_url
"""

_ELIGIBLE = """
	p.media_ready = TRUE
	AND p.visibility = 'public'
	AND p.duration_ms IS NOT NULL
	AND p.duration_ms > 0
	AND p.duration_ms <= $1
"""


def _to_post(row) -> models.Post:
	data = dict(row)
	data["id"] = str(data["id"])
	data["author_id"] = str(data["author_id"])
	data["has_low_res"] = bool(data.get("has_low_res") or False)
	return models.Post.model_validate(data)


class CandidateStore:
	"""Thin asyncpg access layer for eligible posts.

	Every read applies the eligibility filter (ready, public, within the
	duration cap) in SQL and orders with an ``id`` tie-break so equal keys
	are stable across calls.
	"""

	def __init__(self, config: FeedConfig | None = None) -> None:
		self.config = config or feed_config

	async def fresh_eligible(
		self,
		limit: int,
		after_cursor: Optional[CursorPair] = None,
		*,
		exclude_author: Optional[str] = None,
	) -> list[models.Post]:
		params: list[object] = [self.config.max_upload_duration_ms, exclude_author]
		where_cursor = ""
		if after_cursor is not None:
			params.extend([after_cursor[0], after_cursor[1]])
			where_cursor = " AND (p.created_at, p.id) < ($3, $4)"
		params.append(limit)
		sql = f"""
			SELECT {_POST_COLUMNS}
			FROM posts p
			LEFT JOIN profiles pr ON pr.id = p.author_id
			WHERE {_ELIGIBLE}
			  AND ($2::text IS NULL OR p.author_id <> $2)
			  {where_cursor}
			ORDER BY p.created_at DESC, p.id DESC
			LIMIT ${len(params)}
		"""
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(sql, *params)
		return [_to_post(row) for row in rows]

	async def trending_eligible(
		self,
		limit: int,
		horizon: Optional[timedelta] = None,
		*,
		exclude_author: Optional[str] = None,
		now: Optional[datetime] = None,
	) -> list[models.Post]:
		window = horizon or self.config.trending_horizon
		since = (now or datetime.now(timezone.utc)) - window
		sql = f"""
			SELECT {_POST_COLUMNS}
			FROM posts p
			LEFT JOIN profiles pr ON pr.id = p.author_id
			WHERE {_ELIGIBLE}
			  AND ($2::text IS NULL OR p.author_id <> $2)
			  AND p.created_at >= $3
			ORDER BY (
				{TRENDING_WEIGHTS["likes"]} * p.like_count
				+ {TRENDING_WEIGHTS["comments"]} * p.comment_count
				+ {TRENDING_WEIGHTS["shares"]} * p.share_count
				+ {TRENDING_WEIGHTS["views"]} * p.view_count
			) DESC, p.id DESC
			LIMIT $4
		"""
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(sql, self.config.max_upload_duration_ms, exclude_author, since, limit)
		return [_to_post(row) for row in rows]

	async def followed_eligible(
		self,
		viewer_id: str,
		limit: int,
		after_cursor: Optional[CursorPair] = None,
	) -> list[models.Post]:
		params: list[object] = [self.config.max_upload_duration_ms, viewer_id]
		where_cursor = ""
		if after_cursor is not None:
			params.extend([after_cursor[0], after_cursor[1]])
			where_cursor = " AND (p.created_at, p.id) < ($3, $4)"
		params.append(limit)
		sql = f"""
			SELECT {_POST_COLUMNS}
			FROM posts p
			JOIN follows f ON f.followee_id = p.author_id AND f.follower_id = $2
			LEFT JOIN profiles pr ON pr.id = p.author_id
			WHERE {_ELIGIBLE}
			  AND p.author_id <> $2
			  {where_cursor}
			ORDER BY p.created_at DESC, p.id DESC
			LIMIT ${len(params)}
		"""
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(sql, *params)
		return [_to_post(row) for row in rows]

	async def by_ids(self, ids: Sequence[str]) -> list[models.Post]:
		"""Hydrate eligible posts for the given ids, preserving input order."""

		if not ids:
			return []
		sql = f"""
			SELECT {_POST_COLUMNS}
			FROM posts p
			LEFT JOIN profiles pr ON pr.id = p.author_id
			WHERE {_ELIGIBLE}
			  AND p.id = ANY($2::text[])
		"""
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(sql, self.config.max_upload_duration_ms, list(ids))
		by_id = {str(row["id"]): _to_post(row) for row in rows}
		return [by_id[post_id] for post_id in _unique(ids) if post_id in by_id]

	async def has_eligible(self) -> bool:
		sql = f"SELECT EXISTS (SELECT 1 FROM posts p WHERE {_ELIGIBLE})"
		pool = await get_pool()
		async with pool.acquire() as conn:
			return bool(await conn.fetchval(sql, self.config.max_upload_duration_ms))


def _unique(ids: Iterable[str]) -> list[str]:
	seen: set[str] = set()
	ordered: list[str] = []
	for post_id in ids:
		if post_id in seen:
			continue
		seen.add(post_id)
		ordered.append(post_id)
	return ordered


__all__ = ["CandidateStore", "CursorPair", "TRENDING_WEIGHTS"]
