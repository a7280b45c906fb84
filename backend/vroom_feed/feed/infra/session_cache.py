"""Redis-backed session cache for assembled feed pages."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional

from redis.exceptions import WatchError

from vroom_feed.feed.domain import models
from vroom_feed.feed.domain.config import FeedConfig, feed_config
from vroom_feed.infra.redis import redis_client

_MEMO_KEY = "feed:memo:{viewer_id}:{session_id}:{nonce}:{page_key}"
_FIRST_PAGE_KEY = "feed:first:{viewer_id}:{session_id}:{nonce}"
_SESSION_KEY = "feed:session:{viewer_id}:{session_id}"

_CAS_ATTEMPTS = 3


@dataclass(frozen=True, slots=True)
class MemoKey:
	viewer_id: str
	session_id: str
	refresh_nonce: int
	page_key: str

	def redis_key(self) -> str:
		return _MEMO_KEY.format(
			viewer_id=self.viewer_id,
			session_id=self.session_id,
			nonce=self.refresh_nonce,
			page_key=self.page_key,
		)


def _first_page_key(viewer_id: str, session_id: str, nonce: int) -> str:
	return _FIRST_PAGE_KEY.format(viewer_id=viewer_id, session_id=session_id, nonce=nonce)


def _session_key(viewer_id: str, session_id: str) -> str:
	return _SESSION_KEY.format(viewer_id=viewer_id, session_id=session_id)


class SessionCache:
	"""Per-(viewer, session, nonce, page) memo store.

	The only shared mutable state of the ranker. Memos are written with
	put-if-absent so the first successful assembly for a key wins; session
	state is overwritten only by an equal or higher refresh nonce. Redis
	errors propagate so the caller can switch to bypass mode.
	"""

	def __init__(self, config: FeedConfig | None = None) -> None:
		self.config = config or feed_config

	async def get_memo(self, key: MemoKey) -> Optional[models.PageMemo]:
		raw = await redis_client.get(key.redis_key())
		if raw is None:
			return None
		return models.PageMemo.model_validate_json(raw)

	async def put_memo(self, key: MemoKey, memo: models.PageMemo) -> bool:
		stored = await redis_client.set(
			key.redis_key(),
			memo.model_dump_json(),
			ex=self.config.page_memo_ttl_seconds,
			nx=True,
		)
		return bool(stored)

	async def get_first_page(self, viewer_id: str, session_id: str, nonce: int) -> Optional[list[str]]:
		raw = await redis_client.get(_first_page_key(viewer_id, session_id, nonce))
		if raw is None:
			return None
		return [str(post_id) for post_id in json.loads(raw)]

	async def put_first_page(self, viewer_id: str, session_id: str, nonce: int, post_ids: list[str]) -> bool:
		stored = await redis_client.set(
			_first_page_key(viewer_id, session_id, nonce),
			json.dumps(post_ids),
			ex=self.config.session_ttl_seconds,
			nx=True,
		)
		return bool(stored)

	async def get_session(self, viewer_id: str, session_id: str) -> Optional[models.SessionState]:
		raw = await redis_client.get(_session_key(viewer_id, session_id))
		if raw is None:
			return None
		return models.SessionState.model_validate_json(raw)

	async def advance_session(self, state: models.SessionState) -> models.SessionState:
		"""Store ``state`` unless a higher nonce is already recorded; return the winner."""

		key = _session_key(state.viewer_id, state.session_id)
		ttl = self.config.session_ttl_seconds
		for _ in range(_CAS_ATTEMPTS):
			async with redis_client.pipeline(transaction=True) as pipe:
				try:
					await pipe.watch(key)
					raw = await pipe.get(key)
					current = models.SessionState.model_validate_json(raw) if raw else None
					if current is not None and current.refresh_nonce > state.refresh_nonce:
						await pipe.unwatch()
						return current
					pipe.multi()
					pipe.set(key, state.model_dump_json(), ex=ttl)
					await pipe.execute()
					return state
				except WatchError:
					continue
		current = await self.get_session(state.viewer_id, state.session_id)
		return current or state


__all__ = ["MemoKey", "SessionCache"]
