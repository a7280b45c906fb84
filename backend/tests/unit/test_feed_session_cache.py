from __future__ import annotations

from datetime import timedelta

import pytest

from vroom_feed.feed.domain import models
from vroom_feed.feed.domain.config import FeedConfig
from vroom_feed.feed.infra.session_cache import MemoKey, SessionCache


def _memo(now, key: MemoKey, post_ids: list[str]) -> models.PageMemo:
    return models.PageMemo(
        viewer_id=key.viewer_id,
        session_id=key.session_id,
        refresh_nonce=key.refresh_nonce,
        page_key=key.page_key,
        items=[
            models.RankedItem(
                post_id=post_id,
                duration_ms=10_000,
                author_id=f"a-{post_id}",
                source_tier=models.SourceTier.FRESH,
                score=0.5,
                original_score=0.49,
                jitter=0.01,
            )
            for post_id in post_ids
        ],
        next_cursor="cursor",
        total_candidates=len(post_ids),
        created_at=now,
    )


@pytest.mark.asyncio
async def test_memo_first_writer_wins(fake_redis, now):
    cache = SessionCache(FeedConfig())
    key = MemoKey("viewer", "sess", 0, "page-0")

    assert await cache.put_memo(key, _memo(now, key, ["a", "b"])) is True
    assert await cache.put_memo(key, _memo(now, key, ["c"])) is False

    stored = await cache.get_memo(key)
    assert stored is not None
    assert [item.post_id for item in stored.items] == ["a", "b"]
    ttl = await fake_redis.ttl(key.redis_key())
    assert 0 < ttl <= FeedConfig().page_memo_ttl_seconds


@pytest.mark.asyncio
async def test_memo_keys_are_scoped_by_nonce(now):
    cache = SessionCache(FeedConfig())
    first = MemoKey("viewer", "sess", 0, "page-0")
    await cache.put_memo(first, _memo(now, first, ["a"]))

    assert await cache.get_memo(MemoKey("viewer", "sess", 1, "page-0")) is None


@pytest.mark.asyncio
async def test_first_page_roundtrip():
    cache = SessionCache(FeedConfig())
    await cache.put_first_page("viewer", "sess", 0, ["p1", "p2"])

    assert await cache.get_first_page("viewer", "sess", 0) == ["p1", "p2"]
    assert await cache.get_first_page("viewer", "sess", 1) is None


@pytest.mark.asyncio
async def test_session_state_never_moves_backwards(now):
    cache = SessionCache(FeedConfig())
    opened = now - timedelta(minutes=1)
    newer = models.SessionState(viewer_id="v", session_id="s", opened_at=opened, refresh_nonce=3, last_page_cursor="c3")
    older = newer.model_copy(update={"refresh_nonce": 2, "last_page_cursor": "c2"})

    assert (await cache.advance_session(newer)).refresh_nonce == 3
    winner = await cache.advance_session(older)

    assert winner.refresh_nonce == 3
    stored = await cache.get_session("v", "s")
    assert stored is not None and stored.last_page_cursor == "c3"


@pytest.mark.asyncio
async def test_same_nonce_overwrites_cursor(now):
    cache = SessionCache(FeedConfig())
    state = models.SessionState(viewer_id="v", session_id="s", opened_at=now, refresh_nonce=1, last_page_cursor="c1")
    await cache.advance_session(state)
    await cache.advance_session(state.model_copy(update={"last_page_cursor": "c2"}))

    stored = await cache.get_session("v", "s")
    assert stored is not None and stored.last_page_cursor == "c2"
