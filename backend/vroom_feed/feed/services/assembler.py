"""Feed page assembly: cache, tiered selection, scoring and the fallback ladder."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from random import Random
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from vroom_feed.feed.domain import models
from vroom_feed.feed.domain.config import FeedConfig, feed_config
from vroom_feed.feed.domain.cursor import FeedCursor, PostKey, decode_cursor, encode_cursor
from vroom_feed.feed.domain.exceptions import (
    DeadlineError,
    FeedError,
    InternalError,
    InvalidCursorError,
    NoInventoryError,
)
from vroom_feed.feed.infra.candidate_store import CandidateStore
from vroom_feed.feed.infra.impression_log import ImpressionLog
from vroom_feed.feed.infra.session_cache import MemoKey, SessionCache
from vroom_feed.feed.infra.signals import SignalStore
from vroom_feed.feed.ranking.scorer import Candidate, JitterSeed, ScoredCandidate, Scorer
from vroom_feed.feed.schemas import dto
from vroom_feed.feed.services.budget import RequestBudget
from vroom_feed.feed.services.selector import CandidateSelector, TierReport, UnseenSelection
from vroom_feed.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

T = TypeVar("T")

Tier = models.SourceTier

# Lower rank wins a slot; tiers 1-3 compete on score among themselves.
_LADDER_RANK = {
    Tier.FRESH: 0,
    Tier.FOLLOWED: 0,
    Tier.TRENDING: 0,
    Tier.CONTROLLED_REPEAT: 1,
    Tier.FALLBACK_ANY: 2,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class EmitPolicy:
    page_size: int
    max_per_creator: int
    min_gap: int
    repeat_safe_prefix: int
    max_repeats: int
    stale_ids: frozenset[str]
    max_stale: int
    epsilon: float
    relaxed: bool = False


@dataclass(slots=True)
class Emitted:
    item: ScoredCandidate
    original_score: float
    score: float


def emit_page(
    pool: Sequence[ScoredCandidate],
    policy: EmitPolicy,
    scorer: Scorer,
    rng: Random,
) -> list[Emitted]:
    """Fill slots greedily, honouring diversity, repeat placement and refresh novelty.

    Each slot is taken by the highest slot score among admissible candidates
    of the best available ladder rung; with probability ``policy.epsilon`` a
    uniformly random candidate of the top candidate's tier is used instead.
    """

    remaining = list(pool)
    emitted: list[Emitted] = []
    per_author: dict[str, int] = defaultdict(int)
    last_slot: dict[str, int] = {}
    repeats = 0
    stale = 0

    def admissible(entry: ScoredCandidate, slot: int, enforce_stale: bool) -> bool:
        if entry.tier == Tier.CONTROLLED_REPEAT:
            if slot < policy.repeat_safe_prefix or repeats >= policy.max_repeats:
                return False
        if enforce_stale and entry.post.id in policy.stale_ids and stale >= policy.max_stale:
            return False
        if policy.relaxed:
            return True
        author = entry.post.author_id
        if per_author[author] >= policy.max_per_creator:
            return False
        previous = last_slot.get(author)
        return previous is None or slot - previous >= policy.min_gap

    for slot in range(policy.page_size):
        allowed = [entry for entry in remaining if admissible(entry, slot, True)]
        if not allowed:
            allowed = [entry for entry in remaining if admissible(entry, slot, False)]
        if not allowed:
            break
        best_rung = min(_LADDER_RANK[entry.tier] for entry in allowed)
        recent_authors = [chosen.item.post.author_id for chosen in emitted]
        ranked = sorted(
            (
                (scorer.slot_score(entry, recent_authors), entry)
                for entry in allowed
                if _LADDER_RANK[entry.tier] == best_rung
            ),
            key=lambda pair: (pair[0][1], pair[1].post.id),
            reverse=True,
        )
        (original, score), pick = ranked[0]
        if policy.epsilon > 0 and rng.random() < policy.epsilon:
            same_tier = [pair for pair in ranked if pair[1].tier == pick.tier]
            (original, score), pick = rng.choice(same_tier)

        remaining.remove(pick)
        emitted.append(Emitted(item=pick, original_score=original, score=score))
        author = pick.post.author_id
        per_author[author] += 1
        last_slot[author] = slot
        if pick.tier == Tier.CONTROLLED_REPEAT:
            repeats += 1
        if pick.post.id in policy.stale_ids:
            stale += 1
    return emitted


class FeedAssembler:
    """Produces exactly ``page_size`` items per request whenever inventory allows.

    Reads only: impressions are written by the recorder. The session cache is
    the one piece of shared state and any failure there degrades to
    recomputing the page.
    """

    def __init__(
        self,
        *,
        store: CandidateStore | None = None,
        impressions: ImpressionLog | None = None,
        signals: SignalStore | None = None,
        cache: SessionCache | None = None,
        scorer: Scorer | None = None,
        config: FeedConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or feed_config
        self.store = store or CandidateStore(self.config)
        self.impressions = impressions or ImpressionLog(self.config)
        self.signals = signals or SignalStore(self.config)
        self.cache = cache or SessionCache(self.config)
        self.scorer = scorer or Scorer(self.config)
        self.selector = CandidateSelector(self.store, self.impressions, self.config)
        self._clock = clock or _utcnow

    async def get_page(self, request: dto.FeedRequest) -> dto.FeedResponse:
        cfg = self.config
        budget = RequestBudget(cfg.page_deadline, cfg.downstream_deadline)
        now = self._clock()
        cursor = self._resolve_cursor(request)
        page_index = cursor.page_index if cursor else 0
        after_key = cursor.last_post_key if cursor else None
        served = cursor.served if cursor else ()
        memo_key = MemoKey(
            viewer_id=request.viewer_id,
            session_id=request.session_id,
            refresh_nonce=request.refresh_nonce,
            page_key=self._page_key(request.session_opened_at, page_index, after_key),
        )

        cache_seconds = 0.0
        if not request.force_refresh:
            started = budget.elapsed()
            memo = await self._cache_call("get_memo", lambda: self.cache.get_memo(memo_key), budget)
            cache_seconds += budget.elapsed() - started
            if memo is not None:
                obs_metrics.inc_cache_lookup("hit")
                return self._memo_response(memo, budget, cache_seconds)
            obs_metrics.inc_cache_lookup("miss")
        else:
            obs_metrics.inc_cache_lookup("forced")

        report = TierReport()
        page_size = request.page_size
        exclude = await self._exclude_set(request.viewer_id, now, budget, report)
        selection = await self.selector.select_unseen(
            request.viewer_id,
            exclude=exclude | {post_id for _, post_id in served},
            target=page_size * cfg.working_multiple,
            after_cursor=after_key,
            now=now,
            budget=budget,
            report=report,
        )
        unseen = selection.candidates
        if len(unseen) < cfg.inventory_waterline:
            obs_metrics.FEED_BELOW_WATERLINE.inc()
            _LOG.info(
                "feed.below_waterline",
                extra={"unseen": len(unseen), "waterline": cfg.inventory_waterline, "excluded": len(exclude)},
            )

        previous_ids: Optional[list[str]] = None
        if page_index == 0 and request.refresh_nonce > 0:
            started = budget.elapsed()
            previous_ids = await self._cache_call(
                "get_first_page",
                lambda: self.cache.get_first_page(request.viewer_id, request.session_id, request.refresh_nonce - 1),
                budget,
            )
            cache_seconds += budget.elapsed() - started

        interests = await self._interests(request.viewer_id, budget)
        seed = JitterSeed(request.viewer_id, request.session_id, request.refresh_nonce)
        context = request.viewer_context()
        policy = EmitPolicy(
            page_size=page_size,
            max_per_creator=cfg.max_per_creator_per_page,
            min_gap=cfg.diversity_window,
            repeat_safe_prefix=cfg.repeat_safe_prefix,
            max_repeats=cfg.max_repeats_per_page,
            stale_ids=frozenset(previous_ids or ()),
            max_stale=max(0, page_size - cfg.min_refresh_delta) if previous_ids else page_size,
            epsilon=cfg.epsilon_explore,
        )

        async def score(candidates: list[Candidate]) -> list[ScoredCandidate]:
            quality = await self._quality([c.post.author_id for c in candidates], budget)
            return self.scorer.prepare(
                candidates,
                interests=interests,
                quality=quality,
                context=context,
                seed=seed,
                now=now,
            )

        def emit(pool: list[ScoredCandidate], relaxed: bool = False) -> list[Emitted]:
            policy.relaxed = relaxed
            rng = self.scorer.exploration_rng(seed, page_index)
            return emit_page(pool, policy, self.scorer, rng)

        pool = await score(unseen)
        emitted = emit(pool)

        if len(emitted) < page_size:
            taken = {entry.post.id for entry in pool}
            repeats = await self.selector.select_repeats(
                request.viewer_id, taken=taken, now=now, budget=budget, report=report
            )
            if repeats:
                pool = _merge(pool, await score(repeats))
                emitted = emit(pool)

        if len(emitted) < page_size:
            taken = {entry.post.id for entry in pool}
            fallback = await self.selector.select_fallback(
                request.viewer_id, taken=taken, limit=page_size, budget=budget, report=report
            )
            if fallback:
                pool = _merge(pool, await score(fallback))
                emitted = emit(pool)

        if 0 < len(emitted) < page_size and len(pool) > len(emitted):
            relaxed = emit(pool, relaxed=True)
            if len(relaxed) > len(emitted):
                obs_metrics.FEED_DIVERSITY_RELAXED.inc()
                _LOG.warning(
                    "feed.diversity_relaxed",
                    extra={"strict": len(emitted), "relaxed": len(relaxed), "page_size": page_size},
                )
                emitted = relaxed

        if not emitted:
            raise await self._empty_page_error(report, budget)

        items = [
            models.RankedItem(
                post_id=chosen.item.post.id,
                playback_id=chosen.item.post.playback_id,
                duration_ms=chosen.item.post.duration_ms,
                author_id=chosen.item.post.author_id,
                author_handle=chosen.item.post.author_handle,
                author_avatar_url=chosen.item.post.author_avatar_url,
                source_tier=chosen.item.tier,
                score=round(chosen.score, 6),
                original_score=round(chosen.original_score, 6),
                jitter=round(chosen.item.jitter, 6),
            )
            for chosen in emitted
        ]
        next_key, next_served = self._next_position(
            emitted, selection, after_key, served, limit=page_size * cfg.working_multiple
        )
        next_cursor = encode_cursor(
            FeedCursor(
                session_id=request.session_id,
                refresh_nonce=request.refresh_nonce,
                page_index=page_index + 1,
                last_post_key=next_key,
                served=next_served,
            )
        )
        variation = None
        if previous_ids is not None:
            variation = self._variation(previous_ids, items, page_size, eligible=len(pool))

        deadline_exceeded = budget.expired
        if deadline_exceeded:
            _LOG.warning(
                "feed.deadline_exceeded",
                extra={"items": len(items), "page_size": page_size, "elapsed_ms": round(budget.elapsed_ms(), 2)},
            )

        memo = models.PageMemo(
            viewer_id=request.viewer_id,
            session_id=request.session_id,
            refresh_nonce=request.refresh_nonce,
            page_key=memo_key.page_key,
            items=items,
            next_cursor=next_cursor,
            total_candidates=len(pool),
            created_at=now,
        )
        started = budget.elapsed()
        await self._persist(request, memo_key, memo, page_index, next_cursor, budget)
        cache_seconds += budget.elapsed() - started

        for item in items:
            obs_metrics.FEED_ITEMS_EMITTED.labels(tier=item.source_tier.value).inc()
        obs_metrics.FEED_RANK_SCORE_AVG.set(sum(item.score for item in items) / len(items))
        elapsed_ms = budget.elapsed_ms()
        obs_metrics.FEED_PAGE_DURATION.labels(cache="miss").observe(elapsed_ms)
        if elapsed_ms > cfg.p95_target_ms:
            _LOG.warning(
                "feed.slow_page",
                extra={
                    "elapsed_ms": round(elapsed_ms, 2),
                    "page_size": page_size,
                    "total_candidates": len(pool),
                    "refresh_nonce": request.refresh_nonce,
                },
            )

        return dto.FeedResponse(
            items=items,
            next_cursor=next_cursor,
            cache_hit=False,
            used_refresh_nonce=request.refresh_nonce,
            total_candidates=len(pool),
            variation_stats=variation,
            performance=dto.Performance(
                elapsed_ms=round(elapsed_ms, 3),
                cache_lookup_ms=round(cache_seconds * 1000.0, 3),
                db_query_ms=round(report.db_seconds * 1000.0, 3),
                deadline_exceeded=deadline_exceeded,
                skipped_tiers=report.skipped_tiers(),
            ),
        )

    # --- request shaping -------------------------------------------------

    def _resolve_cursor(self, request: dto.FeedRequest) -> Optional[FeedCursor]:
        if not request.cursor:
            return None
        cursor = decode_cursor(request.cursor)
        if cursor.refresh_nonce > request.refresh_nonce:
            raise InvalidCursorError("cursor was issued for a newer refresh")
        if cursor.session_id != request.session_id or cursor.refresh_nonce < request.refresh_nonce:
            _LOG.info(
                "feed.stale_cursor_ignored",
                extra={"cursor_nonce": cursor.refresh_nonce, "refresh_nonce": request.refresh_nonce},
            )
            return None
        return cursor

    @staticmethod
    def _page_key(opened_at: datetime, page_index: int, after_key: Optional[PostKey]) -> str:
        anchor = "-" if after_key is None else f"{after_key[0].isoformat()}|{after_key[1]}"
        return f"{opened_at.isoformat()}:{page_index}:{anchor}"

    @staticmethod
    def _next_position(
        emitted: Sequence[Emitted],
        selection: UnseenSelection,
        after_key: Optional[PostKey],
        served: Sequence[PostKey],
        *,
        limit: int,
    ) -> tuple[Optional[PostKey], tuple[PostKey, ...]]:
        """Advance the keyset only past the emitted prefix of the fresh window.

        Window posts newer than the returned key were all emitted; emitted
        posts older than it travel in the cursor so later pages skip them.
        Once that list outgrows ``limit`` the key jumps to its oldest entry.
        """

        emitted_fresh = {
            chosen.item.post.keyset for chosen in emitted if chosen.item.tier == Tier.FRESH
        }
        window = sorted(
            (candidate.post.keyset for candidate in selection.candidates if candidate.tier == Tier.FRESH),
            reverse=True,
        )
        anchor = after_key
        for key in window:
            if key not in emitted_fresh:
                break
            anchor = key
        else:
            anchor = selection.fresh_window_key or after_key

        carried = set(served) | emitted_fresh
        if anchor is not None:
            carried = {key for key in carried if key < anchor}
        if len(carried) > limit:
            anchor = min(carried)
            carried = set()
        return anchor, tuple(sorted(carried, reverse=True))

    # --- downstream reads ------------------------------------------------

    async def _exclude_set(self, viewer_id: str, now: datetime, budget: RequestBudget, report: TierReport) -> set[str]:
        since = now - self.config.repeat_cooldown
        started = budget.elapsed()
        try:
            return set(await budget.run(self.impressions.exclude_set(viewer_id, since)))
        except Exception:
            obs_metrics.FEED_EXCLUDE_SET_FAILURES.inc()
            _LOG.warning("feed.exclude_set_degraded", extra={"since": since}, exc_info=True)
            return set()
        finally:
            report.db_seconds += budget.elapsed() - started

    async def _interests(self, viewer_id: str, budget: RequestBudget) -> models.InterestSignal:
        try:
            return await budget.run(self.signals.interests_for(viewer_id))
        except Exception:
            _LOG.warning("feed.interests_unavailable", exc_info=True)
            return models.InterestSignal.neutral(viewer_id)

    async def _quality(self, creator_ids: list[str], budget: RequestBudget) -> dict[str, models.CreatorQuality]:
        if not creator_ids:
            return {}
        try:
            return await budget.run(self.signals.quality_for(creator_ids))
        except Exception:
            _LOG.warning("feed.quality_unavailable", extra={"creators": len(set(creator_ids))}, exc_info=True)
            return {}

    async def _cache_call(
        self,
        op: str,
        call: Callable[[], Awaitable[T]],
        budget: RequestBudget,
        *,
        floor: float = 0.0,
    ) -> Optional[T]:
        try:
            return await budget.run(call(), floor=floor)
        except Exception:
            obs_metrics.inc_cache_failure(op)
            _LOG.warning("feed.cache_bypass", extra={"op": op}, exc_info=True)
            return None

    async def _persist(
        self,
        request: dto.FeedRequest,
        memo_key: MemoKey,
        memo: models.PageMemo,
        page_index: int,
        next_cursor: str,
        budget: RequestBudget,
    ) -> None:
        # Bookkeeping writes keep a small allowance even when the page budget is spent.
        floor = min(0.05, self.config.downstream_deadline)
        await self._cache_call("put_memo", lambda: self.cache.put_memo(memo_key, memo), budget, floor=floor)
        if page_index == 0:
            await self._cache_call(
                "put_first_page",
                lambda: self.cache.put_first_page(
                    request.viewer_id,
                    request.session_id,
                    request.refresh_nonce,
                    [item.post_id for item in memo.items],
                ),
                budget,
                floor=floor,
            )
        state = models.SessionState(
            viewer_id=request.viewer_id,
            session_id=request.session_id,
            opened_at=request.session_opened_at,
            refresh_nonce=request.refresh_nonce,
            last_page_cursor=next_cursor,
        )
        await self._cache_call("advance_session", lambda: self.cache.advance_session(state), budget, floor=floor)

    async def _empty_page_error(self, report: TierReport, budget: RequestBudget) -> FeedError:
        if budget.expired:
            return DeadlineError()
        if report.skipped:
            try:
                has_inventory = await budget.run(self.store.has_eligible(), floor=0.05)
            except Exception:
                _LOG.error("feed.all_tiers_failed", extra={"skipped": dict(report.skipped)}, exc_info=True)
                return InternalError()
            if has_inventory:
                _LOG.error("feed.all_tiers_failed", extra={"skipped": dict(report.skipped)})
                return InternalError()
        return NoInventoryError()

    # --- response shaping ------------------------------------------------

    def _memo_response(self, memo: models.PageMemo, budget: RequestBudget, cache_seconds: float) -> dto.FeedResponse:
        elapsed_ms = budget.elapsed_ms()
        obs_metrics.FEED_PAGE_DURATION.labels(cache="hit").observe(elapsed_ms)
        return dto.FeedResponse(
            items=memo.items,
            next_cursor=memo.next_cursor,
            cache_hit=True,
            used_refresh_nonce=memo.refresh_nonce,
            total_candidates=memo.total_candidates,
            performance=dto.Performance(
                elapsed_ms=round(elapsed_ms, 3),
                cache_lookup_ms=round(cache_seconds * 1000.0, 3),
            ),
        )

    def _variation(
        self,
        previous_ids: list[str],
        items: list[models.RankedItem],
        page_size: int,
        *,
        eligible: int,
    ) -> dto.VariationStats:
        previous = set(previous_ids[:page_size])
        current = [item.post_id for item in items[:page_size]]
        different = sum(1 for post_id in current if post_id not in previous)
        stats = dto.VariationStats(
            previous_count=len(previous),
            current_count=len(current),
            different_count=different,
            variation=round(different / min(len(current), page_size), 4) if current else 0.0,
            low_variation=different < self.config.min_refresh_delta,
        )
        if stats.low_variation:
            obs_metrics.FEED_LOW_VARIATION.inc()
            _LOG.warning(
                "feed.low_variation",
                extra={
                    "different_count": different,
                    "previous_count": stats.previous_count,
                    "current_count": stats.current_count,
                    "total_candidates": eligible,
                },
            )
        return stats


def _merge(pool: list[ScoredCandidate], extra: list[ScoredCandidate]) -> list[ScoredCandidate]:
    merged = pool + extra
    merged.sort(key=lambda entry: (entry.base + entry.jitter, entry.post.id), reverse=True)
    return merged


__all__ = ["EmitPolicy", "Emitted", "FeedAssembler", "emit_page"]
