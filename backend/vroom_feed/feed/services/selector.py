"""Tiered candidate selection for the feed."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional, Sequence, TypeVar

from vroom_feed.feed.domain import models
from vroom_feed.feed.domain.config import FeedConfig, feed_config
from vroom_feed.feed.domain.cursor import PostKey
from vroom_feed.feed.infra.candidate_store import CandidateStore
from vroom_feed.feed.infra.impression_log import ImpressionLog
from vroom_feed.feed.ranking.scorer import Candidate
from vroom_feed.feed.services.budget import RequestBudget
from vroom_feed.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

T = TypeVar("T")

Tier = models.SourceTier


@dataclass(slots=True)
class TierReport:
    """What each tier produced, and which tiers were skipped and why."""

    counts: dict[str, int] = field(default_factory=dict)
    skipped: dict[str, str] = field(default_factory=dict)
    db_seconds: float = 0.0

    def skipped_tiers(self) -> list[str]:
        return list(self.skipped)


@dataclass(slots=True)
class UnseenSelection:
    candidates: list[Candidate]
    fresh_window_key: Optional[PostKey]
    report: TierReport


class CandidateSelector:
    """Builds candidate pools tier by tier.

    Tiers 1-3 never return posts in the viewer's cooldown set, posts the
    viewer authored, or posts already produced by an earlier tier of the same
    request. Every tier read runs under the request budget; failures and
    timeouts skip the tier and are recorded on the report.
    """

    def __init__(
        self,
        store: CandidateStore | None = None,
        impressions: ImpressionLog | None = None,
        config: FeedConfig | None = None,
    ) -> None:
        self.config = config or feed_config
        self.store = store or CandidateStore(self.config)
        self.impressions = impressions or ImpressionLog(self.config)

    async def select_unseen(
        self,
        viewer_id: str,
        *,
        exclude: set[str],
        target: int,
        after_cursor: Optional[PostKey],
        now: datetime,
        budget: RequestBudget,
        report: TierReport,
    ) -> UnseenSelection:
        """Collect Fresh, Followed and Trending pools until ``target`` candidates exist."""

        pooled: list[Candidate] = []
        seen: set[str] = set()
        window_key: Optional[PostKey] = None

        fresh_rows = await self._run_tier(
            Tier.FRESH,
            lambda: self.store.fresh_eligible(target, after_cursor, exclude_author=viewer_id),
            budget,
            report,
        )
        if fresh_rows:
            window_key = min(post.keyset for post in fresh_rows)
            self._extend(pooled, seen, fresh_rows, Tier.FRESH, viewer_id, exclude, report)

        if len(pooled) < target:
            followed_rows = await self._run_tier(
                Tier.FOLLOWED,
                lambda: self.store.followed_eligible(viewer_id, target, after_cursor),
                budget,
                report,
            )
            self._extend(pooled, seen, followed_rows or [], Tier.FOLLOWED, viewer_id, exclude, report)

        if len(pooled) < target:
            # Over-fetch: the top of the trending list is often already in cooldown.
            trending_limit = target * 2
            trending_rows = await self._run_tier(
                Tier.TRENDING,
                lambda: self.store.trending_eligible(
                    trending_limit,
                    self.config.trending_horizon,
                    exclude_author=viewer_id,
                    now=now,
                ),
                budget,
                report,
            )
            remaining = target - len(pooled)
            self._extend(pooled, seen, trending_rows or [], Tier.TRENDING, viewer_id, exclude, report, limit=remaining)

        return UnseenSelection(candidates=pooled, fresh_window_key=window_key, report=report)

    async def select_repeats(
        self,
        viewer_id: str,
        *,
        taken: set[str],
        now: datetime,
        budget: RequestBudget,
        report: TierReport,
    ) -> list[Candidate]:
        """Prior impressions old enough and strong enough to be shown again."""

        cap = self.config.max_repeats_per_page
        if cap <= 0:
            return []
        history = await self._run_tier(
            Tier.CONTROLLED_REPEAT,
            lambda: self.impressions.repeat_candidates(
                viewer_id,
                shown_before=now - self.config.min_repeat_age,
                min_score=self.config.repeat_min_score,
                limit=cap * 4,
            ),
            budget,
            report,
        )
        if not history:
            return []
        score_by_post = {entry.post_id: entry.score_at_show for entry in history}
        posts = await self._run_tier(
            Tier.CONTROLLED_REPEAT,
            lambda: self.store.by_ids([entry.post_id for entry in history]),
            budget,
            report,
        )
        repeats: list[Candidate] = []
        for post in posts or []:
            if len(repeats) >= cap:
                break
            if post.id in taken or not self._admissible(post, viewer_id):
                continue
            repeats.append(Candidate(post=post, tier=Tier.CONTROLLED_REPEAT, score_at_show=score_by_post.get(post.id)))
        report.counts[Tier.CONTROLLED_REPEAT.value] = len(repeats)
        obs_metrics.FEED_TIER_CANDIDATES.labels(tier=Tier.CONTROLLED_REPEAT.value).inc(len(repeats))
        return repeats

    async def select_fallback(
        self,
        viewer_id: str,
        *,
        taken: set[str],
        limit: int,
        budget: RequestBudget,
        report: TierReport,
    ) -> list[Candidate]:
        """Last resort: least-recently-shown eligible posts, then newest eligible regardless of cooldown."""

        history = await self._run_tier(
            Tier.FALLBACK_ANY,
            lambda: self.impressions.least_recently_shown(viewer_id, limit * 2),
            budget,
            report,
        )
        posts: list[models.Post] = []
        if history:
            hydrated = await self._run_tier(
                Tier.FALLBACK_ANY,
                lambda: self.store.by_ids([entry.post_id for entry in history]),
                budget,
                report,
            )
            posts.extend(hydrated or [])
        if len(posts) < limit:
            newest = await self._run_tier(
                Tier.FALLBACK_ANY,
                lambda: self.store.fresh_eligible(limit * 2, None, exclude_author=viewer_id),
                budget,
                report,
            )
            posts.extend(newest or [])

        fallback: list[Candidate] = []
        seen = set(taken)
        for post in posts:
            if len(fallback) >= limit:
                break
            if post.id in seen or not self._admissible(post, viewer_id):
                continue
            seen.add(post.id)
            fallback.append(Candidate(post=post, tier=Tier.FALLBACK_ANY))
        report.counts[Tier.FALLBACK_ANY.value] = len(fallback)
        obs_metrics.FEED_TIER_CANDIDATES.labels(tier=Tier.FALLBACK_ANY.value).inc(len(fallback))
        return fallback

    def _admissible(self, post: models.Post, viewer_id: str) -> bool:
        return post.author_id != viewer_id and post.is_eligible(self.config.max_upload_duration_ms)

    def _extend(
        self,
        pooled: list[Candidate],
        seen: set[str],
        rows: Iterable[models.Post],
        tier: Tier,
        viewer_id: str,
        exclude: set[str],
        report: TierReport,
        *,
        limit: Optional[int] = None,
    ) -> None:
        added = 0
        for post in rows:
            if limit is not None and added >= limit:
                break
            if post.id in seen or post.id in exclude:
                continue
            if not self._admissible(post, viewer_id):
                continue
            seen.add(post.id)
            pooled.append(Candidate(post=post, tier=tier))
            added += 1
        report.counts[tier.value] = report.counts.get(tier.value, 0) + added
        obs_metrics.FEED_TIER_CANDIDATES.labels(tier=tier.value).inc(added)

    async def _run_tier(
        self,
        tier: Tier,
        call: Callable[[], Awaitable[Sequence[T]]],
        budget: RequestBudget,
        report: TierReport,
    ) -> Optional[Sequence[T]]:
        if tier.value in report.skipped:
            return None
        started = budget.elapsed()
        try:
            return await budget.run(call())
        except asyncio.TimeoutError:
            reason = "deadline"
            _LOG.warning("feed.tier_skipped", extra={"tier": tier.value, "reason": reason})
        except Exception:
            reason = "error"
            _LOG.warning("feed.tier_skipped", extra={"tier": tier.value, "reason": reason}, exc_info=True)
        finally:
            report.db_seconds += budget.elapsed() - started
        report.skipped[tier.value] = reason
        obs_metrics.inc_tier_skipped(tier.value, reason)
        return None


__all__ = ["CandidateSelector", "TierReport", "UnseenSelection"]
