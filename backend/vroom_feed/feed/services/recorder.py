"""Viewability-gated impression recording."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable

from vroom_feed.feed.domain import models
from vroom_feed.feed.domain.config import FeedConfig, feed_config
from vroom_feed.feed.infra.impression_log import ImpressionLog
from vroom_feed.feed.infra.signals import SignalStore
from vroom_feed.feed.ranking.signals import ViewObservation
from vroom_feed.feed.schemas import dto
from vroom_feed.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)


@dataclass(slots=True)
class PendingView:
    """Coalesced state for one (viewer, post) pair awaiting flush."""

    impression: models.Impression
    play_ms: int
    duration_ms: int
    liked: bool
    commented: bool
    shared: bool

    def merge(self, event: dto.ViewEvent, shown_at: datetime) -> None:
        if shown_at < self.impression.shown_at:
            self.impression = self.impression.model_copy(update={"shown_at": shown_at})
        self.play_ms = max(self.play_ms, event.play_ms)
        self.duration_ms = max(self.duration_ms, event.duration_ms)
        self.liked = self.liked or event.liked
        self.commented = self.commented or event.commented
        self.shared = self.shared or event.shared

    def observation(self) -> ViewObservation:
        return ViewObservation.from_view(
            play_ms=self.play_ms,
            duration_ms=self.duration_ms,
            liked=self.liked,
            commented=self.commented,
            shared=self.shared,
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ImpressionRecorder:
    """Buffers confirmed views and writes them to the impression log, then the signal store.

    Events below the viewability threshold are dropped before they reach
    either store. Writes are best effort: a failed flush is logged and
    counted and its batch is not retried.
    """

    def __init__(
        self,
        *,
        impressions: ImpressionLog | None = None,
        signals: SignalStore | None = None,
        config: FeedConfig | None = None,
        monotonic: Callable[[], float] | None = None,
    ) -> None:
        self.config = config or feed_config
        self.impressions = impressions or ImpressionLog(self.config)
        self.signals = signals or SignalStore(self.config)
        self._monotonic = monotonic or time.monotonic
        self._pending: dict[tuple[str, str], PendingView] = {}
        self._oldest_pending: float | None = None
        self._lock = asyncio.Lock()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def is_viewable(self, event: dto.ViewEvent) -> bool:
        return (
            event.visible_fraction >= self.config.viewability_threshold
            and event.dwell_ms >= self.config.viewability_dwell_ms
        )

    def flush_due(self) -> bool:
        if not self._pending or self._oldest_pending is None:
            return False
        waited_ms = (self._monotonic() - self._oldest_pending) * 1000.0
        return waited_ms >= self.config.recorder_debounce_ms or len(self._pending) >= self.config.recorder_max_batch

    async def submit(self, events: Iterable[dto.ViewEvent]) -> dto.ImpressionBatchResponse:
        accepted = 0
        rejected = 0
        async with self._lock:
            for event in events:
                if not self.is_viewable(event):
                    rejected += 1
                    continue
                accepted += 1
                shown_at = _as_utc(event.became_visible_at)
                key = (event.viewer_id, event.post_id)
                existing = self._pending.get(key)
                if existing is not None:
                    existing.merge(event, shown_at)
                    continue
                self._pending[key] = PendingView(
                    impression=models.Impression(
                        viewer_id=event.viewer_id,
                        post_id=event.post_id,
                        shown_at=shown_at,
                        source_tier=event.source_tier,
                        session_id=event.session_id,
                        score_at_show=event.score,
                    ),
                    play_ms=event.play_ms,
                    duration_ms=event.duration_ms,
                    liked=event.liked,
                    commented=event.commented,
                    shared=event.shared,
                )
                if self._oldest_pending is None:
                    self._oldest_pending = self._monotonic()
            size = len(self._pending)
        obs_metrics.IMPRESSION_BUFFER_SIZE.set(size)
        if accepted:
            obs_metrics.inc_impression_event("confirmed", accepted)
        if rejected:
            obs_metrics.inc_impression_event("not_viewable", rejected)
        if size >= self.config.recorder_max_batch:
            await self.flush()
        return dto.ImpressionBatchResponse(accepted=accepted, rejected=rejected)

    async def flush(self) -> int:
        """Write everything pending; returns the number of impression rows written."""

        async with self._lock:
            batch = list(self._pending.values())
            self._pending.clear()
            self._oldest_pending = None
        obs_metrics.IMPRESSION_BUFFER_SIZE.set(0)
        if not batch:
            return 0

        try:
            written = await self.impressions.record([entry.impression for entry in batch])
        except Exception:
            obs_metrics.IMPRESSION_FLUSH_FAILURES.labels(stage="impressions").inc()
            _LOG.exception("recorder.flush_failed", extra={"stage": "impressions", "batch": len(batch)})
            return 0
        obs_metrics.IMPRESSIONS_WRITTEN.inc(written)

        failed = 0
        for entry in batch:
            try:
                await self.signals.apply_view(
                    entry.impression.viewer_id,
                    entry.observation(),
                    now=entry.impression.shown_at,
                )
            except Exception:
                failed += 1
                _LOG.warning(
                    "recorder.signal_update_failed",
                    extra={"viewer_id": entry.impression.viewer_id, "post_id": entry.impression.post_id},
                    exc_info=True,
                )
        if failed:
            obs_metrics.IMPRESSION_FLUSH_FAILURES.labels(stage="signals").inc(failed)
        _LOG.debug("recorder.flushed", extra={"batch": len(batch), "written": written, "signal_failures": failed})
        return written


__all__ = ["ImpressionRecorder", "PendingView"]
