"""Periodic pruning of impressions older than the repeat cooldown."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable

from vroom_feed.feed.domain.config import FeedConfig, feed_config
from vroom_feed.feed.infra.impression_log import ImpressionLog
from vroom_feed.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

_JOB_NAME = "impression_retention"


class ImpressionRetentionJob:
    """Deletes impression rows that can no longer affect the exclude set."""

    def __init__(
        self,
        *,
        impressions: ImpressionLog | None = None,
        config: FeedConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or feed_config
        self.impressions = impressions or ImpressionLog(self.config)
        self.interval_seconds = self.config.retention_interval_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run_once(self) -> int:
        start = time.perf_counter()
        cutoff = self._clock() - self.config.repeat_cooldown
        try:
            pruned = await self.impressions.prune(cutoff)
        except Exception:
            obs_metrics.record_job_run(_JOB_NAME, result="error", duration_seconds=time.perf_counter() - start)
            raise
        duration = time.perf_counter() - start
        obs_metrics.IMPRESSIONS_PRUNED.inc(pruned)
        obs_metrics.record_job_run(_JOB_NAME, result="ok", duration_seconds=duration)
        _LOG.info("impression_retention.pruned", extra={"count": pruned, "cutoff": cutoff.isoformat()})
        return pruned


__all__ = ["ImpressionRetentionJob"]
