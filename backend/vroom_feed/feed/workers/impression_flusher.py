"""Background flusher for the impression recorder buffer."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from vroom_feed.feed.services.recorder import ImpressionRecorder
from vroom_feed.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

_JOB_NAME = "impression_flusher"


class ImpressionFlusher:
    """Flushes the recorder whenever its debounce window has elapsed.

    Each flush runs as its own task behind ``asyncio.shield``: cancelling the
    polling loop abandons the wait, never the impression write. ``shutdown``
    waits for that write before draining what is left.
    """

    def __init__(
        self,
        recorder: ImpressionRecorder,
        *,
        poll_seconds: float | None = None,
    ) -> None:
        self.recorder = recorder
        debounce_seconds = recorder.config.recorder_debounce_ms / 1000.0
        self.poll_seconds = poll_seconds if poll_seconds is not None else max(0.05, debounce_seconds / 4)
        self._running = False
        self._inflight: Optional[asyncio.Task[int]] = None

    async def run_forever(self) -> None:
        self._running = True
        while self._running:
            try:
                if self.recorder.flush_due():
                    await self.run_once()
            except Exception:  # pragma: no cover - defensive
                _LOG.exception("impression_flusher.run_once_failed")
            await asyncio.sleep(self.poll_seconds)

    def stop(self) -> None:
        self._running = False

    async def run_once(self) -> int:
        start = time.perf_counter()
        flush = asyncio.ensure_future(self.recorder.flush())
        self._inflight = flush
        try:
            written = await asyncio.shield(flush)
        except Exception:
            obs_metrics.record_job_run(_JOB_NAME, result="error", duration_seconds=time.perf_counter() - start)
            raise
        obs_metrics.record_job_run(_JOB_NAME, result="ok", duration_seconds=time.perf_counter() - start)
        return written

    async def shutdown(self) -> int:
        """Stop polling, finish any in-flight write and flush whatever is still buffered."""

        self.stop()
        written = 0
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            try:
                written += await inflight
            except Exception:
                _LOG.warning("impression_flusher.inflight_failed", exc_info=True)
        self._inflight = None
        written += await asyncio.shield(self.recorder.flush())
        _LOG.info("impression_flusher.drained", extra={"written": written})
        return written


__all__ = ["ImpressionFlusher"]
