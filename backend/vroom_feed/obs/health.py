"""Liveness and readiness probes."""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Any, Awaitable, Callable, Dict, Tuple

from vroom_feed.infra import postgres
from vroom_feed.infra.redis import redis_client
from vroom_feed.obs import metrics

_LOG = logging.getLogger(__name__)


async def _timed(check: Callable[[], Awaitable[object]], timeout: float) -> float:
	started = perf_counter()
	await asyncio.wait_for(check(), timeout=timeout)
	return perf_counter() - started


async def _select_one() -> None:
	pool = await postgres.get_pool()
	async with pool.acquire() as conn:
		await conn.execute("SELECT 1")


async def _redis_status(timeout: float = 0.2) -> Dict[str, Any]:
	try:
		latency = await _timed(redis_client.ping, timeout)
	except Exception:
		metrics.mark_redis(False)
		_LOG.warning("health.redis_unavailable", exc_info=True)
		return {"ok": False, "error": "redis_unavailable"}
	metrics.mark_redis(True, latency_seconds=latency)
	return {"ok": True, "latency_ms": round(latency * 1000, 2)}


async def _postgres_status(timeout: float = 0.3) -> Dict[str, Any]:
	try:
		latency = await _timed(_select_one, timeout)
	except Exception:
		metrics.mark_postgres(False)
		_LOG.warning("health.postgres_unavailable", exc_info=True)
		return {"ok": False, "error": "postgres_unavailable"}
	metrics.mark_postgres(True, latency_seconds=latency)
	return {"ok": True, "latency_ms": round(latency * 1000, 2)}


async def liveness() -> Dict[str, Any]:
	return {"status": "ok"}


async def readiness() -> Tuple[int, Dict[str, Any]]:
	"""Ready when Postgres answers; a Redis outage only marks the service degraded."""

	checks = {"redis": await _redis_status(), "postgres": await _postgres_status()}
	ready = bool(checks["postgres"]["ok"])
	degraded = not all(check["ok"] for check in checks.values())
	return (200 if ready else 503), {"status": "degraded" if degraded else "ok", "checks": checks}
