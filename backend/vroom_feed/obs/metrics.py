"""Central registry for Prometheus metrics used across the feed ranker."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNTER = Counter(
	"vroom_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"vroom_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.2, 0.25, 0.5, 1.0, 2.0),
)

REDIS_UP = Gauge("vroom_redis_up", "Redis readiness (1=up)")
REDIS_LATENCY = Histogram(
	"vroom_redis_ping_seconds",
	"Redis ping latency",
	buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25),
)
POSTGRES_UP = Gauge("vroom_postgres_up", "Postgres readiness (1=up)")
POSTGRES_LATENCY = Histogram(
	"vroom_postgres_ping_seconds",
	"Postgres readiness query latency",
	buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25),
)

BACKGROUND_RUNS = Counter(
	"vroom_background_job_runs_total",
	"Background job executions",
	["name", "result"],
)
BACKGROUND_DURATION = Histogram(
	"vroom_background_job_duration_seconds",
	"Background job duration",
	["name"],
	buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0),
)

# --- Feed assembly -------------------------------------------------------

FEED_PAGE_DURATION = Histogram(
	"vroom_feed_page_duration_ms",
	"Feed page assembly duration",
	["cache"],
	buckets=[5, 10, 20, 40, 80, 120, 160, 200, 250, 400],
)

FEED_CACHE_LOOKUPS = Counter(
	"vroom_feed_cache_lookups_total",
	"Session cache lookups by result",
	["result"],
)

FEED_CACHE_FAILURES = Counter(
	"vroom_feed_cache_failures_total",
	"Session cache operations that failed and were bypassed",
	["op"],
)

FEED_TIER_SKIPPED = Counter(
	"vroom_feed_tier_skipped_total",
	"Candidate tiers skipped during assembly",
	["tier", "reason"],
)

FEED_TIER_CANDIDATES = Counter(
	"vroom_feed_tier_candidates_total",
	"Candidates produced per tier",
	["tier"],
)

FEED_ITEMS_EMITTED = Counter(
	"vroom_feed_items_emitted_total",
	"Items emitted per source tier",
	["tier"],
)

FEED_EXCLUDE_SET_FAILURES = Counter(
	"vroom_feed_exclude_set_failures_total",
	"Impression log reads that degraded to an empty exclude set",
)

FEED_ERRORS = Counter(
	"vroom_feed_errors_total",
	"Feed requests that ended with an error code",
	["code"],
)

FEED_LOW_VARIATION = Counter(
	"vroom_feed_low_variation_total",
	"Refreshes whose first page changed fewer items than required",
)

FEED_BELOW_WATERLINE = Counter(
	"vroom_feed_below_waterline_total",
	"Assemblies whose unseen pool was below the inventory waterline",
)

FEED_DIVERSITY_RELAXED = Counter(
	"vroom_feed_diversity_relaxed_total",
	"Pages that needed a relaxed creator-diversity pass to fill",
)

FEED_RANK_SCORE_AVG = Gauge(
	"vroom_feed_rank_score_avg",
	"Average score of emitted items in the last assembled page",
)

# --- Impression recording ------------------------------------------------

IMPRESSION_EVENTS = Counter(
	"vroom_impression_events_total",
	"Viewability events received by result",
	["result"],
)

IMPRESSIONS_WRITTEN = Counter(
	"vroom_impressions_written_total",
	"Impressions newly written to the impression log",
)

IMPRESSION_FLUSH_FAILURES = Counter(
	"vroom_impression_flush_failures_total",
	"Recorder flushes that failed",
	["stage"],
)

IMPRESSION_BUFFER_SIZE = Gauge(
	"vroom_impression_buffer_size",
	"Coalesced impressions pending flush",
)

IMPRESSIONS_PRUNED = Counter(
	"vroom_impressions_pruned_total",
	"Impression rows removed by retention",
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def mark_redis(ok: bool, *, latency_seconds: float | None = None) -> None:
	REDIS_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		REDIS_LATENCY.observe(latency_seconds)


def mark_postgres(ok: bool, *, latency_seconds: float | None = None) -> None:
	POSTGRES_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		POSTGRES_LATENCY.observe(latency_seconds)


def record_job_run(name: str, *, result: str, duration_seconds: float | None = None) -> None:
	BACKGROUND_RUNS.labels(name=name, result=result).inc()
	if duration_seconds is not None:
		BACKGROUND_DURATION.labels(name=name).observe(duration_seconds)


def inc_tier_skipped(tier: str, reason: str) -> None:
	FEED_TIER_SKIPPED.labels(tier=tier, reason=reason).inc()


def inc_cache_lookup(result: str) -> None:
	FEED_CACHE_LOOKUPS.labels(result=result).inc()


def inc_cache_failure(op: str) -> None:
	FEED_CACHE_FAILURES.labels(op=op).inc()


def inc_feed_error(code: str) -> None:
	FEED_ERRORS.labels(code=code).inc()


def inc_impression_event(result: str, count: int = 1) -> None:
	IMPRESSION_EVENTS.labels(result=result).inc(count)
