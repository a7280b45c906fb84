from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from vroom_feed.api import ops
from vroom_feed.api.errors import install_error_handlers
from vroom_feed.feed import api as feed_api
from vroom_feed.feed.api import impressions as impressions_api
from vroom_feed.feed.infra.scheduler import JobScheduler
from vroom_feed.feed.workers.impression_flusher import ImpressionFlusher
from vroom_feed.feed.workers.impression_retention import ImpressionRetentionJob
from vroom_feed.infra import postgres
from vroom_feed.obs import init as obs_init
from vroom_feed.settings import settings

_LOG = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	await postgres.init_pool()
	recorder = impressions_api.get_recorder()
	flusher = ImpressionFlusher(recorder)
	worker_tasks: list[asyncio.Task] = []
	worker_instances: list[object] = []
	scheduler: JobScheduler | None = None
	if settings.feed_workers_enabled:
		retention_job = ImpressionRetentionJob()
		scheduler = JobScheduler()
		worker_instances.append(flusher)
		worker_tasks.append(
			asyncio.create_task(flusher.run_forever(), name="feed-impression-flusher")
		)
		scheduler.start()
		scheduler.schedule_every(
			"feed-impression-retention",
			retention_job.run_once,
			seconds=retention_job.interval_seconds,
		)
		app.state.feed_scheduler = scheduler
	app.state.feed_workers = worker_instances
	try:
		yield
	finally:
		if scheduler is not None:
			scheduler.shutdown()
		for instance in worker_instances:
			stop = getattr(instance, "stop", None)
			if callable(stop):
				stop()
		if worker_tasks:
			for task in worker_tasks:
				task.cancel()
			await asyncio.gather(*worker_tasks, return_exceptions=True)
		try:
			await flusher.shutdown()
		except Exception:
			_LOG.exception("feed.recorder_drain_failed")
		await postgres.close_pool()


app = FastAPI(title="Vroom Feed Ranker", lifespan=lifespan)
install_error_handlers(app)
obs_init(app)

app.include_router(feed_api.router)
app.include_router(ops.router, tags=["ops"])
