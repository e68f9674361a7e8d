"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from morale.api import activities, ops
from morale.api.errors import install_error_handlers
from morale.api.middleware_request_id import RequestIdMiddleware
from morale.infra import postgres
from morale.obs import init as obs_init
from morale.settings import settings
from morale.workers.sweeper import SweepWorker


@asynccontextmanager
async def lifespan(app: FastAPI):
	await postgres.init_pool()
	worker_tasks: list[asyncio.Task] = []
	sweeper: SweepWorker | None = None
	if settings.sweep_enabled:
		sweeper = SweepWorker(service=activities._service)
		worker_tasks.append(asyncio.create_task(sweeper.run_forever(), name="activities-sweeper"))
	app.state.sweeper = sweeper
	try:
		yield
	finally:
		if sweeper is not None:
			sweeper.stop()
		for task in worker_tasks:
			task.cancel()
		await asyncio.gather(*worker_tasks, return_exceptions=True)
		await postgres.close_pool()


app = FastAPI(title="Morale Activities", lifespan=lifespan)
install_error_handlers(app)
obs_init(app)

# Ensure every request carries an X-Request-Id and make it available on request.state
app.add_middleware(RequestIdMiddleware)

app.include_router(activities.router, tags=["activities"])
app.include_router(ops.router, tags=["ops"])


def run() -> None:
	import uvicorn

	uvicorn.run("morale.main:app", host=settings.api_host, port=settings.api_port, log_config=None)
