import asyncio

import pytest

from morale.domain.activities import models, schemas
from morale.workers.sweeper import LEASE_KEY, SweepWorker


def scheduled(publish_at: int) -> schemas.ActivityDraft:
	return schemas.ActivityDraft(event_type="announcement", title="Later", description="Soon", publish_at=publish_at)


@pytest.mark.asyncio
async def test_process_once_runs_sweep_and_releases_lease(service, clock, admin, fake_redis):
	created = await service.create_activity(admin, scheduled(clock() + 100))
	clock.advance(100)
	worker = SweepWorker(service=service, interval_seconds=30, lease_seconds=10)

	changed = await worker.process_once()

	assert changed == 1
	assert (await service.repo.get_activity(created.id)).status == models.PUBLISHED
	assert await fake_redis.get(LEASE_KEY) is None


@pytest.mark.asyncio
async def test_process_once_skips_when_another_replica_holds_lease(service, clock, admin, fake_redis):
	created = await service.create_activity(admin, scheduled(clock() + 100))
	clock.advance(100)
	await fake_redis.set(LEASE_KEY, "other-replica", ex=10)
	worker = SweepWorker(service=service, interval_seconds=30, lease_seconds=10)

	assert await worker.process_once() is None
	assert (await service.repo.get_activity(created.id)).status == models.SCHEDULED
	assert await fake_redis.get(LEASE_KEY) == "other-replica"


@pytest.mark.asyncio
async def test_process_once_survives_sweep_failure(service, fake_redis, monkeypatch):
	async def boom(now=None):
		raise RuntimeError("database unavailable")

	monkeypatch.setattr(service, "sweep", boom)
	worker = SweepWorker(service=service, interval_seconds=30, lease_seconds=10)

	assert await worker.process_once() is None
	assert await fake_redis.get(LEASE_KEY) is None


@pytest.mark.asyncio
async def test_next_delay_wakes_for_upcoming_publish(service, clock, admin):
	worker = SweepWorker(service=service, interval_seconds=30, lease_seconds=10)
	assert await worker._next_delay() == 30

	await service.create_activity(admin, scheduled(clock() + 2500))
	assert await worker._next_delay() == pytest.approx(2.5)


@pytest.mark.asyncio
async def test_stop_ends_run_loop(service):
	worker = SweepWorker(service=service, interval_seconds=60, lease_seconds=10)
	task = asyncio.create_task(worker.run_forever())
	await asyncio.sleep(0.05)

	worker.stop()

	await asyncio.wait_for(task, timeout=1)
	assert task.done()
