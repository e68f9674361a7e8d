import asyncio

import pytest

from morale.domain.activities import models, schemas
from morale.domain.activities.outbox import TOPIC_STREAM


def announcement(publish_at: int, **overrides) -> schemas.ActivityDraft:
	data = {"event_type": "announcement", "title": "Town hall", "description": "Friday", "publish_at": publish_at}
	data.update(overrides)
	return schemas.ActivityDraft(**data)


@pytest.mark.asyncio
async def test_sweep_publishes_due_rows_once(service, clock, admin, notifier):
	created = await service.create_activity(admin, announcement(clock() + 1000))
	clock.advance(1000)

	first = await service.sweep()
	second = await service.sweep()

	assert (first.published, first.deleted, first.archived) == (1, 0, 0)
	assert second.total == 0
	assert (await service.repo.get_activity(created.id)).status == models.PUBLISHED
	assert [n["activity_id"] for n in notifier.sent] == [created.id]


@pytest.mark.asyncio
async def test_sweep_leaves_future_rows_alone(service, clock, admin, notifier):
	created = await service.create_activity(admin, announcement(clock() + 5000))

	result = await service.sweep()

	assert result.total == 0
	assert (await service.repo.get_activity(created.id)).status == models.SCHEDULED
	assert notifier.sent == []


@pytest.mark.asyncio
async def test_sweep_auto_deletes_with_cascade(service, clock, admin, member, storage):
	now = clock()
	created = await service.create_activity(
		admin,
		schemas.ActivityDraft(
			event_type="poll",
			title="Lunch",
			publish_at=now,
			poll_question="Where?",
			poll_options=["Tacos", "Pho"],
			auto_delete_at=now + 500,
			image_ids=["img-1", "img-2"],
		),
	)
	await service.vote_poll(member, created.id, schemas.PollVoteRequest(selections=["Pho"]))
	clock.advance(500)

	result = await service.sweep()

	assert result.deleted == 1
	assert await service.repo.get_activity(created.id) is None
	assert await service.repo.list_poll_votes(created.id) == []
	assert storage.released == ["img-1", "img-2"]


@pytest.mark.asyncio
async def test_sweep_auto_archives(service, clock, admin):
	now = clock()
	created = await service.create_activity(admin, announcement(now, auto_archive_at=now + 500))
	clock.advance(499)
	assert (await service.sweep()).archived == 0
	clock.advance(1)

	result = await service.sweep()

	assert result.archived == 1
	assert (await service.repo.get_activity(created.id)).status == models.ARCHIVED
	assert [a.id for a in await service.list_archived()] == [created.id]


@pytest.mark.asyncio
async def test_sweep_publishes_and_archives_overdue_row_in_one_run(service, clock, admin, notifier):
	now = clock()
	created = await service.create_activity(admin, announcement(now + 100, auto_archive_at=now + 200))
	clock.advance(300)

	result = await service.sweep()

	assert (result.published, result.archived) == (1, 1)
	assert (await service.repo.get_activity(created.id)).status == models.ARCHIVED
	assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_sweep_continues_past_failing_row(service, clock, admin, monkeypatch):
	bad = await service.create_activity(admin, announcement(clock() + 100, title="Bad"))
	good = await service.create_activity(admin, announcement(clock() + 100, title="Good"))
	clock.advance(100)

	original = service.repo.publish_if_due

	async def flaky(activity_id, now):
		if activity_id == bad.id:
			raise RuntimeError("row locked")
		return await original(activity_id, now)

	monkeypatch.setattr(service.repo, "publish_if_due", flaky)

	result = await service.sweep()

	assert result.published == 1
	assert (await service.repo.get_activity(good.id)).status == models.PUBLISHED
	assert (await service.repo.get_activity(bad.id)).status == models.SCHEDULED


@pytest.mark.asyncio
async def test_overlapping_sweeps_act_once(service, clock, admin, notifier):
	for offset in (10, 20, 30):
		await service.create_activity(admin, announcement(clock() + offset))
	clock.advance(30)

	results = await asyncio.gather(service.sweep(), service.sweep(), service.sweep())

	assert sum(r.published for r in results) == 3
	assert len(notifier.sent) == 3


@pytest.mark.asyncio
async def test_sweep_broadcasts_once_per_run(service, clock, admin, fake_redis):
	for offset in (10, 20):
		await service.create_activity(admin, announcement(clock() + offset))
	clock.advance(20)
	before = await fake_redis.xlen(TOPIC_STREAM)

	await service.sweep()
	await service.sweep()

	entries = await fake_redis.xrange(TOPIC_STREAM)
	assert len(entries) == before + 1
	assert entries[-1][1]["reason"] == "sweep"
	assert entries[-1][1]["topics"] == "announcements"


@pytest.mark.asyncio
async def test_edit_that_removes_auto_delete_wins_over_stale_listing(service, clock, admin, monkeypatch):
	now = clock()
	created = await service.create_activity(admin, announcement(now, auto_delete_at=now + 100))
	clock.advance(100)

	original = service.repo.delete_activity

	async def edit_then_delete(activity_id, *, auto_delete_due_at=None):
		await service.update_activity(admin, activity_id, schemas.ActivityDraft(publish_at=now, auto_delete_at=None))
		return await original(activity_id, auto_delete_due_at=auto_delete_due_at)

	monkeypatch.setattr(service.repo, "delete_activity", edit_then_delete)

	result = await service.sweep()

	assert result.deleted == 0
	assert await service.repo.get_activity(created.id) is not None
