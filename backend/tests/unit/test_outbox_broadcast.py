import json
import logging

import pytest

from morale.domain.activities import outbox
from morale.obs.logging import JSONLogFormatter


@pytest.mark.asyncio
async def test_broadcast_appends_deduped_topics_to_stream(fake_redis):
	await outbox.broadcast(
		[outbox.POLL_VOTES, outbox.ANNOUNCEMENTS, outbox.POLL_VOTES], activity_id="act-1", reason="vote"
	)

	entries = await fake_redis.xrange(outbox.TOPIC_STREAM)
	assert len(entries) == 1
	fields = entries[0][1]
	assert fields == {"topics": "pollVotes,announcements", "activity_id": "act-1", "reason": "vote"}


@pytest.mark.asyncio
async def test_broadcast_omits_missing_fields(fake_redis):
	await outbox.broadcast([outbox.ANNOUNCEMENTS])

	entries = await fake_redis.xrange(outbox.TOPIC_STREAM)
	assert entries[0][1] == {"topics": "announcements"}


@pytest.mark.asyncio
async def test_broadcast_without_topics_is_skipped(fake_redis):
	await outbox.broadcast([])
	assert await fake_redis.xlen(outbox.TOPIC_STREAM) == 0


@pytest.mark.asyncio
async def test_broadcast_failure_is_swallowed(fake_redis, monkeypatch, caplog):
	async def broken(*_args, **_kwargs):
		raise ConnectionError("redis down")

	monkeypatch.setattr(fake_redis, "xadd", broken)
	with caplog.at_level(logging.WARNING, logger="morale.domain.activities.outbox"):
		await outbox.broadcast([outbox.VOTING], activity_id="act-2")

	assert any(r.getMessage() == "activities_broadcast_failed" for r in caplog.records)


def test_log_formatter_redacts_payment_fields():
	record = logging.LogRecord("morale", logging.INFO, __file__, 1, "form_submitted", None, None)
	record.order_id = "ord-123"
	record.activity_id = "act-1"

	payload = json.loads(JSONLogFormatter().format(record))

	assert payload["order_id"] == "[redacted]"
	assert payload["activity_id"] == "act-1"
	assert payload["msg"] == "form_submitted"
