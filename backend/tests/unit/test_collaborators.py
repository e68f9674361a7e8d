import json

import httpx
import pytest

from morale.domain.activities import models
from morale.domain.activities.collaborators import LocalUploadStorage, MattermostWebhookSink
from morale.domain.activities.roster import RosterUser, select_users


@pytest.mark.asyncio
async def test_mattermost_sink_posts_rendered_message():
	captured = []

	def handler(request: httpx.Request) -> httpx.Response:
		captured.append((str(request.url), json.loads(request.content)))
		return httpx.Response(200)

	async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
		sink = MattermostWebhookSink("https://chat.example/hooks/abc", base_url="https://app.example/", client=client)
		await sink.notify_published(title="Spirit cup", event_type="voting", activity_id="act-1")

	assert captured == [
		(
			"https://chat.example/hooks/abc",
			{"text": "**New Voting:** Spirit cup\nhttps://app.example/activities/act-1"},
		)
	]


@pytest.mark.asyncio
async def test_mattermost_sink_raises_on_rejected_webhook():
	async with httpx.AsyncClient(transport=httpx.MockTransport(lambda _req: httpx.Response(500))) as client:
		sink = MattermostWebhookSink("https://chat.example/hooks/abc", client=client)
		with pytest.raises(httpx.HTTPStatusError):
			await sink.notify_published(title="Hi", event_type="announcement", activity_id="act-2")


@pytest.mark.asyncio
async def test_local_storage_removes_files_and_ignores_missing(tmp_path):
	(tmp_path / "img-1").write_bytes(b"x")
	(tmp_path / "img-2").write_bytes(b"y")
	storage = LocalUploadStorage(tmp_path)

	await storage.release_objects(["img-1", "img-3"])

	assert sorted(p.name for p in tmp_path.iterdir()) == ["img-2"]


@pytest.mark.asyncio
async def test_local_storage_refuses_paths_outside_root(tmp_path):
	storage = LocalUploadStorage(tmp_path / "uploads")
	with pytest.raises(ValueError):
		await storage.release_objects(["../secrets.txt"])


def test_roster_filters_match_case_insensitively():
	users = [
		RosterUser("u-1", "Ann", "Archer", group="Alpha", role="member", team="Red"),
		RosterUser("u-2", "Ben", "Baker", group="alpha", role="admin", team="blue"),
		RosterUser("u-3", "Cat", "Cole", group="Bravo", role="member", team="red"),
	]

	picked = select_users(users, models.UserFilters(team="red", group="ALPHA"))
	assert [u.user_id for u in picked] == ["u-1"]

	picked = select_users(users, models.UserFilters(search="bak"))
	assert [u.user_id for u in picked] == ["u-2"]
