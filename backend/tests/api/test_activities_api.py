import time

import pytest

from morale.infra import jwt as jwt_helper

ADMIN = {"X-User-Id": "u-admin", "X-User-Name": "Ada Admin", "X-User-Roles": "admin"}
MEMBER = {"X-User-Id": "u-ann", "X-User-Name": "Ann Archer"}


def _now_ms() -> int:
	return int(time.time() * 1000)


async def _create_poll(api_client, **overrides) -> str:
	body = {
		"event_type": "poll",
		"title": "Lunch spot",
		"publish_at": _now_ms() - 1000,
		"poll_question": "Where should we eat?",
		"poll_options": ["Tacos", "Pho"],
	}
	body.update(overrides)
	resp = await api_client.post("/activities", json=body, headers=ADMIN)
	assert resp.status_code == 201, resp.text
	return resp.json()["id"]


@pytest.mark.asyncio
async def test_create_and_fetch_activity(api_client):
	resp = await api_client.post(
		"/activities",
		json={"event_type": "announcement", "title": "Town hall", "description": "Noon", "publish_at": _now_ms() - 10},
		headers=ADMIN,
	)
	assert resp.status_code == 201
	created = resp.json()
	assert created["status"] == "published"

	resp = await api_client.get(f"/activities/{created['id']}")
	assert resp.status_code == 200
	body = resp.json()
	assert body["title"] == "Town hall"
	assert body["created_by"] == "Ada Admin"

	listed = await api_client.get("/activities/published")
	assert [a["id"] for a in listed.json()] == [created["id"]]


@pytest.mark.asyncio
async def test_create_without_identity_is_unauthorized(api_client):
	resp = await api_client.post(
		"/activities",
		json={"event_type": "announcement", "title": "Town hall", "description": "Noon", "publish_at": _now_ms()},
	)
	assert resp.status_code == 401
	assert resp.json()["detail"]["code"] == "unauthorized"


@pytest.mark.asyncio
async def test_validation_errors_carry_code_and_request_id(api_client):
	now = _now_ms()
	resp = await api_client.post(
		"/activities",
		json={
			"event_type": "announcement",
			"title": "Town hall",
			"description": "Noon",
			"publish_at": now + 10_000,
			"auto_delete_at": now,
		},
		headers={**ADMIN, "X-Request-Id": "req-123"},
	)
	assert resp.status_code == 422
	body = resp.json()
	assert body["detail"]["code"] == "auto_delete_before_publish"
	assert body["request_id"] == "req-123"


@pytest.mark.asyncio
async def test_missing_activity_is_404(api_client):
	resp = await api_client.get("/activities/does-not-exist")
	assert resp.status_code == 404
	assert resp.json()["detail"]["code"] == "not_found"


@pytest.mark.asyncio
async def test_poll_vote_round_trip(api_client):
	activity_id = await _create_poll(api_client)

	resp = await api_client.post(f"/activities/{activity_id}/poll/vote", json={"selections": ["Pho"]}, headers=MEMBER)
	assert resp.status_code == 200
	assert resp.json()["current_user_selections"] == ["Pho"]

	resp = await api_client.post(
		f"/activities/{activity_id}/poll/vote", json={"selections": ["Tacos", "Pho"]}, headers=MEMBER
	)
	assert resp.status_code == 422
	assert resp.json()["detail"]["code"] == "too_many_selections"

	resp = await api_client.get(f"/activities/{activity_id}/poll/breakdown", headers=MEMBER)
	assert resp.status_code == 403
	resp = await api_client.get(f"/activities/{activity_id}/poll/breakdown", headers=ADMIN)
	assert resp.status_code == 200
	assert resp.json()["total_votes"] == 1


@pytest.mark.asyncio
async def test_vote_purchase_limit_maps_to_conflict(api_client):
	resp = await api_client.post(
		"/activities",
		json={
			"event_type": "voting",
			"title": "Spirit cup",
			"publish_at": _now_ms() - 1000,
			"voting_participants": [{"user_id": "u-ann", "first_name": "Ann", "last_name": "Archer"}],
			"voting_add_vote_price": 1,
			"voting_allow_removals": False,
			"voting_add_vote_limit": 2,
			"voting_allow_ungrouped": True,
		},
		headers=ADMIN,
	)
	activity_id = resp.json()["id"]
	url = f"/activities/{activity_id}/voting/purchase"

	ok = await api_client.post(url, json={"adjustments": [{"user_id": "u-ann", "add": 2}]}, headers=MEMBER)
	assert ok.status_code == 200
	assert ok.json()["success"] is True

	over = await api_client.post(url, json={"adjustments": [{"user_id": "u-ann", "add": 1}]}, headers=MEMBER)
	assert over.status_code == 409
	assert over.json()["detail"]["code"] == "add_limit_exceeded"

	board = await api_client.get(f"/activities/{activity_id}/voting/leaderboard")
	assert board.json()["sections"][0]["entries"][0]["votes"] == 2


@pytest.mark.asyncio
async def test_form_submission_requires_payment(api_client):
	resp = await api_client.post(
		"/activities",
		json={
			"event_type": "form",
			"title": "Gala tickets",
			"description": "Black tie",
			"publish_at": _now_ms() - 1000,
			"form_price": 15,
			"form_questions": [{"id": "diet", "type": "free_text", "prompt": "Dietary needs", "required": False}],
		},
		headers=ADMIN,
	)
	activity_id = resp.json()["id"]
	url = f"/activities/{activity_id}/form/submissions"

	unpaid = await api_client.post(url, json={"answers": []}, headers=MEMBER)
	assert unpaid.status_code == 402

	paid = await api_client.post(
		url, json={"answers": [], "payment": {"order_id": "ord-7", "amount": 15}}, headers=MEMBER
	)
	assert paid.status_code == 201
	assert paid.json()["payment_amount"] == 15

	listed = await api_client.get(url, headers=ADMIN)
	assert [s["payment_order_id"] for s in listed.json()] == ["ord-7"]


@pytest.mark.asyncio
async def test_sweep_endpoint_is_admin_only(api_client):
	resp = await api_client.post("/activities/sweep", headers=MEMBER)
	assert resp.status_code == 403

	resp = await api_client.post("/activities/sweep", headers=ADMIN)
	assert resp.status_code == 200
	assert set(resp.json()) == {"published", "deleted", "archived"}


@pytest.mark.asyncio
async def test_delete_then_archive_flow(api_client):
	activity_id = await _create_poll(api_client)

	resp = await api_client.post(f"/activities/{activity_id}/archive", headers=ADMIN)
	assert resp.status_code == 200
	assert resp.json()["status"] == "archived"

	resp = await api_client.delete(f"/activities/{activity_id}", headers=ADMIN)
	assert resp.status_code == 204
	resp = await api_client.get(f"/activities/{activity_id}")
	assert resp.status_code == 404


@pytest.mark.asyncio
async def test_health(api_client):
	resp = await api_client.get("/health")
	assert resp.status_code == 200
	assert resp.json()["status"] == "ok"
	assert resp.headers.get("X-Request-Id")


@pytest.mark.asyncio
async def test_bearer_token_identifies_caller(api_client):
	token = jwt_helper.encode_access({"sub": "u-admin", "name": "Ada Admin", "roles": ["admin"]})
	resp = await api_client.post("/activities/sweep", headers={"Authorization": f"Bearer {token}"})
	assert resp.status_code == 200

	resp = await api_client.post("/activities/sweep", headers={"Authorization": "Bearer not-a-token"})
	assert resp.status_code == 401
