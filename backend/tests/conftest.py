import sys
from pathlib import Path
from typing import Iterable, List

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from morale.domain.activities.repository import ActivitiesRepository, reset_memory_state
from morale.domain.activities.roster import InMemoryRosterProvider, RosterUser
from morale.domain.activities.service import ActivitiesService
from morale.infra import postgres
from morale.infra.auth import AuthenticatedUser
from morale.main import app
from morale.settings import settings

NOW = 1_760_000_000_000


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from morale.infra.redis import redis_client, set_redis_client

	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest_asyncio.fixture(autouse=True)
async def reset_memory():
	await reset_memory_state()
	yield
	await reset_memory_state()


@pytest.fixture(autouse=True)
def force_test_settings():
	"""API tests authenticate with X-User-* headers, which are only accepted in dev mode."""
	original_env = settings.environment
	settings.environment = "dev"
	try:
		yield
	finally:
		settings.environment = original_env


class FakeClock:
	def __init__(self, now: int = NOW) -> None:
		self.value = now

	def __call__(self) -> int:
		return self.value

	def advance(self, ms: int) -> None:
		self.value += ms


class RecordingNotifier:
	def __init__(self) -> None:
		self.sent: List[dict] = []
		self.fail = False

	async def notify_published(self, *, title: str, event_type: str, activity_id: str) -> None:
		if self.fail:
			raise RuntimeError("webhook down")
		self.sent.append({"title": title, "event_type": event_type, "activity_id": activity_id})


class RecordingStorage:
	def __init__(self) -> None:
		self.released: List[str] = []
		self.fail = False

	async def release_objects(self, ids: Iterable[str]) -> None:
		if self.fail:
			raise RuntimeError("storage down")
		self.released.extend(ids)


@pytest.fixture
def clock() -> FakeClock:
	return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
	return RecordingNotifier()


@pytest.fixture
def storage() -> RecordingStorage:
	return RecordingStorage()


@pytest.fixture
def roster() -> InMemoryRosterProvider:
	return InMemoryRosterProvider(
		[
			RosterUser("u-ann", "Ann", "Archer", group="Alpha", portfolio="Ops", role="member", team="red"),
			RosterUser("u-ben", "Ben", "Baker", group="Alpha", portfolio="Comms", role="member", team="blue"),
			RosterUser("u-cat", "Cat", "Cole", group="Bravo", portfolio="Ops", role="admin", team="red"),
			RosterUser("u-dan", "Dan", "Doyle", group=None, role="member"),
		]
	)


@pytest.fixture
def service(clock, roster, notifier, storage) -> ActivitiesService:
	return ActivitiesService(
		ActivitiesRepository(),
		roster=roster,
		notifier=notifier,
		storage=storage,
		clock=clock,
	)


@pytest.fixture
def admin() -> AuthenticatedUser:
	return AuthenticatedUser(id="u-admin", name="Ada Admin", roles=("admin",))


@pytest.fixture
def member() -> AuthenticatedUser:
	return AuthenticatedUser(id="u-ann", name="Ann Archer")


@pytest.fixture
def other_member() -> AuthenticatedUser:
	return AuthenticatedUser(id="u-ben", name="Ben Baker")


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
