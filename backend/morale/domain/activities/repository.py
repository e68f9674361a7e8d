"""Persistence for activities and their dependent records.

Uses the asyncpg pool when one is available and falls back to a process-local
memory store otherwise (local tools and the test-suite).
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import asyncpg

from morale.domain.activities import models
from morale.domain.activities.errors import NotFoundError
from morale.infra.locks import KeyedLock
from morale.infra.postgres import get_pool

logger = logging.getLogger(__name__)

PurchaseWriter = Callable[[List[models.VotingParticipant], int, int, int, str], Awaitable[None]]


@dataclass(slots=True)
class PurchaseTxn:
	"""Snapshot handed to the ledger inside the purchase critical section."""

	activity: Optional[models.Activity]
	ledger: models.VotingPurchase
	_writer: PurchaseWriter

	async def commit(
		self,
		participants: List[models.VotingParticipant],
		*,
		add: int,
		remove: int,
		now: int,
		updated_by: str,
	) -> None:
		await self._writer(participants, add, remove, now, updated_by)


@dataclass(slots=True)
class EditTxn:
	"""Locked activity handed to an edit; ``write`` applies a partial update."""

	activity: Optional[models.Activity]
	_writer: Callable[[Dict[str, Any]], Awaitable[bool]]

	async def write(self, **changes: Any) -> bool:
		_check_columns(changes)
		if not changes:
			return True
		return await self._writer(changes)


class _MemoryStore:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self.activity_locks = KeyedLock()
		self.activities: Dict[str, models.Activity] = {}
		self.poll_votes: Dict[Tuple[str, str], models.PollVote] = {}
		self.purchases: Dict[Tuple[str, str], models.VotingPurchase] = {}
		self.submissions: Dict[str, models.FormSubmission] = {}

	async def reset(self) -> None:
		async with self._lock:
			self.activities.clear()
			self.poll_votes.clear()
			self.purchases.clear()
			self.submissions.clear()
		# fresh primitives so a new event loop never meets one bound to an old loop
		self._lock = asyncio.Lock()
		self.activity_locks = KeyedLock()

	async def insert_activity(self, activity: models.Activity) -> None:
		async with self._lock:
			self.activities[activity.id] = copy.deepcopy(activity)

	async def get_activity(self, activity_id: str) -> Optional[models.Activity]:
		async with self._lock:
			activity = self.activities.get(activity_id)
			return copy.deepcopy(activity) if activity else None

	async def all_activities(self) -> List[models.Activity]:
		async with self._lock:
			return [copy.deepcopy(act) for act in self.activities.values()]

	async def update_activity(self, activity_id: str, changes: Dict[str, Any]) -> bool:
		async with self._lock:
			activity = self.activities.get(activity_id)
			if activity is None:
				return False
			for key, value in changes.items():
				setattr(activity, key, copy.deepcopy(value))
			return True

	async def transition(
		self,
		activity_id: str,
		predicate: Callable[[models.Activity], bool],
		status: str,
	) -> bool:
		async with self._lock:
			activity = self.activities.get(activity_id)
			if activity is None or not predicate(activity):
				return False
			activity.status = status
			return True

	async def delete_cascade(
		self,
		activity_id: str,
		predicate: Optional[Callable[[models.Activity], bool]] = None,
	) -> Optional[models.Activity]:
		async with self._lock:
			activity = self.activities.get(activity_id)
			if activity is None or (predicate is not None and not predicate(activity)):
				return None
			for key in [k for k in self.poll_votes if k[0] == activity_id]:
				del self.poll_votes[key]
			for key in [k for k in self.purchases if k[0] == activity_id]:
				del self.purchases[key]
			for sub_id in [s.id for s in self.submissions.values() if s.activity_id == activity_id]:
				del self.submissions[sub_id]
			return self.activities.pop(activity_id)

	async def append_poll_option(self, activity_id: str, option: str) -> Optional[str]:
		async with self._lock:
			activity = self.activities.get(activity_id)
			if activity is None or not isinstance(activity.payload, models.PollPayload):
				return None
			existing = activity.payload.find_option(option)
			if existing is not None:
				return existing
			activity.payload.options.append(option)
			return option

	async def upsert_poll_vote(self, vote: models.PollVote) -> None:
		async with self._lock:
			if vote.activity_id not in self.activities:
				return
			key = (vote.activity_id, vote.user_id)
			existing = self.poll_votes.get(key)
			stored = copy.deepcopy(vote)
			if existing is not None:
				stored.created_at = existing.created_at
			self.poll_votes[key] = stored

	async def list_poll_votes(self, activity_id: str) -> List[models.PollVote]:
		async with self._lock:
			votes = [copy.deepcopy(v) for (aid, _), v in self.poll_votes.items() if aid == activity_id]
		return sorted(votes, key=lambda v: v.created_at)

	async def get_purchase(self, activity_id: str, user_id: str) -> Optional[models.VotingPurchase]:
		async with self._lock:
			record = self.purchases.get((activity_id, user_id))
			return copy.deepcopy(record) if record else None

	async def write_purchase(
		self,
		activity_id: str,
		user_id: str,
		participants: List[models.VotingParticipant],
		add: int,
		remove: int,
		now: int,
		updated_by: str,
	) -> None:
		async with self._lock:
			activity = self.activities.get(activity_id)
			if activity is None or not isinstance(activity.payload, models.VotingPayload):
				return
			activity.payload.participants = copy.deepcopy(participants)
			activity.updated_at = now
			activity.updated_by = updated_by
			record = self.purchases.get((activity_id, user_id))
			if record is None:
				record = models.VotingPurchase(activity_id=activity_id, user_id=user_id)
				self.purchases[(activity_id, user_id)] = record
			record.add_votes += add
			record.remove_votes += remove
			record.updated_at = now

	async def insert_submission(self, submission: models.FormSubmission, *, once: bool) -> bool:
		async with self._lock:
			if submission.activity_id not in self.activities:
				return False
			if once and any(
				s.activity_id == submission.activity_id and s.user_id == submission.user_id
				for s in self.submissions.values()
			):
				return False
			self.submissions[submission.id] = copy.deepcopy(submission)
			return True

	async def has_submission(self, activity_id: str, user_id: str) -> bool:
		async with self._lock:
			return any(
				s.activity_id == activity_id and s.user_id == user_id for s in self.submissions.values()
			)

	async def list_submissions(self, activity_id: str) -> List[models.FormSubmission]:
		async with self._lock:
			subs = [copy.deepcopy(s) for s in self.submissions.values() if s.activity_id == activity_id]
		return sorted(subs, key=lambda s: s.created_at, reverse=True)


_MEMORY = _MemoryStore()


async def reset_memory_state() -> None:
	await _MEMORY.reset()


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS activities (
	id TEXT PRIMARY KEY,
	event_type TEXT NOT NULL,
	title TEXT NOT NULL,
	description TEXT NOT NULL DEFAULT '',
	publish_at BIGINT NOT NULL,
	status TEXT NOT NULL,
	created_at BIGINT NOT NULL,
	created_by TEXT,
	updated_at BIGINT,
	updated_by TEXT,
	auto_delete_at BIGINT,
	auto_archive_at BIGINT,
	image_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
	payload JSONB NOT NULL DEFAULT '{}'::jsonb,
	CONSTRAINT activities_single_automation CHECK (auto_delete_at IS NULL OR auto_archive_at IS NULL)
);
CREATE INDEX IF NOT EXISTS idx_activities_status_publish ON activities (status, publish_at);
CREATE INDEX IF NOT EXISTS idx_activities_auto_delete ON activities (auto_delete_at) WHERE auto_delete_at IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_activities_auto_archive ON activities (auto_archive_at) WHERE auto_archive_at IS NOT NULL;
CREATE TABLE IF NOT EXISTS poll_votes (
	activity_id TEXT NOT NULL,
	user_id TEXT NOT NULL,
	user_name TEXT,
	selections JSONB NOT NULL,
	created_at BIGINT NOT NULL,
	updated_at BIGINT NOT NULL,
	PRIMARY KEY (activity_id, user_id)
);
CREATE TABLE IF NOT EXISTS voting_purchases (
	activity_id TEXT NOT NULL,
	user_id TEXT NOT NULL,
	add_votes INTEGER NOT NULL DEFAULT 0,
	remove_votes INTEGER NOT NULL DEFAULT 0,
	updated_at BIGINT,
	PRIMARY KEY (activity_id, user_id)
);
CREATE TABLE IF NOT EXISTS form_submissions (
	id TEXT PRIMARY KEY,
	activity_id TEXT NOT NULL,
	user_id TEXT NOT NULL,
	user_name TEXT,
	is_anonymous BOOLEAN NOT NULL DEFAULT FALSE,
	answers JSONB NOT NULL,
	created_at BIGINT NOT NULL,
	payment_order_id TEXT,
	payment_amount DOUBLE PRECISION
);
CREATE INDEX IF NOT EXISTS idx_form_submissions_activity_user ON form_submissions (activity_id, user_id);
"""

_UPDATABLE_COLUMNS = frozenset(
	{
		"title",
		"description",
		"publish_at",
		"status",
		"updated_at",
		"updated_by",
		"auto_delete_at",
		"auto_archive_at",
		"image_ids",
		"payload",
	}
)

_ACTIVITY_COLUMNS = (
	"id, event_type, title, description, publish_at, status, created_at, created_by, "
	"updated_at, updated_by, auto_delete_at, auto_archive_at, image_ids, payload"
)


def _loads(value: Any) -> Any:
	if isinstance(value, str):
		return json.loads(value)
	return value


def _row_to_activity(row: asyncpg.Record | Dict[str, Any]) -> models.Activity:
	return models.Activity(
		id=row["id"],
		event_type=row["event_type"],
		title=row["title"],
		description=row["description"],
		publish_at=row["publish_at"],
		status=row["status"],
		created_at=row["created_at"],
		created_by=row["created_by"],
		updated_at=row["updated_at"],
		updated_by=row["updated_by"],
		auto_delete_at=row["auto_delete_at"],
		auto_archive_at=row["auto_archive_at"],
		image_ids=list(_loads(row["image_ids"]) or []),
		payload=models.payload_from_dict(row["event_type"], _loads(row["payload"])),
	)


def _answers_to_json(answers: Iterable[models.FormAnswer]) -> str:
	return json.dumps([answer.to_dict() for answer in answers])


def _row_to_submission(row: asyncpg.Record | Dict[str, Any]) -> models.FormSubmission:
	answers = [
		models.FormAnswer(
			question_id=item["question_id"],
			value=item["value"],
			display_value=item.get("display_value"),
		)
		for item in _loads(row["answers"]) or []
	]
	return models.FormSubmission(
		id=row["id"],
		activity_id=row["activity_id"],
		user_id=row["user_id"],
		user_name=row["user_name"],
		is_anonymous=row["is_anonymous"],
		answers=answers,
		created_at=row["created_at"],
		payment_order_id=row["payment_order_id"],
		payment_amount=row["payment_amount"],
	)


def _column_value(key: str, value: Any) -> Any:
	if key == "payload":
		return json.dumps(value.to_dict())
	if key == "image_ids":
		return json.dumps(list(value))
	return value


def _check_columns(changes: Dict[str, Any]) -> None:
	unknown = set(changes) - _UPDATABLE_COLUMNS
	if unknown:
		raise ValueError(f"cannot update columns: {sorted(unknown)}")


async def _execute_update(conn: asyncpg.Connection, activity_id: str, changes: Dict[str, Any]) -> bool:
	assignments: List[str] = []
	params: List[Any] = [activity_id]
	for key, value in changes.items():
		params.append(_column_value(key, value))
		cast = "::jsonb" if key in ("payload", "image_ids") else ""
		assignments.append(f"{key} = ${len(params)}{cast}")
	result = await conn.execute(
		f"UPDATE activities SET {', '.join(assignments)} WHERE id = $1",
		*params,
	)
	return result.endswith(" 1")


class ActivitiesRepository:
	def __init__(self) -> None:
		self._pool_checked = False
		self._pool: Optional[asyncpg.Pool] = None
		self._schema_ready = False

	async def _pool_or_none(self) -> Optional[asyncpg.Pool]:
		if self._pool_checked:
			return self._pool
		self._pool_checked = True
		try:
			pool = await get_pool()
		except AssertionError:
			pool = None
		except Exception:
			logger.warning("activities_store_memory_fallback", exc_info=True)
			pool = None
		if pool is not None and not self._schema_ready:
			async with pool.acquire() as conn:
				await conn.execute(_SCHEMA_SQL)
			self._schema_ready = True
		self._pool = pool
		return pool

	# -- activities ---------------------------------------------------------

	async def insert_activity(self, activity: models.Activity) -> None:
		pool = await self._pool_or_none()
		if pool is None:
			await _MEMORY.insert_activity(activity)
			return
		async with pool.acquire() as conn:
			await conn.execute(
				f"""
				INSERT INTO activities ({_ACTIVITY_COLUMNS})
				VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10,$11,$12,$13::jsonb,$14::jsonb)
				""",
				activity.id,
				activity.event_type,
				activity.title,
				activity.description,
				activity.publish_at,
				activity.status,
				activity.created_at,
				activity.created_by,
				activity.updated_at,
				activity.updated_by,
				activity.auto_delete_at,
				activity.auto_archive_at,
				json.dumps(activity.image_ids),
				json.dumps(activity.payload.to_dict()),
			)

	async def get_activity(self, activity_id: str) -> Optional[models.Activity]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.get_activity(activity_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow(f"SELECT {_ACTIVITY_COLUMNS} FROM activities WHERE id=$1", activity_id)
		return _row_to_activity(row) if row else None

	async def list_activities(
		self,
		*,
		statuses: Optional[Iterable[str]] = None,
		event_type: Optional[str] = None,
		publish_at_or_before: Optional[int] = None,
		publish_after: Optional[int] = None,
		auto_delete_due_at: Optional[int] = None,
		auto_archive_due_at: Optional[int] = None,
	) -> List[models.Activity]:
		"""List activities matching every given predicate, newest first."""
		status_list = list(statuses) if statuses is not None else None
		pool = await self._pool_or_none()
		if pool is None:
			rows = await _MEMORY.all_activities()
			result = [
				act
				for act in rows
				if (status_list is None or act.status in status_list)
				and (event_type is None or act.event_type == event_type)
				and (publish_at_or_before is None or act.publish_at <= publish_at_or_before)
				and (publish_after is None or act.publish_at > publish_after)
				and (
					auto_delete_due_at is None
					or (act.auto_delete_at is not None and act.auto_delete_at <= auto_delete_due_at)
				)
				and (
					auto_archive_due_at is None
					or (act.auto_archive_at is not None and act.auto_archive_at <= auto_archive_due_at)
				)
			]
			return sorted(result, key=lambda act: act.created_at, reverse=True)
		clauses: List[str] = []
		params: List[Any] = []
		if status_list is not None:
			params.append(status_list)
			clauses.append(f"status = ANY(${len(params)}::text[])")
		if event_type is not None:
			params.append(event_type)
			clauses.append(f"event_type = ${len(params)}")
		if publish_at_or_before is not None:
			params.append(publish_at_or_before)
			clauses.append(f"publish_at <= ${len(params)}")
		if publish_after is not None:
			params.append(publish_after)
			clauses.append(f"publish_at > ${len(params)}")
		if auto_delete_due_at is not None:
			params.append(auto_delete_due_at)
			clauses.append(f"auto_delete_at IS NOT NULL AND auto_delete_at <= ${len(params)}")
		if auto_archive_due_at is not None:
			params.append(auto_archive_due_at)
			clauses.append(f"auto_archive_at IS NOT NULL AND auto_archive_at <= ${len(params)}")
		where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"SELECT {_ACTIVITY_COLUMNS} FROM activities {where} ORDER BY created_at DESC",
				*params,
			)
		return [_row_to_activity(row) for row in rows]

	async def update_activity(self, activity_id: str, **changes: Any) -> bool:
		"""Partial update of envelope columns and/or the variant payload."""
		_check_columns(changes)
		if not changes:
			return True
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.update_activity(activity_id, changes)
		async with pool.acquire() as conn:
			return await _execute_update(conn, activity_id, changes)

	@asynccontextmanager
	async def edit_section(self, activity_id: str) -> AsyncIterator[EditTxn]:
		"""Hold the activity row while an edit reads, normalises and rewrites it.

		Shares its contention key with ``purchase_section`` and
		``append_poll_option``, so balances or options committed by those are
		never overwritten with a stale payload.
		"""
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY.activity_locks.hold(activity_id):
				activity = await _MEMORY.get_activity(activity_id)

				async def _memory_writer(changes: Dict[str, Any]) -> bool:
					return await _MEMORY.update_activity(activity_id, changes)

				yield EditTxn(activity=activity, _writer=_memory_writer)
			return
		async with pool.acquire() as conn:
			async with conn.transaction():
				row = await conn.fetchrow(
					f"SELECT {_ACTIVITY_COLUMNS} FROM activities WHERE id = $1 FOR UPDATE",
					activity_id,
				)

				async def _pg_writer(changes: Dict[str, Any]) -> bool:
					return await _execute_update(conn, activity_id, changes)

				yield EditTxn(activity=_row_to_activity(row) if row else None, _writer=_pg_writer)

	async def publish_if_due(self, activity_id: str, now: int) -> bool:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.transition(
				activity_id,
				lambda act: act.status == models.SCHEDULED and act.publish_at <= now,
				models.PUBLISHED,
			)
		async with pool.acquire() as conn:
			result = await conn.execute(
				"""
				UPDATE activities SET status = 'published'
				WHERE id = $1 AND status = 'scheduled' AND publish_at <= $2
				""",
				activity_id,
				now,
			)
		return result.endswith(" 1")

	async def archive_if_due(self, activity_id: str, now: int) -> bool:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.transition(
				activity_id,
				lambda act: act.status != models.ARCHIVED
				and act.auto_archive_at is not None
				and act.auto_archive_at <= now,
				models.ARCHIVED,
			)
		async with pool.acquire() as conn:
			result = await conn.execute(
				"""
				UPDATE activities SET status = 'archived'
				WHERE id = $1 AND status <> 'archived'
					AND auto_archive_at IS NOT NULL AND auto_archive_at <= $2
				""",
				activity_id,
				now,
			)
		return result.endswith(" 1")

	async def archive(self, activity_id: str, *, now: int, updated_by: str) -> bool:
		return await self.update_activity(
			activity_id, status=models.ARCHIVED, updated_at=now, updated_by=updated_by
		)

	async def delete_activity(
		self,
		activity_id: str,
		*,
		auto_delete_due_at: Optional[int] = None,
	) -> Optional[models.Activity]:
		"""Delete the activity with its votes, ledger rows and submissions.

		When ``auto_delete_due_at`` is given the row is only removed if its
		auto-delete time is still set and has passed. Returns the deleted row,
		or None when nothing was deleted.
		"""
		pool = await self._pool_or_none()
		if pool is None:
			predicate = None
			if auto_delete_due_at is not None:
				predicate = lambda act: act.auto_delete_at is not None and act.auto_delete_at <= auto_delete_due_at  # noqa: E731
			return await _MEMORY.delete_cascade(activity_id, predicate)
		async with pool.acquire() as conn:
			async with conn.transaction():
				row = await conn.fetchrow(
					f"SELECT {_ACTIVITY_COLUMNS} FROM activities WHERE id = $1 FOR UPDATE",
					activity_id,
				)
				if row is None:
					return None
				if auto_delete_due_at is not None and (
					row["auto_delete_at"] is None or row["auto_delete_at"] > auto_delete_due_at
				):
					return None
				await conn.execute("DELETE FROM poll_votes WHERE activity_id = $1", activity_id)
				await conn.execute("DELETE FROM voting_purchases WHERE activity_id = $1", activity_id)
				await conn.execute("DELETE FROM form_submissions WHERE activity_id = $1", activity_id)
				await conn.execute("DELETE FROM activities WHERE id = $1", activity_id)
		return _row_to_activity(row)

	async def next_publish_at(self, now: int) -> Optional[int]:
		pool = await self._pool_or_none()
		if pool is None:
			upcoming = [
				act.publish_at
				for act in await _MEMORY.all_activities()
				if act.status == models.SCHEDULED and act.publish_at > now
			]
			return min(upcoming) if upcoming else None
		async with pool.acquire() as conn:
			return await conn.fetchval(
				"SELECT MIN(publish_at) FROM activities WHERE status = 'scheduled' AND publish_at > $1",
				now,
			)

	# -- polls --------------------------------------------------------------

	async def append_poll_option(self, activity_id: str, option: str) -> Optional[str]:
		"""Append ``option`` unless a case-insensitive match exists; return the canonical value."""
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY.activity_locks.hold(activity_id):
				return await _MEMORY.append_poll_option(activity_id, option)
		async with pool.acquire() as conn:
			async with conn.transaction():
				row = await conn.fetchrow(
					f"SELECT {_ACTIVITY_COLUMNS} FROM activities WHERE id = $1 FOR UPDATE",
					activity_id,
				)
				if row is None or row["event_type"] != models.POLL:
					return None
				activity = _row_to_activity(row)
				existing = activity.poll.find_option(option)
				if existing is not None:
					return existing
				activity.poll.options.append(option)
				await conn.execute(
					"UPDATE activities SET payload = $2::jsonb WHERE id = $1",
					activity_id,
					json.dumps(activity.poll.to_dict()),
				)
		return option

	async def upsert_poll_vote(self, vote: models.PollVote) -> None:
		pool = await self._pool_or_none()
		if pool is None:
			await _MEMORY.upsert_poll_vote(vote)
			return
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				INSERT INTO poll_votes (activity_id, user_id, user_name, selections, created_at, updated_at)
				SELECT $1, $2, $3, $4::jsonb, $5, $6
				WHERE EXISTS (SELECT 1 FROM activities WHERE id = $1)
				ON CONFLICT (activity_id, user_id) DO UPDATE
				SET selections = EXCLUDED.selections,
					user_name = EXCLUDED.user_name,
					updated_at = EXCLUDED.updated_at
				""",
				vote.activity_id,
				vote.user_id,
				vote.user_name,
				json.dumps(vote.selections),
				vote.created_at,
				vote.updated_at,
			)

	async def list_poll_votes(self, activity_id: str) -> List[models.PollVote]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.list_poll_votes(activity_id)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"SELECT * FROM poll_votes WHERE activity_id = $1 ORDER BY created_at ASC",
				activity_id,
			)
		return [self._row_to_vote(row) for row in rows]

	@staticmethod
	def _row_to_vote(row: asyncpg.Record | Dict[str, Any]) -> models.PollVote:
		return models.PollVote(
			activity_id=row["activity_id"],
			user_id=row["user_id"],
			user_name=row["user_name"],
			selections=list(_loads(row["selections"]) or []),
			created_at=row["created_at"],
			updated_at=row["updated_at"],
		)

	# -- voting ledger ------------------------------------------------------

	async def get_purchase(self, activity_id: str, user_id: str) -> Optional[models.VotingPurchase]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.get_purchase(activity_id, user_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"SELECT * FROM voting_purchases WHERE activity_id = $1 AND user_id = $2",
				activity_id,
				user_id,
			)
		if row is None:
			return None
		return models.VotingPurchase(
			activity_id=row["activity_id"],
			user_id=row["user_id"],
			add_votes=row["add_votes"],
			remove_votes=row["remove_votes"],
			updated_at=row["updated_at"],
		)

	@asynccontextmanager
	async def purchase_section(self, activity_id: str, purchaser_id: str) -> AsyncIterator[PurchaseTxn]:
		"""Serialise read-check-write of participant balances and the purchaser ledger.

		The activity row is the contention key: every purchase against the same
		activity waits for the previous one to commit before reading.
		"""
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY.activity_locks.hold(activity_id):
				activity = await _MEMORY.get_activity(activity_id)
				ledger = await _MEMORY.get_purchase(activity_id, purchaser_id)

				async def _memory_writer(participants, add, remove, now, updated_by) -> None:
					await _MEMORY.write_purchase(
						activity_id, purchaser_id, participants, add, remove, now, updated_by
					)

				yield PurchaseTxn(
					activity=activity,
					ledger=ledger or models.VotingPurchase(activity_id=activity_id, user_id=purchaser_id),
					_writer=_memory_writer,
				)
			return
		async with pool.acquire() as conn:
			async with conn.transaction():
				row = await conn.fetchrow(
					f"SELECT {_ACTIVITY_COLUMNS} FROM activities WHERE id = $1 FOR UPDATE",
					activity_id,
				)
				ledger_row = await conn.fetchrow(
					"SELECT add_votes, remove_votes, updated_at FROM voting_purchases WHERE activity_id = $1 AND user_id = $2",
					activity_id,
					purchaser_id,
				)
				activity = _row_to_activity(row) if row else None

				async def _pg_writer(participants, add, remove, now, updated_by) -> None:
					if activity is None:
						raise NotFoundError()
					activity.voting.participants = list(participants)
					await conn.execute(
						"UPDATE activities SET payload = $2::jsonb, updated_at = $3, updated_by = $4 WHERE id = $1",
						activity_id,
						json.dumps(activity.voting.to_dict()),
						now,
						updated_by,
					)
					await conn.execute(
						"""
						INSERT INTO voting_purchases (activity_id, user_id, add_votes, remove_votes, updated_at)
						VALUES ($1, $2, $3, $4, $5)
						ON CONFLICT (activity_id, user_id) DO UPDATE
						SET add_votes = voting_purchases.add_votes + EXCLUDED.add_votes,
							remove_votes = voting_purchases.remove_votes + EXCLUDED.remove_votes,
							updated_at = EXCLUDED.updated_at
						""",
						activity_id,
						purchaser_id,
						add,
						remove,
						now,
					)

				ledger = models.VotingPurchase(activity_id=activity_id, user_id=purchaser_id)
				if ledger_row is not None:
					ledger.add_votes = ledger_row["add_votes"]
					ledger.remove_votes = ledger_row["remove_votes"]
					ledger.updated_at = ledger_row["updated_at"]
				yield PurchaseTxn(activity=activity, ledger=ledger, _writer=_pg_writer)

	# -- form submissions ---------------------------------------------------

	async def insert_submission(self, submission: models.FormSubmission, *, once: bool) -> bool:
		"""Insert a submission; with ``once`` it is refused if the user already submitted."""
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.insert_submission(submission, once=once)
		async with pool.acquire() as conn:
			async with conn.transaction():
				if once:
					await conn.execute(
						"SELECT pg_advisory_xact_lock(hashtext($1))",
						f"{submission.activity_id}:{submission.user_id}",
					)
					exists = await conn.fetchval(
						"SELECT 1 FROM form_submissions WHERE activity_id = $1 AND user_id = $2",
						submission.activity_id,
						submission.user_id,
					)
					if exists:
						return False
				result = await conn.execute(
					"""
					INSERT INTO form_submissions (
						id, activity_id, user_id, user_name, is_anonymous, answers,
						created_at, payment_order_id, payment_amount
					)
					SELECT $1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9
					WHERE EXISTS (SELECT 1 FROM activities WHERE id = $2)
					""",
					submission.id,
					submission.activity_id,
					submission.user_id,
					submission.user_name,
					submission.is_anonymous,
					_answers_to_json(submission.answers),
					submission.created_at,
					submission.payment_order_id,
					submission.payment_amount,
				)
		return result.endswith(" 1")

	async def has_submission(self, activity_id: str, user_id: str) -> bool:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.has_submission(activity_id, user_id)
		async with pool.acquire() as conn:
			found = await conn.fetchval(
				"SELECT 1 FROM form_submissions WHERE activity_id = $1 AND user_id = $2 LIMIT 1",
				activity_id,
				user_id,
			)
		return bool(found)

	async def list_submissions(self, activity_id: str) -> List[models.FormSubmission]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.list_submissions(activity_id)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"SELECT * FROM form_submissions WHERE activity_id = $1 ORDER BY created_at DESC",
				activity_id,
			)
		return [_row_to_submission(row) for row in rows]
