"""Roster lookup: who members are and which group/portfolio they belong to."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol

from morale.domain.activities import models


@dataclass(slots=True)
class RosterUser:
	user_id: str
	first_name: str = ""
	last_name: str = ""
	group: Optional[str] = None
	portfolio: Optional[str] = None
	rank_category: Optional[str] = None
	rank: Optional[str] = None
	role: str = "member"
	team: Optional[str] = None

	@property
	def full_name(self) -> str:
		return f"{self.first_name} {self.last_name}".strip() or self.user_id


class RosterProvider(Protocol):
	async def list_users(self) -> List[RosterUser]:
		...


class InMemoryRosterProvider:
	"""Static roster used in development and tests."""

	def __init__(self, users: Iterable[RosterUser] = ()) -> None:
		self._users = list(users)

	def replace(self, users: Iterable[RosterUser]) -> None:
		self._users = list(users)

	async def list_users(self) -> List[RosterUser]:
		return list(self._users)


def _eq(left: Optional[str], right: Optional[str]) -> bool:
	return (left or "").strip().lower() == (right or "").strip().lower()


def matches_filters(user: RosterUser, filters: models.UserFilters) -> bool:
	"""Apply a user_select question's filters to one roster member."""
	if filters.role and not _eq(user.role, filters.role):
		return False
	if filters.team and not _eq(user.team, filters.team):
		return False
	if filters.group and not _eq(user.group, filters.group):
		return False
	if filters.portfolio and not _eq(user.portfolio, filters.portfolio):
		return False
	if filters.rank_category and not _eq(user.rank_category, filters.rank_category):
		return False
	if filters.rank and not _eq(user.rank, filters.rank):
		return False
	if filters.search:
		needle = filters.search.strip().lower()
		haystack = " ".join(filter(None, [user.first_name, user.last_name, user.user_id])).lower()
		if needle not in haystack:
			return False
	return True


def select_users(users: Iterable[RosterUser], filters: models.UserFilters) -> List[RosterUser]:
	return [user for user in users if matches_filters(user, filters)]


def is_eligible_voter(user: RosterUser, voting: models.VotingPayload) -> bool:
	if not user.group:
		return voting.allow_ungrouped
	if user.group not in voting.allowed_groups:
		return False
	if not voting.allowed_portfolios or not user.portfolio:
		return True
	return user.portfolio in voting.allowed_portfolios
