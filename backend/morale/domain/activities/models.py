"""Domain models for scheduled activities.

An activity is a common envelope plus exactly one variant payload selected by
``event_type``. Timestamps are epoch milliseconds.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Union


ANNOUNCEMENT = "announcement"
POLL = "poll"
VOTING = "voting"
FORM = "form"

SCHEDULED = "scheduled"
PUBLISHED = "published"
ARCHIVED = "archived"

LEADERBOARD_MODES: tuple[str, ...] = ("all", "group", "group_portfolio")

MULTIPLE_CHOICE = "multiple_choice"
DROPDOWN = "dropdown"
FREE_TEXT = "free_text"
USER_SELECT = "user_select"
NUMBER = "number"
QUESTION_TYPES: tuple[str, ...] = (MULTIPLE_CHOICE, DROPDOWN, FREE_TEXT, USER_SELECT, NUMBER)

SUBMIT_UNLIMITED = "unlimited"
SUBMIT_ONCE = "once"


@dataclass(slots=True)
class VotingParticipant:
	user_id: str
	first_name: str
	last_name: str
	group: Optional[str] = None
	portfolio: Optional[str] = None
	votes: int = 0

	@property
	def full_name(self) -> str:
		return f"{self.first_name} {self.last_name}".strip() or self.user_id

	def to_dict(self) -> dict[str, Any]:
		return {
			"user_id": self.user_id,
			"first_name": self.first_name,
			"last_name": self.last_name,
			"group": self.group,
			"portfolio": self.portfolio,
			"votes": self.votes,
		}

	@classmethod
	def from_dict(cls, data: Dict[str, Any]) -> "VotingParticipant":
		return cls(
			user_id=str(data["user_id"]),
			first_name=str(data.get("first_name") or ""),
			last_name=str(data.get("last_name") or ""),
			group=data.get("group"),
			portfolio=data.get("portfolio"),
			votes=int(data.get("votes") or 0),
		)


@dataclass(slots=True)
class AnnouncementPayload:
	def to_dict(self) -> dict[str, Any]:
		return {}


@dataclass(slots=True)
class PollPayload:
	question: str
	options: List[str]
	anonymous: bool = False
	allow_additional_options: bool = False
	max_selections: int = 1
	closes_at: Optional[int] = None

	def is_closed(self, now: int) -> bool:
		return self.closes_at is not None and self.closes_at <= now

	def find_option(self, value: str) -> Optional[str]:
		"""Return the canonical option matching ``value`` case-insensitively."""
		lowered = value.lower()
		for option in self.options:
			if option.lower() == lowered:
				return option
		return None

	def to_dict(self) -> dict[str, Any]:
		return {
			"question": self.question,
			"options": list(self.options),
			"anonymous": self.anonymous,
			"allow_additional_options": self.allow_additional_options,
			"max_selections": self.max_selections,
			"closes_at": self.closes_at,
		}


@dataclass(slots=True)
class VotingPayload:
	participants: List[VotingParticipant]
	add_vote_price: float
	remove_vote_price: Optional[float] = None
	add_vote_limit: Optional[int] = None
	remove_vote_limit: Optional[int] = None
	allowed_groups: List[str] = field(default_factory=list)
	allowed_portfolios: List[str] = field(default_factory=list)
	allow_ungrouped: bool = False
	allow_removals: bool = True
	leaderboard_mode: str = "all"

	def to_dict(self) -> dict[str, Any]:
		return {
			"participants": [p.to_dict() for p in self.participants],
			"add_vote_price": self.add_vote_price,
			"remove_vote_price": self.remove_vote_price,
			"add_vote_limit": self.add_vote_limit,
			"remove_vote_limit": self.remove_vote_limit,
			"allowed_groups": list(self.allowed_groups),
			"allowed_portfolios": list(self.allowed_portfolios),
			"allow_ungrouped": self.allow_ungrouped,
			"allow_removals": self.allow_removals,
			"leaderboard_mode": self.leaderboard_mode,
		}


@dataclass(slots=True)
class UserFilters:
	search: Optional[str] = None
	role: Optional[str] = None
	team: Optional[str] = None
	group: Optional[str] = None
	portfolio: Optional[str] = None
	rank_category: Optional[str] = None
	rank: Optional[str] = None

	def to_dict(self) -> dict[str, Any]:
		return {
			key: value
			for key, value in (
				("search", self.search),
				("role", self.role),
				("team", self.team),
				("group", self.group),
				("portfolio", self.portfolio),
				("rank_category", self.rank_category),
				("rank", self.rank),
			)
			if value is not None
		}


@dataclass(slots=True)
class FormQuestion:
	id: str
	prompt: str
	required: bool = True

	type = ""

	def base_dict(self) -> dict[str, Any]:
		return {"id": self.id, "type": self.type, "prompt": self.prompt, "required": self.required}

	def to_dict(self) -> dict[str, Any]:
		return self.base_dict()


@dataclass(slots=True)
class MultipleChoiceQuestion(FormQuestion):
	options: List[str] = field(default_factory=list)
	max_selections: int = 2
	allow_additional_options: bool = False
	option_prices: Dict[str, float] = field(default_factory=dict)

	type = MULTIPLE_CHOICE

	def to_dict(self) -> dict[str, Any]:
		data = self.base_dict()
		data.update(
			options=list(self.options),
			max_selections=self.max_selections,
			allow_additional_options=self.allow_additional_options,
			option_prices=dict(self.option_prices),
		)
		return data


@dataclass(slots=True)
class DropdownQuestion(FormQuestion):
	options: List[str] = field(default_factory=list)
	option_prices: Dict[str, float] = field(default_factory=dict)

	type = DROPDOWN

	def to_dict(self) -> dict[str, Any]:
		data = self.base_dict()
		data.update(options=list(self.options), option_prices=dict(self.option_prices))
		return data


@dataclass(slots=True)
class FreeTextQuestion(FormQuestion):
	max_length: int = 250

	type = FREE_TEXT

	def to_dict(self) -> dict[str, Any]:
		data = self.base_dict()
		data["max_length"] = self.max_length
		return data


@dataclass(slots=True)
class UserSelectQuestion(FormQuestion):
	user_filters: UserFilters = field(default_factory=UserFilters)

	type = USER_SELECT

	def to_dict(self) -> dict[str, Any]:
		data = self.base_dict()
		data["user_filters"] = self.user_filters.to_dict()
		return data


@dataclass(slots=True)
class NumberQuestion(FormQuestion):
	min_value: Optional[float] = None
	max_value: Optional[float] = None
	include_min: bool = True
	include_max: bool = True
	allow_any_number: bool = False
	price_per_unit: Optional[float] = None
	price_source_question_ids: List[str] = field(default_factory=list)

	type = NUMBER

	def accepts(self, value: float) -> bool:
		if self.allow_any_number:
			return True
		if self.min_value is not None:
			if value < self.min_value or (value == self.min_value and not self.include_min):
				return False
		if self.max_value is not None:
			if value > self.max_value or (value == self.max_value and not self.include_max):
				return False
		return True

	def to_dict(self) -> dict[str, Any]:
		data = self.base_dict()
		data.update(
			min_value=self.min_value,
			max_value=self.max_value,
			include_min=self.include_min,
			include_max=self.include_max,
			allow_any_number=self.allow_any_number,
			price_per_unit=self.price_per_unit,
			price_source_question_ids=list(self.price_source_question_ids),
		)
		return data


@dataclass(slots=True)
class FormPayload:
	questions: List[FormQuestion]
	submission_limit: str = SUBMIT_UNLIMITED
	price: Optional[float] = None
	allow_anonymous_choice: bool = False
	force_anonymous: bool = False

	def question(self, question_id: str) -> Optional[FormQuestion]:
		for question in self.questions:
			if question.id == question_id:
				return question
		return None

	def to_dict(self) -> dict[str, Any]:
		return {
			"questions": [q.to_dict() for q in self.questions],
			"submission_limit": self.submission_limit,
			"price": self.price,
			"allow_anonymous_choice": self.allow_anonymous_choice,
			"force_anonymous": self.force_anonymous,
		}


Payload = Union[AnnouncementPayload, PollPayload, VotingPayload, FormPayload]


@dataclass(slots=True)
class Activity:
	"""Core persisted activity record."""

	id: str
	event_type: str
	title: str
	description: str
	publish_at: int
	status: str
	created_at: int
	payload: Payload
	created_by: Optional[str] = None
	updated_at: Optional[int] = None
	updated_by: Optional[str] = None
	auto_delete_at: Optional[int] = None
	auto_archive_at: Optional[int] = None
	image_ids: List[str] = field(default_factory=list)

	@property
	def is_archived(self) -> bool:
		return self.status == ARCHIVED

	def is_live(self, now: int) -> bool:
		"""Published, or scheduled with a publish time that has already passed."""
		if self.status == PUBLISHED:
			return True
		return self.status == SCHEDULED and self.publish_at <= now

	@property
	def poll(self) -> PollPayload:
		if not isinstance(self.payload, PollPayload):
			raise TypeError(f"activity {self.id} is a {self.event_type}, not a poll")
		return self.payload

	@property
	def voting(self) -> VotingPayload:
		if not isinstance(self.payload, VotingPayload):
			raise TypeError(f"activity {self.id} is a {self.event_type}, not a voting activity")
		return self.payload

	@property
	def form(self) -> FormPayload:
		if not isinstance(self.payload, FormPayload):
			raise TypeError(f"activity {self.id} is a {self.event_type}, not a form")
		return self.payload

	def with_status(self, status: str) -> "Activity":
		return replace(self, status=status)

	def to_summary(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"event_type": self.event_type,
			"title": self.title,
			"description": self.description,
			"publish_at": self.publish_at,
			"status": self.status,
			"created_at": self.created_at,
			"created_by": self.created_by,
			"updated_at": self.updated_at,
			"updated_by": self.updated_by,
			"auto_delete_at": self.auto_delete_at,
			"auto_archive_at": self.auto_archive_at,
			"image_ids": list(self.image_ids),
			"payload": self.payload.to_dict(),
		}


@dataclass(slots=True)
class PollVote:
	activity_id: str
	user_id: str
	selections: List[str]
	created_at: int
	updated_at: int
	user_name: Optional[str] = None


@dataclass(slots=True)
class VotingPurchase:
	"""Lifetime add/remove counters for one purchaser on one voting activity."""

	activity_id: str
	user_id: str
	add_votes: int = 0
	remove_votes: int = 0
	updated_at: Optional[int] = None


@dataclass(slots=True)
class FormAnswer:
	question_id: str
	value: Union[str, List[str]]
	display_value: Union[str, List[str], None] = None

	def to_dict(self) -> dict[str, Any]:
		data: dict[str, Any] = {"question_id": self.question_id, "value": self.value}
		if self.display_value is not None:
			data["display_value"] = self.display_value
		return data


@dataclass(slots=True)
class FormSubmission:
	id: str
	activity_id: str
	user_id: str
	answers: List[FormAnswer]
	created_at: int
	user_name: Optional[str] = None
	is_anonymous: bool = False
	payment_order_id: Optional[str] = None
	payment_amount: Optional[float] = None


@dataclass(slots=True)
class SweepResult:
	published: int = 0
	deleted: int = 0
	archived: int = 0

	@property
	def total(self) -> int:
		return self.published + self.deleted + self.archived


def question_from_dict(data: Dict[str, Any]) -> FormQuestion:
	"""Rebuild a stored (already normalised) question from its tagged dict."""
	kind = data.get("type")
	common = {
		"id": str(data["id"]),
		"prompt": str(data.get("prompt") or ""),
		"required": bool(data.get("required", True)),
	}
	if kind == MULTIPLE_CHOICE:
		return MultipleChoiceQuestion(
			**common,
			options=list(data.get("options") or []),
			max_selections=int(data.get("max_selections") or 2),
			allow_additional_options=bool(data.get("allow_additional_options")),
			option_prices=dict(data.get("option_prices") or {}),
		)
	if kind == DROPDOWN:
		return DropdownQuestion(
			**common,
			options=list(data.get("options") or []),
			option_prices=dict(data.get("option_prices") or {}),
		)
	if kind == FREE_TEXT:
		return FreeTextQuestion(**common, max_length=int(data.get("max_length") or 250))
	if kind == USER_SELECT:
		return UserSelectQuestion(**common, user_filters=UserFilters(**(data.get("user_filters") or {})))
	if kind == NUMBER:
		return NumberQuestion(
			**common,
			min_value=data.get("min_value"),
			max_value=data.get("max_value"),
			include_min=bool(data.get("include_min", True)),
			include_max=bool(data.get("include_max", True)),
			allow_any_number=bool(data.get("allow_any_number")),
			price_per_unit=data.get("price_per_unit"),
			price_source_question_ids=list(data.get("price_source_question_ids") or []),
		)
	raise ValueError(f"unknown question type: {kind!r}")


def payload_from_dict(event_type: str, data: Optional[Dict[str, Any]]) -> Payload:
	data = data or {}
	if event_type == POLL:
		return PollPayload(
			question=str(data.get("question") or ""),
			options=list(data.get("options") or []),
			anonymous=bool(data.get("anonymous")),
			allow_additional_options=bool(data.get("allow_additional_options")),
			max_selections=int(data.get("max_selections") or 1),
			closes_at=data.get("closes_at"),
		)
	if event_type == VOTING:
		return VotingPayload(
			participants=[VotingParticipant.from_dict(p) for p in data.get("participants") or []],
			add_vote_price=float(data.get("add_vote_price") or 0.0),
			remove_vote_price=data.get("remove_vote_price"),
			add_vote_limit=data.get("add_vote_limit"),
			remove_vote_limit=data.get("remove_vote_limit"),
			allowed_groups=list(data.get("allowed_groups") or []),
			allowed_portfolios=list(data.get("allowed_portfolios") or []),
			allow_ungrouped=bool(data.get("allow_ungrouped")),
			allow_removals=bool(data.get("allow_removals", True)),
			leaderboard_mode=str(data.get("leaderboard_mode") or "all"),
		)
	if event_type == FORM:
		return FormPayload(
			questions=[question_from_dict(q) for q in data.get("questions") or []],
			submission_limit=str(data.get("submission_limit") or SUBMIT_UNLIMITED),
			price=data.get("price"),
			allow_anonymous_choice=bool(data.get("allow_anonymous_choice")),
			force_anonymous=bool(data.get("force_anonymous")),
		)
	return AnnouncementPayload()
