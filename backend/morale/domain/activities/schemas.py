"""Pydantic schemas for scheduled activities."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from morale.domain.activities import models

EventType = Literal["announcement", "poll", "voting", "form"]
ActivityStatus = Literal["scheduled", "published", "archived"]
LeaderboardMode = Literal["all", "group", "group_portfolio"]


class VotingParticipantIn(BaseModel):
	user_id: str
	first_name: Optional[str] = None
	last_name: Optional[str] = None
	group: Optional[str] = None
	portfolio: Optional[str] = None
	votes: Optional[float] = None


class ActivityDraft(BaseModel):
	"""Create/update payload.

	On update, fields left out of the request keep their stored value while an
	explicit ``null`` clears nullable fields such as ``auto_delete_at``.
	"""

	event_type: Optional[EventType] = None
	title: str = ""
	description: str = ""
	publish_at: int
	auto_delete_at: Optional[int] = None
	auto_archive_at: Optional[int] = None
	image_ids: Optional[List[str]] = None

	poll_question: Optional[str] = None
	poll_options: Optional[List[str]] = None
	poll_anonymous: Optional[bool] = None
	poll_allow_additional_options: Optional[bool] = None
	poll_max_selections: Optional[float] = None
	poll_closes_at: Optional[int] = None

	voting_participants: Optional[List[VotingParticipantIn]] = None
	voting_add_vote_price: Optional[float] = None
	voting_remove_vote_price: Optional[float] = None
	voting_add_vote_limit: Optional[float] = None
	voting_remove_vote_limit: Optional[float] = None
	voting_allowed_groups: Optional[List[str]] = None
	voting_allowed_portfolios: Optional[List[str]] = None
	voting_allow_ungrouped: Optional[bool] = None
	voting_allow_removals: Optional[bool] = None
	voting_leaderboard_mode: Optional[str] = None

	form_questions: Optional[List[Dict[str, Any]]] = None
	form_submission_limit: Optional[Literal["unlimited", "once"]] = None
	form_price: Optional[float] = None
	form_allow_anonymous_choice: Optional[bool] = None
	form_force_anonymous: Optional[bool] = None

	def provided(self, name: str) -> bool:
		return name in self.model_fields_set


class ActivityWriteResult(BaseModel):
	id: str
	status: ActivityStatus


class ActivityOut(BaseModel):
	id: str
	event_type: EventType
	title: str
	description: str
	publish_at: int
	status: ActivityStatus
	created_at: int
	created_by: Optional[str] = None
	updated_at: Optional[int] = None
	updated_by: Optional[str] = None
	auto_delete_at: Optional[int] = None
	auto_archive_at: Optional[int] = None
	image_ids: List[str] = Field(default_factory=list)
	payload: Dict[str, Any] = Field(default_factory=dict)

	@classmethod
	def from_model(cls, activity: models.Activity) -> "ActivityOut":
		return cls(**activity.to_summary())


class NextPublishOut(BaseModel):
	next_publish_at: Optional[int] = None


class SweepResultOut(BaseModel):
	published: int
	deleted: int
	archived: int


class PollVoteRequest(BaseModel):
	selections: List[str] = Field(default_factory=list)
	new_option: Optional[str] = None


class PollOptionTally(BaseModel):
	value: str
	votes: int


class PollDetails(BaseModel):
	id: str
	question: str
	description: str
	options: List[PollOptionTally]
	total_votes: int
	anonymous: bool
	allow_additional_options: bool
	max_selections: int
	current_user_selections: List[str] = Field(default_factory=list)
	closes_at: Optional[int] = None
	is_closed: bool
	is_archived: bool
	image_ids: List[str] = Field(default_factory=list)


class PollVoter(BaseModel):
	user_id: str
	user_name: Optional[str] = None


class PollOptionBreakdown(BaseModel):
	value: str
	voters: List[PollVoter]
	vote_count: int


class PollBreakdown(BaseModel):
	poll_id: str
	options: List[PollOptionBreakdown]
	total_votes: int


class VoteAdjustment(BaseModel):
	user_id: str
	add: float = 0
	remove: float = 0


class PurchaseVotesRequest(BaseModel):
	adjustments: List[VoteAdjustment] = Field(default_factory=list)


class VotingParticipantOut(BaseModel):
	user_id: str
	first_name: str
	last_name: str
	group: Optional[str] = None
	portfolio: Optional[str] = None
	votes: int


class PurchaseVotesResult(BaseModel):
	success: bool
	participants: List[VotingParticipantOut]


class LeaderboardEntry(BaseModel):
	rank: int
	user_id: str
	name: str
	votes: int
	group: Optional[str] = None
	portfolio: Optional[str] = None


class LeaderboardSection(BaseModel):
	id: str
	title: str
	context: Literal["all", "group", "portfolio"]
	entries: List[LeaderboardEntry]
	children: List["LeaderboardSection"] = Field(default_factory=list)


class Leaderboard(BaseModel):
	activity_id: str
	mode: LeaderboardMode
	participants_count: int
	sections: List[LeaderboardSection]


class FormAnswerIn(BaseModel):
	question_id: str
	value: Union[List[str], str, float, None] = None


class PaymentProofIn(BaseModel):
	order_id: str = Field(..., min_length=1)
	amount: float


class FormSubmitRequest(BaseModel):
	answers: List[FormAnswerIn] = Field(default_factory=list)
	payment: Optional[PaymentProofIn] = None
	anonymous: Optional[bool] = None


class FormQuoteRequest(BaseModel):
	answers: List[FormAnswerIn] = Field(default_factory=list)


class FormQuote(BaseModel):
	activity_id: str
	amount: float
	payment_required: bool


class FormAnswerOut(BaseModel):
	question_id: str
	value: Union[List[str], str]
	display_value: Union[List[str], str, None] = None


class FormSubmissionOut(BaseModel):
	id: str
	activity_id: str
	user_id: Optional[str] = None
	user_name: Optional[str] = None
	is_anonymous: bool = False
	answers: List[FormAnswerOut]
	created_at: int
	payment_order_id: Optional[str] = None
	payment_amount: Optional[float] = None


LeaderboardSection.model_rebuild()
