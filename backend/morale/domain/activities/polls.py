"""Poll option normalisation, vote resolution and tallying."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from morale.domain.activities import models, policy, schemas
from morale.domain.activities.errors import ValidationError


def dedupe_options(values: Iterable[str]) -> List[str]:
	"""Trim, drop blanks and drop case-insensitive duplicates (first casing wins)."""
	seen: set[str] = set()
	result: List[str] = []
	for raw in values:
		value = (raw or "").strip()
		if not value or value.lower() in seen:
			continue
		seen.add(value.lower())
		result.append(value)
	return result


def normalize_poll(
	*,
	question: Optional[str],
	options: Optional[Sequence[str]],
	anonymous: Optional[bool],
	allow_additional_options: Optional[bool],
	max_selections: Optional[float],
	closes_at: Optional[int],
	publish_at: int,
) -> models.PollPayload:
	text = (question or "").strip()
	if not text:
		raise ValidationError("Poll question is required.", code="poll_question_required")
	if len(text) > policy.MAX_POLL_QUESTION_LENGTH:
		raise ValidationError(
			f"Poll question must be at most {policy.MAX_POLL_QUESTION_LENGTH} characters.",
			code="poll_question_too_long",
		)
	cleaned = dedupe_options(options or [])
	if len(cleaned) < 2:
		raise ValidationError("A poll needs at least two distinct options.", code="poll_options_required")
	if closes_at is not None and closes_at <= publish_at:
		raise ValidationError("Poll close time must be after publish time.", code="poll_closes_before_publish")
	limit = policy.coerce_count(max_selections) if max_selections is not None else 1
	return models.PollPayload(
		question=text,
		options=cleaned,
		anonymous=bool(anonymous),
		allow_additional_options=bool(allow_additional_options),
		max_selections=min(max(limit, 1), len(cleaned)),
		closes_at=closes_at,
	)


def resolve_selections(
	poll: models.PollPayload,
	selections: Sequence[str],
	extra_option: Optional[str] = None,
) -> List[str]:
	"""Map requested selections onto canonical option values and check the limit.

	``extra_option`` is an option about to be appended; it counts as valid.
	"""
	requested = list(selections)
	if extra_option:
		requested.append(extra_option)
	resolved: List[str] = []
	for raw in requested:
		value = (raw or "").strip()
		if not value:
			continue
		canonical = poll.find_option(value)
		if canonical is None and extra_option and value.lower() == extra_option.lower():
			canonical = extra_option
		if canonical is None:
			raise ValidationError(f"'{value}' is not an option in this poll.", code="unknown_option")
		if canonical not in resolved:
			resolved.append(canonical)
	if not resolved:
		raise ValidationError("Select at least one option.", code="empty_selection")
	if len(resolved) > poll.max_selections:
		raise ValidationError(
			f"You can select at most {poll.max_selections} option(s).",
			code="too_many_selections",
		)
	return resolved


def tally(poll: models.PollPayload, votes: Iterable[models.PollVote]) -> Tuple[List[schemas.PollOptionTally], int]:
	"""Per-option counts over the current options; total is the sum of selection sizes."""
	counts: Dict[str, int] = {option: 0 for option in poll.options}
	total = 0
	for vote in votes:
		total += len(vote.selections)
		for selection in vote.selections:
			if selection in counts:
				counts[selection] += 1
	return [schemas.PollOptionTally(value=option, votes=count) for option, count in counts.items()], total


def breakdown(activity_id: str, poll: models.PollPayload, votes: Iterable[models.PollVote]) -> schemas.PollBreakdown:
	voters: Dict[str, List[schemas.PollVoter]] = {option: [] for option in poll.options}
	total = 0
	for vote in votes:
		for selection in vote.selections:
			# selections may reference options removed by a later edit
			voters.setdefault(selection, []).append(
				schemas.PollVoter(user_id=vote.user_id, user_name=vote.user_name)
			)
			total += 1
	return schemas.PollBreakdown(
		poll_id=activity_id,
		options=[
			schemas.PollOptionBreakdown(value=option, voters=entries, vote_count=len(entries))
			for option, entries in voters.items()
		],
		total_votes=total,
	)
