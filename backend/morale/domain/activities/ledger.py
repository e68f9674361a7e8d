"""Voting participants, vote balances and the per-purchaser spending ledger."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from morale.domain.activities import models, policy, schemas
from morale.domain.activities.errors import (
	InsufficientBalanceError,
	LimitExceededError,
	ValidationError,
)
from morale.domain.activities.roster import RosterUser, is_eligible_voter


@dataclass(slots=True)
class AdjustmentResult:
	participants: List[models.VotingParticipant]
	added: int = 0
	removed: int = 0

	@property
	def is_noop(self) -> bool:
		return self.added == 0 and self.removed == 0


def _dedupe(values: Optional[Iterable[str]]) -> List[str]:
	return list(dict.fromkeys(v.strip() for v in values or [] if v and v.strip()))


def normalize_participants(
	incoming: Sequence[schemas.VotingParticipantIn],
	existing: Optional[Sequence[models.VotingParticipant]] = None,
) -> List[models.VotingParticipant]:
	"""Dedupe by user id and merge onto the stored list.

	Stored participants missing from the incoming list are kept. Known
	participants take any non-blank incoming name/group/portfolio but keep
	their current balance. New participants start at zero on edits; on create
	the submitted balance is floored to a whole non-negative number.
	"""
	current: Dict[str, models.VotingParticipant] = {p.user_id: p for p in existing or []}
	merged: Dict[str, models.VotingParticipant] = dict(current)
	seen: set = set()
	for item in incoming:
		user_id = item.user_id.strip()
		if not user_id or user_id in seen:
			continue
		seen.add(user_id)
		previous = current.get(user_id)
		first_name = (item.first_name or "").strip()
		last_name = (item.last_name or "").strip()
		group = (item.group or "").strip() or None
		portfolio = (item.portfolio or "").strip() or None
		if previous is not None:
			merged[user_id] = models.VotingParticipant(
				user_id=user_id,
				first_name=first_name or previous.first_name,
				last_name=last_name or previous.last_name,
				group=group or previous.group,
				portfolio=portfolio or previous.portfolio,
				votes=previous.votes,
			)
			continue
		merged[user_id] = models.VotingParticipant(
			user_id=user_id,
			first_name=first_name,
			last_name=last_name,
			group=group,
			portfolio=portfolio,
			votes=policy.coerce_count(item.votes) if existing is None else 0,
		)
	if not merged:
		raise ValidationError("Add at least one participant.", code="participants_required")
	return list(merged.values())


def normalize_voting(
	*,
	participants: List[models.VotingParticipant],
	add_vote_price: Optional[float],
	remove_vote_price: Optional[float],
	add_vote_limit: Optional[float],
	remove_vote_limit: Optional[float],
	allowed_groups: Optional[Iterable[str]],
	allowed_portfolios: Optional[Iterable[str]],
	allow_ungrouped: Optional[bool],
	allow_removals: Optional[bool],
	leaderboard_mode: Optional[str],
) -> models.VotingPayload:
	removals = True if allow_removals is None else bool(allow_removals)
	if add_vote_price is None:
		raise ValidationError("Add vote price is required.", code="add_price_required")
	if removals and remove_vote_price is None:
		raise ValidationError("Remove vote price is required when removals are allowed.", code="remove_price_required")
	mode = (leaderboard_mode or "").strip().lower()
	return models.VotingPayload(
		participants=participants,
		add_vote_price=policy.normalize_price(add_vote_price, "Add vote price"),
		remove_vote_price=policy.normalize_price(remove_vote_price, "Remove vote price") if removals else None,
		add_vote_limit=policy.normalize_limit(add_vote_limit, "Add vote limit"),
		remove_vote_limit=policy.normalize_limit(remove_vote_limit, "Remove vote limit") if removals else None,
		allowed_groups=_dedupe(allowed_groups),
		allowed_portfolios=_dedupe(allowed_portfolios),
		allow_ungrouped=bool(allow_ungrouped),
		allow_removals=removals,
		leaderboard_mode=mode if mode in models.LEADERBOARD_MODES else "all",
	)


def reconcile(voting: models.VotingPayload, roster: Iterable[RosterUser]) -> List[models.VotingParticipant]:
	"""Refresh group/portfolio from the roster and add newly eligible members at zero votes."""
	participants = copy.deepcopy(voting.participants)
	index = {p.user_id: p for p in participants}
	for user in roster:
		participant = index.get(user.user_id)
		if participant is not None:
			participant.group = user.group
			participant.portfolio = user.portfolio
			continue
		if is_eligible_voter(user, voting):
			participant = models.VotingParticipant(
				user_id=user.user_id,
				first_name=user.first_name,
				last_name=user.last_name,
				group=user.group,
				portfolio=user.portfolio,
				votes=0,
			)
			participants.append(participant)
			index[user.user_id] = participant
	return participants


def apply_adjustments(
	voting: models.VotingPayload,
	participants: Sequence[models.VotingParticipant],
	adjustments: Iterable[schemas.VoteAdjustment],
) -> AdjustmentResult:
	"""Apply a batch to a copy of ``participants`` and total what this call adds/removes."""
	result = AdjustmentResult(participants=copy.deepcopy(list(participants)))
	index = {p.user_id: p for p in result.participants}
	for adjustment in adjustments:
		add = policy.coerce_count(adjustment.add)
		remove = policy.coerce_count(adjustment.remove)
		if add == 0 and remove == 0:
			continue
		participant = index.get(adjustment.user_id)
		if participant is None:
			raise ValidationError("Participant is not part of this vote.", code="unknown_participant")
		if remove and not voting.allow_removals:
			raise ValidationError("Removing votes is disabled for this event.", code="removals_disabled")
		if remove > participant.votes:
			raise InsufficientBalanceError(
				f"{participant.full_name} only has {participant.votes} vote(s) to remove."
			)
		participant.votes += add - remove
		result.added += add
		result.removed += remove
	return result


def check_limits(voting: models.VotingPayload, ledger: models.VotingPurchase, added: int, removed: int) -> None:
	if voting.add_vote_limit is not None and added > voting.add_vote_limit - ledger.add_votes:
		remaining = max(voting.add_vote_limit - ledger.add_votes, 0)
		raise LimitExceededError(
			f"You can add {remaining} more vote(s) for this event.", code="add_limit_exceeded"
		)
	if voting.remove_vote_limit is not None and removed > voting.remove_vote_limit - ledger.remove_votes:
		remaining = max(voting.remove_vote_limit - ledger.remove_votes, 0)
		raise LimitExceededError(
			f"You can remove {remaining} more vote(s) for this event.", code="remove_limit_exceeded"
		)


def participant_out(participant: models.VotingParticipant) -> schemas.VotingParticipantOut:
	return schemas.VotingParticipantOut(**participant.to_dict())
