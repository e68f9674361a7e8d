"""Ranked views over a voting activity's participant balances."""

from __future__ import annotations

from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Sequence

from morale.domain.activities import models, schemas

UNGROUPED = "Ungrouped"
NO_PORTFOLIO = "No portfolio"


def _sort_key(participant: models.VotingParticipant):
	return (-participant.votes, participant.last_name.lower(), participant.first_name.lower(), participant.user_id)


def rank(participants: Sequence[models.VotingParticipant]) -> List[schemas.LeaderboardEntry]:
	"""Votes descending, then last/first name. Ties share a rank (1, 1, 3)."""
	entries: List[schemas.LeaderboardEntry] = []
	previous_votes: Optional[int] = None
	current_rank = 0
	for position, participant in enumerate(sorted(participants, key=_sort_key), start=1):
		if participant.votes != previous_votes:
			current_rank = position
			previous_votes = participant.votes
		entries.append(
			schemas.LeaderboardEntry(
				rank=current_rank,
				user_id=participant.user_id,
				name=participant.full_name,
				votes=participant.votes,
				group=participant.group,
				portfolio=participant.portfolio,
			)
		)
	return entries


def _bucket(
	participants: Sequence[models.VotingParticipant],
	key: Callable[[models.VotingParticipant], Optional[str]],
) -> "OrderedDict[Optional[str], List[models.VotingParticipant]]":
	buckets: Dict[Optional[str], List[models.VotingParticipant]] = {}
	for participant in participants:
		buckets.setdefault(key(participant), []).append(participant)
	ordered = sorted(buckets, key=lambda name: (name is None, (name or "").lower()))
	return OrderedDict((name, buckets[name]) for name in ordered)


def build(activity: models.Activity, participants: Sequence[models.VotingParticipant]) -> schemas.Leaderboard:
	mode = activity.voting.leaderboard_mode
	if mode not in models.LEADERBOARD_MODES:
		mode = "all"
	sections: List[schemas.LeaderboardSection] = []
	if mode == "all":
		sections.append(
			schemas.LeaderboardSection(id="all", title="All participants", context="all", entries=rank(participants))
		)
	else:
		for group, members in _bucket(participants, lambda p: p.group).items():
			group_id = f"group:{group or ''}"
			children: List[schemas.LeaderboardSection] = []
			if mode == "group_portfolio":
				for portfolio, portfolio_members in _bucket(members, lambda p: p.portfolio).items():
					children.append(
						schemas.LeaderboardSection(
							id=f"{group_id}:portfolio:{portfolio or ''}",
							title=portfolio or NO_PORTFOLIO,
							context="portfolio",
							entries=rank(portfolio_members),
						)
					)
			sections.append(
				schemas.LeaderboardSection(
					id=group_id,
					title=group or UNGROUPED,
					context="group",
					entries=rank(members),
					children=children,
				)
			)
	return schemas.Leaderboard(
		activity_id=activity.id,
		mode=mode,
		participants_count=len(participants),
		sections=sections,
	)
