import pytest

from morale.domain.activities import leaderboard, models, schemas
from morale.domain.activities.errors import NotFoundError


def participant(user_id, first, last, votes, group=None, portfolio=None):
	return models.VotingParticipant(
		user_id=user_id, first_name=first, last_name=last, group=group, portfolio=portfolio, votes=votes
	)


def voting_activity(participants, mode="all") -> models.Activity:
	return models.Activity(
		id="act-1",
		event_type=models.VOTING,
		title="Spirit cup",
		description="",
		publish_at=0,
		status=models.PUBLISHED,
		created_at=0,
		payload=models.VotingPayload(participants=participants, add_vote_price=1, leaderboard_mode=mode),
	)


PEOPLE = [
	participant("u-1", "Zoe", "Young", 5, "Alpha", "Ops"),
	participant("u-2", "Amy", "Adams", 5, "Alpha", "Comms"),
	participant("u-3", "Bob", "Brown", 3, "Bravo", None),
	participant("u-4", "Cy", "Cole", 8, None, None),
	participant("u-5", "Di", "Dunn", 1, "Alpha", "Ops"),
]


def test_ties_share_rank_and_sort_by_name():
	entries = leaderboard.rank(PEOPLE)

	assert [(e.user_id, e.rank) for e in entries] == [
		("u-4", 1),
		("u-2", 2),
		("u-1", 2),
		("u-3", 4),
		("u-5", 5),
	]
	assert entries[1].name == "Amy Adams"


def test_all_mode_has_single_section():
	board = leaderboard.build(voting_activity(PEOPLE), PEOPLE)

	assert board.mode == "all"
	assert board.participants_count == 5
	assert [(s.id, s.context) for s in board.sections] == [("all", "all")]
	assert len(board.sections[0].entries) == 5


def test_group_mode_ranks_within_each_group_with_ungrouped_last():
	board = leaderboard.build(voting_activity(PEOPLE, "group"), PEOPLE)

	assert [(s.id, s.title) for s in board.sections] == [
		("group:Alpha", "Alpha"),
		("group:Bravo", "Bravo"),
		("group:", leaderboard.UNGROUPED),
	]
	alpha = board.sections[0]
	assert [(e.user_id, e.rank) for e in alpha.entries] == [("u-2", 1), ("u-1", 1), ("u-5", 3)]
	assert alpha.children == []


def test_group_portfolio_mode_nests_portfolios():
	board = leaderboard.build(voting_activity(PEOPLE, "group_portfolio"), PEOPLE)

	alpha = board.sections[0]
	assert [(c.id, c.title, c.context) for c in alpha.children] == [
		("group:Alpha:portfolio:Comms", "Comms", "portfolio"),
		("group:Alpha:portfolio:Ops", "Ops", "portfolio"),
	]
	ops = alpha.children[1]
	assert [(e.user_id, e.rank) for e in ops.entries] == [("u-1", 1), ("u-5", 2)]
	bravo = board.sections[1]
	assert [c.title for c in bravo.children] == [leaderboard.NO_PORTFOLIO]


def test_unknown_mode_falls_back_to_all():
	board = leaderboard.build(voting_activity(PEOPLE, "sideways"), PEOPLE)
	assert board.mode == "all"


@pytest.mark.asyncio
async def test_service_leaderboard_reflects_purchases_and_roster(service, clock, admin, member):
	created = await service.create_activity(
		admin,
		schemas.ActivityDraft(
			event_type="voting",
			title="Spirit cup",
			publish_at=clock(),
			voting_participants=[
				{"user_id": "u-ann", "first_name": "Ann", "last_name": "Archer", "group": "Alpha"},
				{"user_id": "u-ben", "first_name": "Ben", "last_name": "Baker", "group": "Alpha"},
			],
			voting_add_vote_price=1,
			voting_remove_vote_price=1,
			voting_allowed_groups=["Alpha", "Bravo"],
			voting_leaderboard_mode="group",
		),
	)
	await service.purchase_votes(
		member, created.id, schemas.PurchaseVotesRequest(adjustments=[{"user_id": "u-ben", "add": 2}])
	)

	board = await service.get_leaderboard(created.id)

	assert board.mode == "group"
	assert [s.title for s in board.sections] == ["Alpha", "Bravo"]
	assert [(e.user_id, e.votes, e.rank) for e in board.sections[0].entries] == [
		("u-ben", 2, 1),
		("u-ann", 0, 2),
	]
	assert [e.user_id for e in board.sections[1].entries] == ["u-cat"]


@pytest.mark.asyncio
async def test_leaderboard_for_non_voting_activity_is_not_found(service, clock, admin):
	created = await service.create_activity(
		admin,
		schemas.ActivityDraft(event_type="announcement", title="Hi", description="There", publish_at=clock()),
	)
	with pytest.raises(NotFoundError):
		await service.get_leaderboard(created.id)
