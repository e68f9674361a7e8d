import asyncio

import pytest

from morale.domain.activities import policy, polls, schemas
from morale.domain.activities.errors import ClosedError, ForbiddenError, ValidationError
from morale.infra.auth import AuthenticatedUser


def poll_draft(now: int, **overrides) -> schemas.ActivityDraft:
	data = {
		"event_type": "poll",
		"title": "Team colour",
		"publish_at": now,
		"poll_question": "Which colour?",
		"poll_options": ["Red", "Blue"],
		"poll_max_selections": 1,
	}
	data.update(overrides)
	return schemas.ActivityDraft(**data)


def tallies(details: schemas.PollDetails) -> dict:
	return {option.value: option.votes for option in details.options}


@pytest.mark.asyncio
async def test_vote_scenario_rejects_selection_over_max(service, clock, admin, member, other_member):
	created = await service.create_activity(admin, poll_draft(clock()))

	await service.vote_poll(member, created.id, schemas.PollVoteRequest(selections=["Red"]))
	with pytest.raises(ValidationError) as excinfo:
		await service.vote_poll(other_member, created.id, schemas.PollVoteRequest(selections=["Blue", "Red"]))
	assert excinfo.value.code == "too_many_selections"

	details = await service.get_poll(member, created.id)
	assert tallies(details) == {"Red": 1, "Blue": 0}
	assert details.total_votes == 1
	assert details.current_user_selections == ["Red"]


@pytest.mark.asyncio
async def test_revote_replaces_prior_selection(service, clock, admin, member):
	created = await service.create_activity(admin, poll_draft(clock()))

	await service.vote_poll(member, created.id, schemas.PollVoteRequest(selections=["Red"]))
	details = await service.vote_poll(member, created.id, schemas.PollVoteRequest(selections=["blue"]))

	assert tallies(details) == {"Red": 0, "Blue": 1}
	votes = await service.repo.list_poll_votes(created.id)
	assert [(v.user_id, v.selections) for v in votes] == [("u-ann", ["Blue"])]


@pytest.mark.asyncio
async def test_total_votes_counts_every_selection(service, clock, admin, member, other_member):
	created = await service.create_activity(
		admin, poll_draft(clock(), poll_options=["Red", "Blue", "Green"], poll_max_selections=2)
	)

	await service.vote_poll(member, created.id, schemas.PollVoteRequest(selections=["Red", "Green"]))
	details = await service.vote_poll(other_member, created.id, schemas.PollVoteRequest(selections=["Red"]))

	assert tallies(details) == {"Red": 2, "Blue": 0, "Green": 1}
	assert details.total_votes == 3


@pytest.mark.asyncio
async def test_new_option_requires_flag(service, clock, admin, member):
	created = await service.create_activity(admin, poll_draft(clock()))
	with pytest.raises(ValidationError) as excinfo:
		await service.vote_poll(member, created.id, schemas.PollVoteRequest(new_option="Green"))
	assert excinfo.value.code == "additional_options_disabled"


@pytest.mark.asyncio
async def test_new_option_is_appended_and_reused_case_insensitively(service, clock, admin, member, other_member):
	created = await service.create_activity(admin, poll_draft(clock(), poll_allow_additional_options=True))

	details = await service.vote_poll(member, created.id, schemas.PollVoteRequest(new_option="Green"))
	assert [o.value for o in details.options] == ["Red", "Blue", "Green"]

	details = await service.vote_poll(other_member, created.id, schemas.PollVoteRequest(new_option="  green "))
	assert [o.value for o in details.options] == ["Red", "Blue", "Green"]
	assert tallies(details)["Green"] == 2


@pytest.mark.asyncio
async def test_rejected_vote_does_not_append_option(service, clock, admin, member):
	created = await service.create_activity(admin, poll_draft(clock(), poll_allow_additional_options=True))

	with pytest.raises(ValidationError):
		await service.vote_poll(member, created.id, schemas.PollVoteRequest(selections=["Red"], new_option="Green"))

	details = await service.get_poll(member, created.id)
	assert [o.value for o in details.options] == ["Red", "Blue"]


@pytest.mark.asyncio
async def test_unknown_and_empty_selections_rejected(service, clock, admin, member):
	created = await service.create_activity(admin, poll_draft(clock()))
	with pytest.raises(ValidationError) as excinfo:
		await service.vote_poll(member, created.id, schemas.PollVoteRequest(selections=["Purple"]))
	assert excinfo.value.code == "unknown_option"
	with pytest.raises(ValidationError) as excinfo:
		await service.vote_poll(member, created.id, schemas.PollVoteRequest(selections=[]))
	assert excinfo.value.code == "empty_selection"


@pytest.mark.asyncio
async def test_closed_and_archived_polls_reject_votes(service, clock, admin, member):
	now = clock()
	created = await service.create_activity(admin, poll_draft(now, poll_closes_at=now + 1000))
	clock.advance(1000)
	with pytest.raises(ClosedError) as excinfo:
		await service.vote_poll(member, created.id, schemas.PollVoteRequest(selections=["Red"]))
	assert excinfo.value.code == "poll_closed"
	assert (await service.get_poll(member, created.id)).is_closed

	other = await service.create_activity(admin, poll_draft(clock()))
	await service.archive_activity(admin, other.id)
	with pytest.raises(ClosedError) as excinfo:
		await service.vote_poll(member, other.id, schemas.PollVoteRequest(selections=["Red"]))
	assert excinfo.value.code == "archived"


@pytest.mark.asyncio
async def test_scheduled_poll_rejects_votes(service, clock, admin, member):
	created = await service.create_activity(admin, poll_draft(clock() + 60_000))
	with pytest.raises(ClosedError) as excinfo:
		await service.vote_poll(member, created.id, schemas.PollVoteRequest(selections=["Red"]))
	assert excinfo.value.code == "not_published"


@pytest.mark.asyncio
async def test_breakdown_is_admin_only(service, clock, admin, member):
	created = await service.create_activity(admin, poll_draft(clock()))
	await service.vote_poll(member, created.id, schemas.PollVoteRequest(selections=["Blue"]))

	with pytest.raises(ForbiddenError):
		await service.get_poll_breakdown(member, created.id)

	breakdown = await service.get_poll_breakdown(admin, created.id)
	by_option = {o.value: o for o in breakdown.options}
	assert by_option["Blue"].vote_count == 1
	assert by_option["Blue"].voters[0].user_name == "Ann Archer"
	assert breakdown.total_votes == 1


@pytest.mark.asyncio
async def test_concurrent_votes_from_one_voter_run_one_at_a_time(service, clock, admin, member, monkeypatch):
	created = await service.create_activity(admin, poll_draft(clock()))
	events = []
	ensure_accepting_input = policy.ensure_accepting_input
	upsert_poll_vote = service.repo.upsert_poll_vote

	def tracked_accepting_input(activity, now):
		events.append("enter")
		ensure_accepting_input(activity, now)

	async def slow_upsert(vote):
		await asyncio.sleep(0)
		events.append("write")
		await upsert_poll_vote(vote)

	monkeypatch.setattr(policy, "ensure_accepting_input", tracked_accepting_input)
	monkeypatch.setattr(service.repo, "upsert_poll_vote", slow_upsert)

	await asyncio.gather(
		*[
			service.vote_poll(member, created.id, schemas.PollVoteRequest(selections=[choice]))
			for choice in ("Red", "Blue", "Red", "Blue")
		]
	)

	assert events == ["enter", "write"] * 4
	votes = await service.repo.list_poll_votes(created.id)
	assert len(votes) == 1
	assert votes[0].selections == ["Blue"]


@pytest.mark.asyncio
async def test_many_voters_keep_total_equal_to_selection_sum(service, clock, admin):
	created = await service.create_activity(
		admin, poll_draft(clock(), poll_options=["A", "B", "C"], poll_max_selections=3)
	)
	picks = [["A"], ["A", "B"], ["C", "B", "A"], ["B"]]
	for idx, selection in enumerate(picks):
		voter = AuthenticatedUser(id=f"voter-{idx}")
		await service.vote_poll(voter, created.id, schemas.PollVoteRequest(selections=selection))

	details = await service.get_poll(None, created.id)
	assert details.total_votes == sum(len(p) for p in picks)
	assert details.current_user_selections == []


def test_normalize_poll_dedupes_and_clamps():
	payload = polls.normalize_poll(
		question="  Pick one  ",
		options=["Red", "red", " Blue ", ""],
		anonymous=None,
		allow_additional_options=None,
		max_selections=9,
		closes_at=None,
		publish_at=0,
	)
	assert payload.question == "Pick one"
	assert payload.options == ["Red", "Blue"]
	assert payload.max_selections == 2


@pytest.mark.parametrize(
	"overrides, code",
	[
		({"options": ["Red", "RED"]}, "poll_options_required"),
		({"question": "x" * 101}, "poll_question_too_long"),
		({"question": " "}, "poll_question_required"),
		({"closes_at": 0}, "poll_closes_before_publish"),
	],
)
def test_normalize_poll_rejects_bad_input(overrides, code):
	params = {
		"question": "Pick",
		"options": ["Red", "Blue"],
		"anonymous": None,
		"allow_additional_options": None,
		"max_selections": 1,
		"closes_at": None,
		"publish_at": 0,
	}
	params.update(overrides)
	with pytest.raises(ValidationError) as excinfo:
		polls.normalize_poll(**params)
	assert excinfo.value.code == code


@pytest.mark.asyncio
async def test_total_counts_selections_of_removed_options(service, clock, admin, member):
	created = await service.create_activity(admin, poll_draft(clock(), poll_options=["Red", "Blue", "Green"]))
	await service.vote_poll(member, created.id, schemas.PollVoteRequest(selections=["Green"]))

	await service.update_activity(admin, created.id, schemas.ActivityDraft(publish_at=clock(), poll_options=["Red", "Blue"]))

	details = await service.get_poll(member, created.id)
	breakdown = await service.get_poll_breakdown(admin, created.id)
	assert tallies(details) == {"Red": 0, "Blue": 0}
	assert details.total_votes == 1
	assert breakdown.total_votes == details.total_votes
