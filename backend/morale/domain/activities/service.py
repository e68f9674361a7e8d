"""Service orchestration for scheduled activities."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

from morale.domain.activities import (
	forms,
	leaderboard,
	ledger,
	models,
	outbox,
	policy,
	polls,
	schemas,
)
from morale.domain.activities.collaborators import (
	NotificationSink,
	ObjectStorage,
	default_notification_sink,
	default_object_storage,
)
from morale.domain.activities.errors import (
	ActivityError,
	ClosedError,
	ConflictError,
	NotFoundError,
	PaymentRequiredError,
	ValidationError,
)
from morale.domain.activities.repository import ActivitiesRepository
from morale.domain.activities.roster import InMemoryRosterProvider, RosterProvider, RosterUser
from morale.infra.auth import AuthenticatedUser
from morale.infra.locks import KeyedLock
from morale.obs import metrics

logger = logging.getLogger(__name__)

_TYPE_TOPICS = {
	models.POLL: outbox.POLL_VOTES,
	models.VOTING: outbox.VOTING,
	models.FORM: outbox.FORM_SUBMISSIONS,
}


def _pick(draft: schemas.ActivityDraft, name: str, current: Any) -> Any:
	"""Draft value when the caller sent the field, otherwise the stored one."""
	return getattr(draft, name) if draft.provided(name) else current


def _status_for(publish_at: int, now: int) -> str:
	return models.PUBLISHED if publish_at <= now else models.SCHEDULED


def _answers_map(answers: Iterable[schemas.FormAnswerIn]) -> Dict[str, Any]:
	mapped: Dict[str, Any] = {}
	for answer in answers:
		if answer.question_id in mapped:
			raise ValidationError("Each question can only be answered once.", code="duplicate_answer")
		mapped[answer.question_id] = answer.value
	return mapped


def _submission_out(submission: models.FormSubmission, *, reveal_identity: bool = True) -> schemas.FormSubmissionOut:
	hidden = submission.is_anonymous and not reveal_identity
	return schemas.FormSubmissionOut(
		id=submission.id,
		activity_id=submission.activity_id,
		user_id=None if hidden else submission.user_id,
		user_name=None if hidden else submission.user_name,
		is_anonymous=submission.is_anonymous,
		answers=[schemas.FormAnswerOut(**answer.to_dict()) for answer in submission.answers],
		created_at=submission.created_at,
		payment_order_id=submission.payment_order_id,
		payment_amount=submission.payment_amount,
	)


class ActivitiesService:
	"""Lifecycle manager and entry point for poll, voting and form interactions."""

	def __init__(
		self,
		repository: Optional[ActivitiesRepository] = None,
		*,
		roster: Optional[RosterProvider] = None,
		notifier: Optional[NotificationSink] = None,
		storage: Optional[ObjectStorage] = None,
		clock: Optional[Callable[[], int]] = None,
	) -> None:
		self.repo = repository or ActivitiesRepository()
		self.roster: RosterProvider = roster or InMemoryRosterProvider()
		self.notifier: NotificationSink = notifier or default_notification_sink()
		self.storage: ObjectStorage = storage or default_object_storage()
		self._clock = clock or policy.now_ms
		self._vote_locks = KeyedLock()

	def now(self) -> int:
		return self._clock()

	# -- best-effort side effects ------------------------------------------

	async def _notify_published(self, activity: models.Activity) -> None:
		try:
			await self.notifier.notify_published(
				title=activity.title, event_type=activity.event_type, activity_id=activity.id
			)
		except Exception:
			metrics.inc_side_effect_failure("notification")
			logger.warning("activity_notification_failed", extra={"activity_id": activity.id}, exc_info=True)

	async def _release_images(self, activity_id: str, image_ids: Iterable[str]) -> None:
		ids = list(image_ids)
		if not ids:
			return
		try:
			await self.storage.release_objects(ids)
		except Exception:
			metrics.inc_side_effect_failure("image_release")
			logger.warning(
				"activity_image_release_failed",
				extra={"activity_id": activity_id, "image_count": len(ids)},
				exc_info=True,
			)

	async def _roster_for_view(self) -> List[RosterUser]:
		try:
			return await self.roster.list_users()
		except Exception:
			metrics.inc_side_effect_failure("roster")
			logger.warning("roster_lookup_failed", exc_info=True)
			return []

	# -- payload normalisation ----------------------------------------------

	def _build_payload(
		self,
		event_type: str,
		draft: schemas.ActivityDraft,
		existing: Optional[models.Payload],
		publish_at: int,
	) -> models.Payload:
		if event_type == models.POLL:
			current = existing if isinstance(existing, models.PollPayload) else None
			return polls.normalize_poll(
				question=_pick(draft, "poll_question", current.question if current else None),
				options=_pick(draft, "poll_options", current.options if current else None),
				anonymous=_pick(draft, "poll_anonymous", current.anonymous if current else None),
				allow_additional_options=_pick(
					draft, "poll_allow_additional_options", current.allow_additional_options if current else None
				),
				max_selections=_pick(draft, "poll_max_selections", current.max_selections if current else None),
				closes_at=_pick(draft, "poll_closes_at", current.closes_at if current else None),
				publish_at=publish_at,
			)
		if event_type == models.VOTING:
			current_voting = existing if isinstance(existing, models.VotingPayload) else None
			if current_voting is not None and not draft.provided("voting_participants"):
				participants = [models.VotingParticipant.from_dict(p.to_dict()) for p in current_voting.participants]
			else:
				participants = ledger.normalize_participants(
					draft.voting_participants or [],
					current_voting.participants if current_voting else None,
				)
			c = current_voting
			return ledger.normalize_voting(
				participants=participants,
				add_vote_price=_pick(draft, "voting_add_vote_price", c.add_vote_price if c else None),
				remove_vote_price=_pick(draft, "voting_remove_vote_price", c.remove_vote_price if c else None),
				add_vote_limit=_pick(draft, "voting_add_vote_limit", c.add_vote_limit if c else None),
				remove_vote_limit=_pick(draft, "voting_remove_vote_limit", c.remove_vote_limit if c else None),
				allowed_groups=_pick(draft, "voting_allowed_groups", c.allowed_groups if c else None),
				allowed_portfolios=_pick(draft, "voting_allowed_portfolios", c.allowed_portfolios if c else None),
				allow_ungrouped=_pick(draft, "voting_allow_ungrouped", c.allow_ungrouped if c else None),
				allow_removals=_pick(draft, "voting_allow_removals", c.allow_removals if c else None),
				leaderboard_mode=_pick(draft, "voting_leaderboard_mode", c.leaderboard_mode if c else None),
			)
		if event_type == models.FORM:
			f = existing if isinstance(existing, models.FormPayload) else None
			return forms.normalize_form(
				questions=_pick(draft, "form_questions", [q.to_dict() for q in f.questions] if f else None) or [],
				submission_limit=_pick(draft, "form_submission_limit", f.submission_limit if f else None),
				price=_pick(draft, "form_price", f.price if f else None),
				allow_anonymous_choice=_pick(draft, "form_allow_anonymous_choice", f.allow_anonymous_choice if f else None),
				force_anonymous=_pick(draft, "form_force_anonymous", f.force_anonymous if f else None),
			)
		return models.AnnouncementPayload()

	@staticmethod
	def _validate_text(event_type: str, title: str, description: str) -> None:
		if not title:
			raise ValidationError("Title is required.", code="title_required")
		if not description and event_type not in (models.POLL, models.VOTING):
			raise ValidationError("Description is required.", code="description_required")

	# -- lifecycle ------------------------------------------------------------

	async def create_activity(
		self,
		auth_user: Optional[AuthenticatedUser],
		draft: schemas.ActivityDraft,
	) -> schemas.ActivityWriteResult:
		user = policy.require_identity(auth_user)
		if draft.event_type is None:
			raise ValidationError("Event type is required.", code="event_type_required")
		event_type = draft.event_type
		title = draft.title.strip()
		description = draft.description.strip()
		self._validate_text(event_type, title, description)
		policy.ensure_automation_window(draft.publish_at, draft.auto_delete_at, draft.auto_archive_at)
		image_ids = policy.normalize_images(draft.image_ids or [])
		payload = self._build_payload(event_type, draft, None, draft.publish_at)

		now = self.now()
		activity = models.Activity(
			id=uuid.uuid4().hex,
			event_type=event_type,
			title=title,
			description=description,
			publish_at=draft.publish_at,
			status=_status_for(draft.publish_at, now),
			created_at=now,
			created_by=user.display_name,
			auto_delete_at=draft.auto_delete_at,
			auto_archive_at=draft.auto_archive_at,
			image_ids=image_ids,
			payload=payload,
		)
		await self.repo.insert_activity(activity)
		metrics.inc_activity_created(event_type)
		logger.info(
			"activity_created",
			extra={"activity_id": activity.id, "event_type": event_type, "status": activity.status},
		)
		if activity.status == models.PUBLISHED:
			metrics.inc_transition("published", "create")
			await self._notify_published(activity)
		await outbox.broadcast([outbox.ANNOUNCEMENTS], activity_id=activity.id, reason="created")
		return schemas.ActivityWriteResult(id=activity.id, status=activity.status)

	async def update_activity(
		self,
		auth_user: Optional[AuthenticatedUser],
		activity_id: str,
		draft: schemas.ActivityDraft,
	) -> schemas.ActivityWriteResult:
		user = policy.require_identity(auth_user)
		# balances and appended poll options stay intact while the row is held
		async with self.repo.edit_section(activity_id) as txn:
			existing = policy.ensure_found(txn.activity)
			if draft.event_type is not None and draft.event_type != existing.event_type:
				raise ValidationError("Event type cannot be changed.", code="event_type_immutable")

			title = _pick(draft, "title", existing.title).strip()
			description = _pick(draft, "description", existing.description).strip()
			self._validate_text(existing.event_type, title, description)
			auto_delete_at = _pick(draft, "auto_delete_at", existing.auto_delete_at)
			auto_archive_at = _pick(draft, "auto_archive_at", existing.auto_archive_at)
			policy.ensure_automation_window(draft.publish_at, auto_delete_at, auto_archive_at)
			image_ids = policy.normalize_images(_pick(draft, "image_ids", existing.image_ids) or [])
			payload = self._build_payload(existing.event_type, draft, existing.payload, draft.publish_at)

			now = self.now()
			status = _status_for(draft.publish_at, now)
			updated = await txn.write(
				title=title,
				description=description,
				publish_at=draft.publish_at,
				status=status,
				auto_delete_at=auto_delete_at,
				auto_archive_at=auto_archive_at,
				image_ids=image_ids,
				payload=payload,
				updated_at=now,
				updated_by=user.display_name,
			)
		if not updated:
			raise NotFoundError()
		logger.info(
			"activity_updated",
			extra={"activity_id": activity_id, "previous_status": existing.status, "status": status},
		)

		removed_images = [image for image in existing.image_ids if image not in image_ids]
		await self._release_images(activity_id, removed_images)
		if existing.status != models.PUBLISHED and status == models.PUBLISHED:
			metrics.inc_transition("published", "update")
			existing.title = title
			await self._notify_published(existing)
		await outbox.broadcast([outbox.ANNOUNCEMENTS], activity_id=activity_id, reason="updated")
		return schemas.ActivityWriteResult(id=activity_id, status=status)

	async def get_activity(self, activity_id: str) -> schemas.ActivityOut:
		activity = policy.ensure_found(await self.repo.get_activity(activity_id))
		if activity.event_type == models.VOTING and not activity.is_archived:
			roster_users = await self._roster_for_view()
			activity.voting.participants = ledger.reconcile(activity.voting, roster_users)
		return schemas.ActivityOut.from_model(activity)

	async def list_published(self, now: Optional[int] = None) -> List[schemas.ActivityOut]:
		now = self.now() if now is None else now
		rows = await self.repo.list_activities(statuses=[models.PUBLISHED])
		rows += await self.repo.list_activities(statuses=[models.SCHEDULED], publish_at_or_before=now)
		rows.sort(key=lambda act: act.publish_at, reverse=True)
		# due-but-unswept rows read as published without writing the change
		return [schemas.ActivityOut.from_model(act.with_status(models.PUBLISHED)) for act in rows]

	async def list_scheduled(self, now: Optional[int] = None) -> List[schemas.ActivityOut]:
		now = self.now() if now is None else now
		rows = await self.repo.list_activities(statuses=[models.SCHEDULED], publish_after=now)
		rows.sort(key=lambda act: act.publish_at)
		return [schemas.ActivityOut.from_model(act) for act in rows]

	async def list_archived(self) -> List[schemas.ActivityOut]:
		rows = await self.repo.list_activities(statuses=[models.ARCHIVED])
		rows.sort(key=lambda act: act.publish_at, reverse=True)
		return [schemas.ActivityOut.from_model(act) for act in rows]

	async def next_publish_at(self, now: Optional[int] = None) -> Optional[int]:
		return await self.repo.next_publish_at(self.now() if now is None else now)

	async def _delete(self, activity_id: str, *, trigger: str, due_at: Optional[int] = None) -> Optional[models.Activity]:
		deleted = await self.repo.delete_activity(activity_id, auto_delete_due_at=due_at)
		if deleted is None:
			return None
		metrics.inc_transition("deleted", trigger)
		logger.info("activity_deleted", extra={"activity_id": activity_id, "trigger": trigger})
		await self._release_images(activity_id, deleted.image_ids)
		return deleted

	async def remove_activity(self, auth_user: Optional[AuthenticatedUser], activity_id: str) -> None:
		policy.require_identity(auth_user)
		deleted = await self._delete(activity_id, trigger="manual")
		if deleted is None:
			raise NotFoundError()
		topics = [outbox.ANNOUNCEMENTS]
		if deleted.event_type in _TYPE_TOPICS:
			topics.append(_TYPE_TOPICS[deleted.event_type])
		await outbox.broadcast(topics, activity_id=activity_id, reason="deleted")

	async def archive_activity(
		self,
		auth_user: Optional[AuthenticatedUser],
		activity_id: str,
	) -> schemas.ActivityWriteResult:
		user = policy.require_identity(auth_user)
		activity = policy.ensure_found(await self.repo.get_activity(activity_id))
		if activity.is_archived:
			return schemas.ActivityWriteResult(id=activity_id, status=models.ARCHIVED)
		if not await self.repo.archive(activity_id, now=self.now(), updated_by=user.display_name):
			raise NotFoundError()
		metrics.inc_transition("archived", "manual")
		logger.info("activity_archived", extra={"activity_id": activity_id, "trigger": "manual"})
		await outbox.broadcast([outbox.ANNOUNCEMENTS], activity_id=activity_id, reason="archived")
		return schemas.ActivityWriteResult(id=activity_id, status=models.ARCHIVED)

	async def sweep(self, now: Optional[int] = None) -> models.SweepResult:
		"""Publish due rows, then auto-delete, then auto-archive.

		Every step re-checks its predicate in the store, so overlapping sweeps
		and concurrent edits only ever act once per row. A failing row is
		logged and skipped.
		"""
		now = self.now() if now is None else now
		result = models.SweepResult()

		for activity in await self.repo.list_activities(statuses=[models.SCHEDULED], publish_at_or_before=now):
			try:
				if await self.repo.publish_if_due(activity.id, now):
					result.published += 1
					await self._notify_published(activity)
			except Exception:
				metrics.inc_sweep_row_failure("publish")
				logger.exception("sweep_publish_failed", extra={"activity_id": activity.id})

		for activity in await self.repo.list_activities(auto_delete_due_at=now):
			try:
				if await self._delete(activity.id, trigger="sweep", due_at=now) is not None:
					result.deleted += 1
			except Exception:
				metrics.inc_sweep_row_failure("delete")
				logger.exception("sweep_delete_failed", extra={"activity_id": activity.id})

		for activity in await self.repo.list_activities(
			statuses=[models.SCHEDULED, models.PUBLISHED], auto_archive_due_at=now
		):
			try:
				if await self.repo.archive_if_due(activity.id, now):
					result.archived += 1
			except Exception:
				metrics.inc_sweep_row_failure("archive")
				logger.exception("sweep_archive_failed", extra={"activity_id": activity.id})

		metrics.inc_transition("published", "sweep", result.published)
		metrics.inc_transition("archived", "sweep", result.archived)
		if result.total:
			logger.info(
				"sweep_applied",
				extra={"published": result.published, "deleted": result.deleted, "archived": result.archived},
			)
			await outbox.broadcast(
				[outbox.ANNOUNCEMENTS, outbox.POLL_VOTES, outbox.VOTING, outbox.FORM_SUBMISSIONS]
				if result.deleted
				else [outbox.ANNOUNCEMENTS],
				reason="sweep",
			)
		return result

	# -- polls --------------------------------------------------------------

	async def get_poll(self, auth_user: Optional[AuthenticatedUser], activity_id: str) -> schemas.PollDetails:
		activity = policy.ensure_found(await self.repo.get_activity(activity_id), models.POLL)
		poll = activity.poll
		votes = await self.repo.list_poll_votes(activity_id)
		options, total = polls.tally(poll, votes)
		mine: List[str] = []
		if auth_user is not None:
			mine = next((list(v.selections) for v in votes if v.user_id == auth_user.id), [])
		return schemas.PollDetails(
			id=activity.id,
			question=poll.question,
			description=activity.description,
			options=options,
			total_votes=total,
			anonymous=poll.anonymous,
			allow_additional_options=poll.allow_additional_options,
			max_selections=poll.max_selections,
			current_user_selections=mine,
			closes_at=poll.closes_at,
			is_closed=poll.is_closed(self.now()),
			is_archived=activity.is_archived,
			image_ids=list(activity.image_ids),
		)

	async def vote_poll(
		self,
		auth_user: Optional[AuthenticatedUser],
		activity_id: str,
		request: schemas.PollVoteRequest,
	) -> schemas.PollDetails:
		user = policy.require_identity(auth_user)
		async with self._vote_locks.hold((activity_id, user.id)):
			activity = policy.ensure_found(await self.repo.get_activity(activity_id), models.POLL)
			now = self.now()
			policy.ensure_accepting_input(activity, now)
			poll = activity.poll
			if poll.is_closed(now):
				raise ClosedError("This poll is closed.", code="poll_closed")

			new_option = (request.new_option or "").strip() or None
			if new_option is not None:
				if not poll.allow_additional_options:
					raise ValidationError("This poll does not accept new options.", code="additional_options_disabled")
				new_option = poll.find_option(new_option) or new_option
			# validate before appending so a rejected vote leaves the options untouched
			polls.resolve_selections(poll, request.selections, new_option)

			appended = False
			if new_option is not None and poll.find_option(new_option) is None:
				canonical = await self.repo.append_poll_option(activity_id, new_option)
				if canonical is None:
					raise NotFoundError("Poll not found.")
				appended = canonical == new_option
				new_option = canonical
				activity = policy.ensure_found(await self.repo.get_activity(activity_id), models.POLL)
			selections = polls.resolve_selections(activity.poll, request.selections, new_option)

			await self.repo.upsert_poll_vote(
				models.PollVote(
					activity_id=activity_id,
					user_id=user.id,
					user_name=user.display_name,
					selections=selections,
					created_at=now,
					updated_at=now,
				)
			)
		metrics.inc_poll_vote(new_option=appended)
		logger.info("poll_vote_recorded", extra={"activity_id": activity_id, "selection_count": len(selections)})
		topics = [outbox.POLL_VOTES] + ([outbox.ANNOUNCEMENTS] if appended else [])
		await outbox.broadcast(topics, activity_id=activity_id, reason="vote")
		return await self.get_poll(user, activity_id)

	async def get_poll_breakdown(
		self,
		auth_user: Optional[AuthenticatedUser],
		activity_id: str,
	) -> schemas.PollBreakdown:
		policy.require_admin(auth_user)
		activity = policy.ensure_found(await self.repo.get_activity(activity_id), models.POLL)
		votes = await self.repo.list_poll_votes(activity_id)
		return polls.breakdown(activity_id, activity.poll, votes)

	# -- voting -------------------------------------------------------------

	async def purchase_votes(
		self,
		auth_user: Optional[AuthenticatedUser],
		activity_id: str,
		request: schemas.PurchaseVotesRequest,
	) -> schemas.PurchaseVotesResult:
		user = policy.require_identity(auth_user)
		roster_users = await self._roster_for_view()
		try:
			async with self.repo.purchase_section(activity_id, user.id) as txn:
				activity = policy.ensure_found(txn.activity, models.VOTING)
				now = self.now()
				policy.ensure_accepting_input(activity, now)
				participants = ledger.reconcile(activity.voting, roster_users)
				result = ledger.apply_adjustments(activity.voting, participants, request.adjustments)
				if result.is_noop:
					metrics.inc_vote_purchase("noop")
					return schemas.PurchaseVotesResult(
						success=False,
						participants=[ledger.participant_out(p) for p in participants],
					)
				ledger.check_limits(activity.voting, txn.ledger, result.added, result.removed)
				await txn.commit(
					result.participants,
					add=result.added,
					remove=result.removed,
					now=now,
					updated_by=user.display_name,
				)
		except ActivityError as exc:
			metrics.inc_vote_purchase(exc.code)
			raise
		metrics.inc_vote_purchase("ok")
		logger.info(
			"votes_purchased",
			extra={"activity_id": activity_id, "added": result.added, "removed": result.removed},
		)
		await outbox.broadcast([outbox.VOTING], activity_id=activity_id, reason="purchase")
		return schemas.PurchaseVotesResult(
			success=True,
			participants=[ledger.participant_out(p) for p in result.participants],
		)

	async def get_leaderboard(self, activity_id: str) -> schemas.Leaderboard:
		activity = policy.ensure_found(await self.repo.get_activity(activity_id), models.VOTING)
		participants = activity.voting.participants
		if not activity.is_archived:
			participants = ledger.reconcile(activity.voting, await self._roster_for_view())
		return leaderboard.build(activity, participants)

	# -- forms --------------------------------------------------------------

	async def submit_form(
		self,
		auth_user: Optional[AuthenticatedUser],
		activity_id: str,
		request: schemas.FormSubmitRequest,
	) -> schemas.FormSubmissionOut:
		user = policy.require_identity(auth_user)
		try:
			activity = policy.ensure_found(await self.repo.get_activity(activity_id), models.FORM)
			now = self.now()
			policy.ensure_accepting_input(activity, now)
			form = activity.form
			once = form.submission_limit == models.SUBMIT_ONCE
			if once and await self.repo.has_submission(activity_id, user.id):
				raise ConflictError("You have already submitted this form.", code="already_submitted")

			needs_roster = any(isinstance(q, models.UserSelectQuestion) for q in form.questions)
			roster_users = await self.roster.list_users() if needs_roster else []
			answers = forms.validate_answers(form, _answers_map(request.answers), roster_users)

			amount = forms.compute_price(form, answers)
			if amount > 0 and (request.payment is None or not policy.amounts_match(amount, request.payment.amount)):
				raise PaymentRequiredError(f"A payment of {amount:.2f} is required.")

			submission = models.FormSubmission(
				id=uuid.uuid4().hex,
				activity_id=activity_id,
				user_id=user.id,
				user_name=user.display_name,
				is_anonymous=form.force_anonymous or (form.allow_anonymous_choice and bool(request.anonymous)),
				answers=answers,
				created_at=now,
				payment_order_id=request.payment.order_id if amount > 0 and request.payment else None,
				payment_amount=amount if amount > 0 else None,
			)
			if not await self.repo.insert_submission(submission, once=once):
				if once:
					raise ConflictError("You have already submitted this form.", code="already_submitted")
				raise NotFoundError("Form not found.")
		except ActivityError as exc:
			metrics.inc_form_submission(exc.code)
			raise
		metrics.inc_form_submission("ok")
		logger.info("form_submitted", extra={"activity_id": activity_id, "paid": amount > 0})
		await outbox.broadcast([outbox.FORM_SUBMISSIONS], activity_id=activity_id, reason="submission")
		return _submission_out(submission)

	async def get_form_quote(self, activity_id: str, request: schemas.FormQuoteRequest) -> schemas.FormQuote:
		activity = policy.ensure_found(await self.repo.get_activity(activity_id), models.FORM)
		answers = forms.validate_answers(activity.form, _answers_map(request.answers), None, partial=True)
		amount = forms.compute_price(activity.form, answers)
		return schemas.FormQuote(activity_id=activity_id, amount=amount, payment_required=amount > 0)

	async def list_submissions(
		self,
		auth_user: Optional[AuthenticatedUser],
		activity_id: str,
	) -> List[schemas.FormSubmissionOut]:
		policy.require_admin(auth_user)
		policy.ensure_found(await self.repo.get_activity(activity_id), models.FORM)
		submissions = await self.repo.list_submissions(activity_id)
		return [_submission_out(sub, reveal_identity=False) for sub in submissions]
