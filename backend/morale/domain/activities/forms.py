"""Form question normalisation, answer validation and pricing."""

from __future__ import annotations

import math
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

from morale.domain.activities import models, policy
from morale.domain.activities.errors import MissingAnswerError, ValidationError
from morale.domain.activities.polls import dedupe_options
from morale.domain.activities.roster import RosterUser, select_users

MAX_QUESTIONS = 5
MIN_OPTIONS = 2
MAX_OPTIONS = 10
MAX_TEXT_LENGTH = 250

AnswerValue = Union[str, float, List[str], None]


# -- question schema ---------------------------------------------------------


def _number(value: Any, label: str) -> Optional[float]:
	if value is None or value == "":
		return None
	try:
		parsed = float(value)
	except (TypeError, ValueError):
		raise ValidationError(f"{label} must be a number.", code="invalid_number") from None
	if isinstance(value, bool) or not math.isfinite(parsed):
		raise ValidationError(f"{label} must be a number.", code="invalid_number")
	return parsed


def _option_prices(raw: Any, options: Sequence[str], label: str) -> Dict[str, float]:
	prices: Dict[str, float] = {}
	for key, value in (raw or {}).items():
		match = next((opt for opt in options if opt.lower() == str(key).strip().lower()), None)
		if match is None or value is None:
			continue
		prices[match] = policy.normalize_price(_number(value, label), label)
	return prices


def _choice_options(raw: Any, prompt: str) -> List[str]:
	options = dedupe_options(raw or [])
	if not MIN_OPTIONS <= len(options) <= MAX_OPTIONS:
		raise ValidationError(
			f"'{prompt}' needs between {MIN_OPTIONS} and {MAX_OPTIONS} distinct options.",
			code="invalid_options",
		)
	return options


def _normalize_question(raw: Mapping[str, Any], earlier: Sequence[models.FormQuestion]) -> models.FormQuestion:
	kind = str(raw.get("type") or "").strip().lower()
	if kind not in models.QUESTION_TYPES:
		raise ValidationError(f"Unsupported question type: {kind or 'missing'}.", code="invalid_question_type")
	prompt = str(raw.get("prompt") or "").strip()
	if not prompt:
		raise ValidationError("Every question needs a prompt.", code="prompt_required")
	common = {
		"id": str(raw.get("id") or "").strip() or uuid.uuid4().hex[:12],
		"prompt": prompt,
		"required": bool(raw.get("required", True)),
	}

	if kind == models.MULTIPLE_CHOICE:
		options = _choice_options(raw.get("options"), prompt)
		wanted = policy.coerce_count(_number(raw.get("max_selections"), "Max selections") or MIN_OPTIONS)
		return models.MultipleChoiceQuestion(
			**common,
			options=options,
			max_selections=min(max(wanted, MIN_OPTIONS), len(options)),
			allow_additional_options=bool(raw.get("allow_additional_options")),
			option_prices=_option_prices(raw.get("option_prices"), options, "Option price"),
		)
	if kind == models.DROPDOWN:
		options = _choice_options(raw.get("options"), prompt)
		return models.DropdownQuestion(
			**common,
			options=options,
			option_prices=_option_prices(raw.get("option_prices"), options, "Option price"),
		)
	if kind == models.FREE_TEXT:
		wanted = policy.coerce_count(_number(raw.get("max_length"), "Max length") or MAX_TEXT_LENGTH)
		return models.FreeTextQuestion(**common, max_length=min(max(wanted, 1), MAX_TEXT_LENGTH))
	if kind == models.USER_SELECT:
		filters = raw.get("user_filters") or {}
		return models.UserSelectQuestion(
			**common,
			user_filters=models.UserFilters(
				**{
					key: (str(filters[key]).strip() or None)
					for key in ("search", "role", "team", "group", "portfolio", "rank_category", "rank")
					if filters.get(key) is not None
				}
			),
		)
	return _normalize_number_question(raw, common, earlier)


def _normalize_number_question(
	raw: Mapping[str, Any],
	common: Dict[str, Any],
	earlier: Sequence[models.FormQuestion],
) -> models.NumberQuestion:
	allow_any = bool(raw.get("allow_any_number"))
	min_value = None if allow_any else _number(raw.get("min_value"), "Minimum")
	max_value = None if allow_any else _number(raw.get("max_value"), "Maximum")
	include_min = bool(raw.get("include_min", True))
	include_max = bool(raw.get("include_max", True))
	if min_value is not None and max_value is not None:
		if min_value > max_value:
			raise ValidationError("Minimum must not exceed maximum.", code="invalid_bounds")
		if min_value == max_value and not (include_min and include_max):
			raise ValidationError(
				"When minimum equals maximum both bounds must be inclusive.", code="invalid_bounds"
			)

	source_ids = list(raw.get("price_source_question_ids") or [])
	legacy = raw.get("price_source_question_id")
	if legacy:
		source_ids.append(legacy)
	source_ids = list(dict.fromkeys(str(s).strip() for s in source_ids if str(s).strip()))
	price_per_unit = policy.normalize_optional_price(_number(raw.get("price_per_unit"), "Price per unit"), "Price per unit")
	if source_ids and price_per_unit is not None:
		raise ValidationError(
			"Use either a fixed price per unit or price source questions, not both.",
			code="conflicting_price_sources",
		)
	by_id = {q.id: q for q in earlier}
	for source_id in source_ids:
		source = by_id.get(source_id)
		if not isinstance(source, (models.DropdownQuestion, models.MultipleChoiceQuestion)):
			raise ValidationError(
				"Price sources must be earlier dropdown or multiple choice questions.",
				code="invalid_price_source",
			)
		if not source.option_prices:
			raise ValidationError(
				f"Price source '{source.prompt}' has no option prices.", code="invalid_price_source"
			)
	return models.NumberQuestion(
		**common,
		min_value=min_value,
		max_value=max_value,
		include_min=include_min,
		include_max=include_max,
		allow_any_number=allow_any,
		price_per_unit=price_per_unit,
		price_source_question_ids=source_ids,
	)


def normalize_questions(raw_questions: Sequence[Mapping[str, Any]]) -> List[models.FormQuestion]:
	if not raw_questions:
		raise ValidationError("Add at least one question.", code="questions_required")
	if len(raw_questions) > MAX_QUESTIONS:
		raise ValidationError(f"Forms can have up to {MAX_QUESTIONS} questions.", code="too_many_questions")
	questions: List[models.FormQuestion] = []
	for raw in raw_questions:
		question = _normalize_question(raw, questions)
		if any(q.id == question.id for q in questions):
			raise ValidationError("Question ids must be unique.", code="duplicate_question_id")
		questions.append(question)
	return questions


def normalize_form(
	*,
	questions: Sequence[Mapping[str, Any]],
	submission_limit: Optional[str],
	price: Optional[float],
	allow_anonymous_choice: Optional[bool],
	force_anonymous: Optional[bool],
) -> models.FormPayload:
	base_price = policy.normalize_optional_price(price, "Form price")
	return models.FormPayload(
		questions=normalize_questions(questions),
		submission_limit=submission_limit if submission_limit in (models.SUBMIT_ONCE, models.SUBMIT_UNLIMITED) else models.SUBMIT_UNLIMITED,
		price=base_price if base_price else None,
		allow_anonymous_choice=bool(allow_anonymous_choice),
		force_anonymous=bool(force_anonymous),
	)


# -- answers -----------------------------------------------------------------


def _as_list(value: AnswerValue) -> List[str]:
	if value is None:
		return []
	if isinstance(value, list):
		return [str(v).strip() for v in value if str(v).strip()]
	text = str(value).strip()
	return [text] if text else []


def _is_blank(value: AnswerValue) -> bool:
	if value is None:
		return True
	if isinstance(value, list):
		return not _as_list(value)
	return isinstance(value, str) and not value.strip()


def _format_number(value: float) -> str:
	return str(int(value)) if value.is_integer() else repr(value)


def _validate_choice(question: models.FormQuestion, value: AnswerValue) -> models.FormAnswer:
	if isinstance(question, models.DropdownQuestion):
		picked = _as_list(value)
		if len(picked) != 1:
			raise ValidationError(f"Pick one option for '{question.prompt}'.", code="invalid_answer")
		match = next((opt for opt in question.options if opt.lower() == picked[0].lower()), None)
		if match is None:
			raise ValidationError(f"'{picked[0]}' is not an option for '{question.prompt}'.", code="invalid_answer")
		return models.FormAnswer(question_id=question.id, value=match)

	if not isinstance(question, models.MultipleChoiceQuestion):
		raise ValidationError(f"'{question.prompt}' is not a choice question.", code="invalid_question_type")
	selections: List[str] = []
	for raw in _as_list(value):
		match = next((opt for opt in question.options if opt.lower() == raw.lower()), None)
		if match is None and not question.allow_additional_options:
			raise ValidationError(f"'{raw}' is not an option for '{question.prompt}'.", code="invalid_answer")
		chosen = match or raw
		if chosen.lower() not in (s.lower() for s in selections):
			selections.append(chosen)
	if not 1 <= len(selections) <= question.max_selections:
		raise ValidationError(
			f"Select between 1 and {question.max_selections} options for '{question.prompt}'.",
			code="invalid_answer",
		)
	return models.FormAnswer(question_id=question.id, value=selections)


def _validate_answer(
	question: models.FormQuestion,
	value: AnswerValue,
	roster: Optional[Sequence[RosterUser]],
) -> models.FormAnswer:
	if isinstance(question, (models.DropdownQuestion, models.MultipleChoiceQuestion)):
		return _validate_choice(question, value)

	if isinstance(question, models.FreeTextQuestion):
		text = " ".join(_as_list(value)) if isinstance(value, list) else str(value).strip()
		if len(text) > question.max_length:
			raise ValidationError(
				f"'{question.prompt}' allows at most {question.max_length} characters.", code="answer_too_long"
			)
		return models.FormAnswer(question_id=question.id, value=text)

	if isinstance(question, models.NumberQuestion):
		raw = value[0] if isinstance(value, list) and len(value) == 1 else value
		if isinstance(raw, list):
			raise ValidationError(f"'{question.prompt}' expects a single number.", code="invalid_number")
		number = _number(raw, question.prompt)
		if number is None:
			raise ValidationError(f"'{question.prompt}' expects a single number.", code="invalid_number")
		if not question.accepts(number):
			raise ValidationError(f"{_format_number(number)} is out of range for '{question.prompt}'.", code="out_of_range")
		return models.FormAnswer(question_id=question.id, value=_format_number(number))

	if not isinstance(question, models.UserSelectQuestion):
		raise ValidationError(f"'{question.prompt}' has an unsupported type.", code="invalid_question_type")
	picked = _as_list(value)
	if len(picked) != 1:
		raise ValidationError(f"Pick one person for '{question.prompt}'.", code="invalid_answer")
	if roster is None:
		return models.FormAnswer(question_id=question.id, value=picked[0])
	candidates = {user.user_id: user for user in select_users(roster, question.user_filters)}
	user = candidates.get(picked[0])
	if user is None:
		raise ValidationError(f"That person can't be selected for '{question.prompt}'.", code="invalid_user")
	return models.FormAnswer(question_id=question.id, value=user.user_id, display_value=user.full_name)


def validate_answers(
	form: models.FormPayload,
	answers: Mapping[str, AnswerValue],
	roster: Optional[Sequence[RosterUser]],
	*,
	partial: bool = False,
) -> List[models.FormAnswer]:
	"""Validate answers against the stored questions.

	``roster`` is the current roster for user_select questions; when None the
	selected id is accepted unchecked (quotes only). ``partial`` skips the
	required-answer check.
	"""
	unknown = [qid for qid in answers if form.question(qid) is None]
	if unknown:
		raise ValidationError("Answer references an unknown question.", code="unknown_question")
	result: List[models.FormAnswer] = []
	for question in form.questions:
		value = answers.get(question.id)
		if _is_blank(value):
			if question.required and not partial:
				raise MissingAnswerError(f"'{question.prompt}' is required.")
			empty: Union[str, List[str]] = [] if isinstance(question, models.MultipleChoiceQuestion) else ""
			result.append(models.FormAnswer(question_id=question.id, value=empty))
			continue
		result.append(_validate_answer(question, value, roster))
	return result


# -- pricing -----------------------------------------------------------------


def _selected_options(answer: Optional[models.FormAnswer]) -> List[str]:
	if answer is None:
		return []
	return list(answer.value) if isinstance(answer.value, list) else ([answer.value] if answer.value else [])


def compute_price(form: models.FormPayload, answers: Iterable[models.FormAnswer]) -> float:
	"""Base price plus option prices plus number answers times their unit price."""
	by_question = {answer.question_id: answer for answer in answers}
	source_only: Set[str] = set()
	for question in form.questions:
		if isinstance(question, models.NumberQuestion):
			source_only.update(question.price_source_question_ids)

	total = form.price or 0.0
	for question in form.questions:
		answer = by_question.get(question.id)
		if isinstance(question, (models.DropdownQuestion, models.MultipleChoiceQuestion)):
			if question.id in source_only:
				continue
			total += sum(question.option_prices.get(opt, 0.0) for opt in _selected_options(answer))
		elif isinstance(question, models.NumberQuestion):
			if answer is None or answer.value in ("", []):
				continue
			quantity = float(answer.value)  # type: ignore[arg-type]
			if question.price_per_unit is not None:
				unit = question.price_per_unit
			else:
				unit = 0.0
				for source_id in question.price_source_question_ids:
					source = form.question(source_id)
					if isinstance(source, (models.DropdownQuestion, models.MultipleChoiceQuestion)):
						unit += sum(source.option_prices.get(opt, 0.0) for opt in _selected_options(by_question.get(source_id)))
			total += quantity * unit
	return round(max(total, 0.0), 2)
