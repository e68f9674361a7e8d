"""Policy and guard helpers for activities."""

from __future__ import annotations

import math
import time
from typing import Optional

from morale.domain.activities import models
from morale.domain.activities.errors import (
	ClosedError,
	ForbiddenError,
	NotFoundError,
	UnauthorizedError,
	ValidationError,
)
from morale.infra.auth import AuthenticatedUser


MAX_IMAGES = 5
MAX_POLL_QUESTION_LENGTH = 100
CENT_TOLERANCE = 0.01


def now_ms() -> int:
	return int(time.time() * 1000)


def require_identity(identity: Optional[AuthenticatedUser]) -> AuthenticatedUser:
	if identity is None or not identity.id:
		raise UnauthorizedError()
	return identity


def require_admin(identity: Optional[AuthenticatedUser]) -> AuthenticatedUser:
	user = require_identity(identity)
	if not user.is_admin:
		raise ForbiddenError("Only administrators can view this.", code="insufficient_role")
	return user


def ensure_found(activity: Optional[models.Activity], event_type: Optional[str] = None) -> models.Activity:
	if activity is None:
		raise NotFoundError()
	if event_type is not None and activity.event_type != event_type:
		label = {models.POLL: "Poll", models.VOTING: "Voting event", models.FORM: "Form"}.get(event_type, "Activity")
		raise NotFoundError(f"{label} not found.")
	return activity


def ensure_automation_window(
	publish_at: int,
	auto_delete_at: Optional[int],
	auto_archive_at: Optional[int],
) -> None:
	if auto_delete_at is not None and auto_delete_at <= publish_at:
		raise ValidationError("Auto delete time must be after publish time.", code="auto_delete_before_publish")
	if auto_archive_at is not None and auto_archive_at <= publish_at:
		raise ValidationError("Auto archive time must be after publish time.", code="auto_archive_before_publish")
	if auto_delete_at is not None and auto_archive_at is not None:
		raise ValidationError("Choose either auto delete or auto archive, not both.", code="auto_delete_and_archive")


def ensure_accepting_input(activity: models.Activity, now: int) -> None:
	"""Reject interaction with archived activities and ones not yet published."""
	if activity.is_archived:
		raise ClosedError("This activity is archived and read-only.", code="archived")
	if not activity.is_live(now):
		raise ClosedError("This activity has not been published yet.", code="not_published")


def normalize_images(image_ids: list[str]) -> list[str]:
	if len(image_ids) > MAX_IMAGES:
		raise ValidationError(f"You can upload up to {MAX_IMAGES} images.", code="too_many_images")
	return list(dict.fromkeys(image_ids))


def _finite(value: Optional[float]) -> bool:
	return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def normalize_price(value: Optional[float], label: str) -> float:
	if not _finite(value) or value < 0:  # type: ignore[operator]
		raise ValidationError(f"{label} must be a non-negative number.", code="invalid_price")
	return round(float(value) * 100) / 100  # type: ignore[arg-type]


def normalize_optional_price(value: Optional[float], label: str) -> Optional[float]:
	if value is None:
		return None
	return normalize_price(value, label)


def normalize_limit(value: Optional[float], label: str) -> Optional[int]:
	if value is None:
		return None
	if not _finite(value) or value < 0 or float(value) != int(value):
		raise ValidationError(f"{label} must be a non-negative whole number.", code="invalid_limit")
	return int(value)


def coerce_count(value: Optional[float]) -> int:
	"""Floor a client-supplied count to a non-negative integer."""
	if not _finite(value):
		return 0
	return max(0, math.floor(value))  # type: ignore[arg-type]


def amounts_match(expected: float, claimed: Optional[float]) -> bool:
	if not _finite(claimed):
		return False
	return abs(round(expected, 2) - float(claimed)) <= CENT_TOLERANCE + 1e-9  # type: ignore[arg-type]
