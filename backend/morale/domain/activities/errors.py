"""Error taxonomy for the activities domain.

Every error carries a machine-readable ``code``, an HTTP ``status_code`` used by
the router, and a human-readable ``detail``.
"""

from __future__ import annotations


class ActivityError(RuntimeError):
	status_code = 400
	default_code = "activity_error"

	def __init__(self, detail: str | None = None, *, code: str | None = None) -> None:
		self.code = code or self.default_code
		self.detail = detail or self.code
		super().__init__(self.detail)


class ValidationError(ActivityError):
	status_code = 422
	default_code = "validation_error"


class MissingAnswerError(ValidationError):
	default_code = "missing_answer"


class PaymentRequiredError(ValidationError):
	status_code = 402
	default_code = "payment_required"


class UnauthorizedError(ActivityError):
	status_code = 401
	default_code = "unauthorized"

	def __init__(self, detail: str | None = None, *, code: str | None = None) -> None:
		super().__init__(detail or "Sign in to continue.", code=code)


class ForbiddenError(ActivityError):
	status_code = 403
	default_code = "forbidden"


class NotFoundError(ActivityError):
	status_code = 404
	default_code = "not_found"

	def __init__(self, detail: str | None = None, *, code: str | None = None) -> None:
		super().__init__(detail or "Activity not found.", code=code)


class ClosedError(ActivityError):
	status_code = 409
	default_code = "closed"


class InsufficientBalanceError(ActivityError):
	status_code = 409
	default_code = "insufficient_balance"


class LimitExceededError(ActivityError):
	status_code = 409
	default_code = "limit_exceeded"


class ConflictError(ActivityError):
	status_code = 409
	default_code = "conflict"
