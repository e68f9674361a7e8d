"""FastAPI routes for scheduled activities."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status

from morale.domain.activities import schemas
from morale.domain.activities.errors import ActivityError
from morale.domain.activities.service import ActivitiesService
from morale.infra.auth import AuthenticatedUser, get_admin_user, get_optional_user

router = APIRouter(prefix="/activities", tags=["activities"])

_service = ActivitiesService()


def _as_http_error(exc: ActivityError) -> HTTPException:
	return HTTPException(status_code=exc.status_code, detail={"code": exc.code, "message": exc.detail})


@router.post("", response_model=schemas.ActivityWriteResult, status_code=status.HTTP_201_CREATED)
async def create_activity_endpoint(
	payload: schemas.ActivityDraft,
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> schemas.ActivityWriteResult:
	try:
		return await _service.create_activity(auth_user, payload)
	except ActivityError as exc:
		raise _as_http_error(exc) from exc


@router.get("/published", response_model=List[schemas.ActivityOut])
async def list_published_endpoint() -> List[schemas.ActivityOut]:
	return await _service.list_published()


@router.get("/scheduled", response_model=List[schemas.ActivityOut])
async def list_scheduled_endpoint() -> List[schemas.ActivityOut]:
	return await _service.list_scheduled()


@router.get("/archived", response_model=List[schemas.ActivityOut])
async def list_archived_endpoint() -> List[schemas.ActivityOut]:
	return await _service.list_archived()


@router.get("/next-publish", response_model=schemas.NextPublishOut)
async def next_publish_endpoint() -> schemas.NextPublishOut:
	return schemas.NextPublishOut(next_publish_at=await _service.next_publish_at())


@router.post("/sweep", response_model=schemas.SweepResultOut)
async def sweep_endpoint(_: AuthenticatedUser = Depends(get_admin_user)) -> schemas.SweepResultOut:
	result = await _service.sweep()
	return schemas.SweepResultOut(published=result.published, deleted=result.deleted, archived=result.archived)


@router.get("/{activity_id}", response_model=schemas.ActivityOut)
async def get_activity_endpoint(activity_id: str) -> schemas.ActivityOut:
	try:
		return await _service.get_activity(activity_id)
	except ActivityError as exc:
		raise _as_http_error(exc) from exc


@router.put("/{activity_id}", response_model=schemas.ActivityWriteResult)
async def update_activity_endpoint(
	activity_id: str,
	payload: schemas.ActivityDraft,
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> schemas.ActivityWriteResult:
	try:
		return await _service.update_activity(auth_user, activity_id, payload)
	except ActivityError as exc:
		raise _as_http_error(exc) from exc


@router.delete("/{activity_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_activity_endpoint(
	activity_id: str,
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> Response:
	try:
		await _service.remove_activity(auth_user, activity_id)
	except ActivityError as exc:
		raise _as_http_error(exc) from exc
	return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{activity_id}/archive", response_model=schemas.ActivityWriteResult)
async def archive_activity_endpoint(
	activity_id: str,
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> schemas.ActivityWriteResult:
	try:
		return await _service.archive_activity(auth_user, activity_id)
	except ActivityError as exc:
		raise _as_http_error(exc) from exc


@router.get("/{activity_id}/poll", response_model=schemas.PollDetails)
async def get_poll_endpoint(
	activity_id: str,
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> schemas.PollDetails:
	try:
		return await _service.get_poll(auth_user, activity_id)
	except ActivityError as exc:
		raise _as_http_error(exc) from exc


@router.post("/{activity_id}/poll/vote", response_model=schemas.PollDetails)
async def vote_poll_endpoint(
	activity_id: str,
	payload: schemas.PollVoteRequest,
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> schemas.PollDetails:
	try:
		return await _service.vote_poll(auth_user, activity_id, payload)
	except ActivityError as exc:
		raise _as_http_error(exc) from exc


@router.get("/{activity_id}/poll/breakdown", response_model=schemas.PollBreakdown)
async def poll_breakdown_endpoint(
	activity_id: str,
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> schemas.PollBreakdown:
	try:
		return await _service.get_poll_breakdown(auth_user, activity_id)
	except ActivityError as exc:
		raise _as_http_error(exc) from exc


@router.post("/{activity_id}/voting/purchase", response_model=schemas.PurchaseVotesResult)
async def purchase_votes_endpoint(
	activity_id: str,
	payload: schemas.PurchaseVotesRequest,
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> schemas.PurchaseVotesResult:
	try:
		return await _service.purchase_votes(auth_user, activity_id, payload)
	except ActivityError as exc:
		raise _as_http_error(exc) from exc


@router.get("/{activity_id}/voting/leaderboard", response_model=schemas.Leaderboard)
async def leaderboard_endpoint(activity_id: str) -> schemas.Leaderboard:
	try:
		return await _service.get_leaderboard(activity_id)
	except ActivityError as exc:
		raise _as_http_error(exc) from exc


@router.post(
	"/{activity_id}/form/submissions",
	response_model=schemas.FormSubmissionOut,
	status_code=status.HTTP_201_CREATED,
)
async def submit_form_endpoint(
	activity_id: str,
	payload: schemas.FormSubmitRequest,
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> schemas.FormSubmissionOut:
	try:
		return await _service.submit_form(auth_user, activity_id, payload)
	except ActivityError as exc:
		raise _as_http_error(exc) from exc


@router.get("/{activity_id}/form/submissions", response_model=List[schemas.FormSubmissionOut])
async def list_submissions_endpoint(
	activity_id: str,
	auth_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> List[schemas.FormSubmissionOut]:
	try:
		return await _service.list_submissions(auth_user, activity_id)
	except ActivityError as exc:
		raise _as_http_error(exc) from exc


@router.post("/{activity_id}/form/quote", response_model=schemas.FormQuote)
async def form_quote_endpoint(activity_id: str, payload: schemas.FormQuoteRequest) -> schemas.FormQuote:
	try:
		return await _service.get_form_quote(activity_id, payload)
	except ActivityError as exc:
		raise _as_http_error(exc) from exc
