"""Outbound collaborators: chat notifications and stored image release.

Both are best-effort. Callers log and swallow their failures.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Optional, Protocol

import httpx

from morale.settings import settings

logger = logging.getLogger(__name__)

_EVENT_LABELS = {
	"announcement": "Announcement",
	"poll": "Poll",
	"voting": "Voting",
	"form": "Form",
}


class NotificationSink(Protocol):
	async def notify_published(self, *, title: str, event_type: str, activity_id: str) -> None:
		...


class ObjectStorage(Protocol):
	async def release_objects(self, ids: Iterable[str]) -> None:
		...


class NullNotificationSink:
	async def notify_published(self, *, title: str, event_type: str, activity_id: str) -> None:
		logger.debug("notification_skipped", extra={"activity_id": activity_id})


class MattermostWebhookSink:
	"""Post a short message to a Mattermost incoming webhook."""

	def __init__(
		self,
		webhook_url: str,
		*,
		base_url: str = "",
		timeout: float = 5.0,
		client: Optional[httpx.AsyncClient] = None,
	) -> None:
		self.webhook_url = webhook_url
		self.base_url = base_url.rstrip("/")
		self.timeout = timeout
		self._client = client

	def render(self, *, title: str, event_type: str, activity_id: str) -> str:
		label = _EVENT_LABELS.get(event_type, "Activity")
		text = f"**New {label}:** {title}"
		if self.base_url:
			text += f"\n{self.base_url}/activities/{activity_id}"
		return text

	async def notify_published(self, *, title: str, event_type: str, activity_id: str) -> None:
		body = {"text": self.render(title=title, event_type=event_type, activity_id=activity_id)}
		if self._client is not None:
			response = await self._client.post(self.webhook_url, json=body, timeout=self.timeout)
			response.raise_for_status()
			return
		async with httpx.AsyncClient(timeout=self.timeout) as client:
			response = await client.post(self.webhook_url, json=body)
			response.raise_for_status()


class LocalUploadStorage:
	"""Images stored as files named by id under the uploads directory."""

	def __init__(self, root: str | Path) -> None:
		self.root = Path(root)

	def _path(self, object_id: str) -> Path:
		# ids are opaque; refuse anything that would escape the uploads root
		candidate = (self.root / object_id).resolve()
		if self.root.resolve() not in candidate.parents:
			raise ValueError(f"invalid object id: {object_id!r}")
		return candidate

	async def release_objects(self, ids: Iterable[str]) -> None:
		paths = [self._path(object_id) for object_id in ids]
		await asyncio.to_thread(self._unlink_all, paths)

	@staticmethod
	def _unlink_all(paths: list[Path]) -> None:
		for path in paths:
			path.unlink(missing_ok=True)


def default_notification_sink() -> NotificationSink:
	if settings.mattermost_webhook_url:
		return MattermostWebhookSink(settings.mattermost_webhook_url, base_url=settings.public_base_url)
	return NullNotificationSink()


def default_object_storage() -> ObjectStorage:
	return LocalUploadStorage(settings.uploads_dir)
