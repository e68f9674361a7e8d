"""Redis outbox for activity change topics.

Live-query consumers read the stream (or subscribe to the channel) and refresh
whichever views depend on the announced topics.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Mapping, Optional

from morale.infra.redis import redis_client
from morale.obs import metrics

logger = logging.getLogger(__name__)

TOPIC_STREAM = "x:activities.topics"
TOPIC_CHANNEL = "activities:topics"

ANNOUNCEMENTS = "announcements"
POLL_VOTES = "pollVotes"
VOTING = "voting"
FORM_SUBMISSIONS = "formSubmissions"


def _stringify_fields(fields: Mapping[str, Any]) -> dict[str, str]:
	return {key: str(value) for key, value in fields.items() if value is not None}


async def broadcast(
	topics: Iterable[str],
	*,
	activity_id: Optional[str] = None,
	reason: Optional[str] = None,
) -> None:
	"""Announce changed topics. Delivery is best-effort and never raises."""
	unique = list(dict.fromkeys(topics))
	if not unique:
		return
	fields = {"topics": ",".join(unique), "activity_id": activity_id, "reason": reason}
	try:
		await redis_client.xadd_capped(TOPIC_STREAM, _stringify_fields(fields))
		await redis_client.publish(
			TOPIC_CHANNEL,
			json.dumps({"topics": unique, "activity_id": activity_id, "reason": reason}),
		)
	except Exception:
		metrics.inc_side_effect_failure("broadcast")
		logger.warning("activities_broadcast_failed", extra={"topics": unique, "activity_id": activity_id}, exc_info=True)
