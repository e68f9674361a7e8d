"""Clock driver for the activity due-date sweep."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Optional

from morale.domain.activities.service import ActivitiesService
from morale.infra.redis import redis_client
from morale.obs import metrics
from morale.settings import settings

_LOG = logging.getLogger(__name__)

LEASE_KEY = "lock:activities:sweep"


class SweepWorker:
	"""Runs the sweep at a fixed interval, waking early for the next due publish."""

	def __init__(
		self,
		*,
		service: Optional[ActivitiesService] = None,
		interval_seconds: Optional[float] = None,
		lease_seconds: Optional[int] = None,
	) -> None:
		self.service = service or ActivitiesService()
		self.interval_seconds = interval_seconds if interval_seconds is not None else settings.sweep_interval_seconds
		self.lease_seconds = lease_seconds if lease_seconds is not None else settings.sweep_lease_seconds
		self._holder = uuid.uuid4().hex
		self._running = False
		self._wake = asyncio.Event()

	async def _acquire_lease(self) -> bool:
		try:
			return bool(await redis_client.set(LEASE_KEY, self._holder, ex=self.lease_seconds, nx=True))
		except Exception:
			# Redis down: the sweep is idempotent, so run without the lease
			_LOG.warning("sweep_lease_unavailable", exc_info=True)
			return True

	async def _release_lease(self) -> None:
		try:
			if await redis_client.get(LEASE_KEY) == self._holder:
				await redis_client.delete(LEASE_KEY)
		except Exception:
			_LOG.warning("sweep_lease_release_failed", exc_info=True)

	async def process_once(self) -> Optional[int]:
		"""Run one sweep if the lease is free. Returns the number of rows changed."""
		if not await self._acquire_lease():
			metrics.inc_sweep_run("skipped")
			return None
		try:
			result = await self.service.sweep()
		except Exception:
			metrics.inc_sweep_run("error")
			_LOG.exception("sweep_failed")
			return None
		finally:
			await self._release_lease()
		metrics.inc_sweep_run("ok")
		return result.total

	async def _next_delay(self) -> float:
		delay = float(self.interval_seconds)
		try:
			next_at = await self.service.next_publish_at()
		except Exception:
			_LOG.warning("sweep_next_publish_lookup_failed", exc_info=True)
			return delay
		if next_at is not None:
			delay = min(delay, max((next_at - self.service.now()) / 1000.0, 0.0))
		return delay

	async def run_forever(self) -> None:
		self._running = True
		while self._running:
			await self.process_once()
			delay = await self._next_delay()
			try:
				await asyncio.wait_for(self._wake.wait(), timeout=delay)
			except asyncio.TimeoutError:
				pass
			self._wake.clear()

	def stop(self) -> None:
		self._running = False
		self._wake.set()


__all__ = ["SweepWorker"]
