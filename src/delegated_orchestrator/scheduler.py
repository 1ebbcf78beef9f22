"""Recurring maintenance: expiring delegations and sessions, cleaning the queue."""

import asyncio
import logging
from typing import Optional

from .permissions import DelegationEngine
from .queue import TaskQueue
from .sessions import SessionManager

logger = logging.getLogger(__name__)

# finished jobs younger than this survive a sweep
QUEUE_GRACE_SECONDS = 24 * 3600


class MaintenanceLoop:
	"""Runs `run_once` every `interval` seconds until stopped."""

	def __init__(
		self,
		delegations: DelegationEngine,
		sessions: SessionManager,
		queue: Optional[TaskQueue] = None,
		interval: int = 3600,
	):
		self.delegations = delegations
		self.sessions = sessions
		self.queue = queue
		self.interval = interval
		self._running = False
		self._task: Optional[asyncio.Task] = None

	async def run_once(self) -> dict:
		report = {
			"expired_delegations": await self.delegations.expire_old_delegations(),
			"expired_sessions": await self.sessions.expire_sessions(),
			"cleaned_jobs": 0,
		}
		if self.queue is not None:
			report["cleaned_jobs"] = await self.queue.clean(QUEUE_GRACE_SECONDS)
		logger.info(
			f"Maintenance: {report['expired_delegations']} delegations expired, "
			f"{report['expired_sessions']} sessions expired, {report['cleaned_jobs']} jobs cleaned"
		)
		return report

	async def start(self) -> None:
		if self._task is not None:
			return
		self._running = True
		self._task = asyncio.create_task(self._loop())

	async def stop(self) -> None:
		self._running = False
		if self._task:
			self._task.cancel()
			try:
				await self._task
			except asyncio.CancelledError:
				pass
			self._task = None

	async def _loop(self) -> None:
		while self._running:
			try:
				await self.run_once()
			except asyncio.CancelledError:
				break
			except Exception as e:
				logger.error(f"Maintenance run failed: {e}")

			try:
				await asyncio.sleep(self.interval)
			except asyncio.CancelledError:
				break
