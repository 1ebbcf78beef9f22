"""Explicit wiring of every service from one Config."""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from .audit import ActionLog
from .cache import ContextCache
from .config import Config, get_config
from .context_builder import ContextBuilder, ContextProvider
from .database import Database
from .models import now
from .orchestrator import Orchestrator
from .permissions import DelegationEngine
from .queue import TaskQueue
from .scheduler import MaintenanceLoop
from .seed import seed_workers
from .selector import WorkerSelector
from .sessions import SessionManager
from .workers import LanguageModelProvider, WorkerRepository

logger = logging.getLogger(__name__)


class Runtime:
	"""
	Owns the service graph.

	Nothing here is a module-level singleton: tests build a Runtime over a
	temporary database, the server builds one from get_config().
	"""

	def __init__(
		self,
		config: Config,
		provider: Optional[LanguageModelProvider] = None,
		context_provider: Optional[ContextProvider] = None,
		clock: Callable[[], datetime] = now,
	):
		self.config = config
		self.db = Database(config.db_path)
		self.workers = WorkerRepository(self.db, clock)
		self.delegations = DelegationEngine(self.db, self.workers, clock)
		self.actions = ActionLog(self.db, clock)
		self.sessions = SessionManager(self.db, config.session_ttl_hours, clock)
		self.cache = ContextCache(config.cache_ttl_seconds, config.cache_check_period)
		self.context_builder = ContextBuilder(context_provider, self.cache, clock)
		self.selector = WorkerSelector(self.workers, self.delegations, config.operator_roles)
		self.orchestrator = Orchestrator(
			self.workers,
			self.delegations,
			self.selector,
			self.context_builder,
			self.actions,
			self.sessions,
			provider=provider,
			is_production=config.is_production,
		)
		self.queue = TaskQueue(
			self.db,
			self.orchestrator,
			max_attempts=config.queue_max_attempts,
			backoff_seconds=config.queue_backoff_seconds,
			keep_completed=config.queue_keep_completed,
			keep_failed=config.queue_keep_failed,
			poll_interval=config.queue_poll_interval,
			clock=clock,
		)
		self.maintenance = MaintenanceLoop(
			self.delegations, self.sessions, self.queue, config.maintenance_interval
		)
		self._ready = False
		self._lock = asyncio.Lock()

	async def ready(self, seed: bool = True) -> "Runtime":
		"""Create the schema and seed default workers once."""
		if self._ready:
			return self
		async with self._lock:
			if not self._ready:
				await self.db.init()
				if seed:
					await seed_workers(self.workers)
				self._ready = True
		return self

	async def start(self) -> None:
		"""Start the background loops: cache sweep, queue workers, maintenance."""
		await self.ready()
		await self.cache.start()
		await self.queue.start(self.config.queue_concurrency)
		await self.maintenance.start()
		logger.info(f"Runtime started ({self.config.environment})")

	async def stop(self) -> None:
		await self.maintenance.stop()
		await self.queue.stop()
		await self.cache.stop()
		logger.info("Runtime stopped")


_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
	"""Get or create the process-wide runtime."""
	global _runtime
	if _runtime is None:
		_runtime = Runtime(get_config())
	return _runtime
