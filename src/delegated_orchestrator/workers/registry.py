"""
Worker Repository - durable Worker records and per-worker quotas.

Workers are stored as JSON documents with the columns needed for lookup
(name, category, status, universal flag) promoted to real columns.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

import aiosqlite

from ..database import Database
from ..errors import ValidationError, WorkerNotFoundError
from ..models import Worker, WorkerCategory, WorkerStatus, now, to_iso

logger = logging.getLogger(__name__)


def start_of_day(at: datetime) -> datetime:
	return at.replace(hour=0, minute=0, second=0, microsecond=0)


class WorkerRepository:
	"""
	SQLite-backed worker storage.

	Usage:
		repo = WorkerRepository(db)
		worker = await repo.create(Worker(name="po", display_name="PO", category=...))
		candidates = await repo.list_candidates(WorkerCategory.PRODUCT_OWNER)
	"""

	def __init__(self, db: Database, clock: Callable[[], datetime] = now):
		self.db = db
		self._clock = clock

	async def create(self, worker: Worker) -> Worker:
		worker.id = worker.id or uuid.uuid4().hex[:12]
		worker.created_at = worker.updated_at = self._clock()
		async with self.db.connect() as db:
			try:
				await db.execute(
					"""
					INSERT INTO workers (id, name, category, status, is_universal, data, created_at, updated_at)
					VALUES (?, ?, ?, ?, ?, ?, ?, ?)
					""",
					(
						worker.id,
						worker.name,
						worker.category.value,
						worker.status.value,
						int(worker.is_universal),
						worker.model_dump_json(),
						to_iso(worker.created_at),
						to_iso(worker.updated_at),
					),
				)
				await db.commit()
			except aiosqlite.IntegrityError as e:
				raise ValidationError(f"Worker name already registered: {worker.name}") from e
		logger.info(f"Registered worker {worker.name} ({worker.category.value})")
		return worker

	async def save(self, worker: Worker) -> Worker:
		worker.updated_at = self._clock()
		async with self.db.connect() as db:
			cursor = await db.execute(
				"""
				UPDATE workers SET name = ?, category = ?, status = ?, is_universal = ?,
					data = ?, updated_at = ?
				WHERE id = ?
				""",
				(
					worker.name,
					worker.category.value,
					worker.status.value,
					int(worker.is_universal),
					worker.model_dump_json(),
					to_iso(worker.updated_at),
					worker.id,
				),
			)
			await db.commit()
			if cursor.rowcount == 0:
				raise WorkerNotFoundError(f"Worker not found: {worker.id}")
		return worker

	async def get(self, worker_id: str) -> Optional[Worker]:
		async with self.db.connect() as db:
			async with db.execute("SELECT data FROM workers WHERE id = ?", (worker_id,)) as cursor:
				row = await cursor.fetchone()
		return Worker.model_validate_json(row["data"]) if row else None

	async def get_by_name(self, name: str) -> Optional[Worker]:
		async with self.db.connect() as db:
			async with db.execute("SELECT data FROM workers WHERE name = ?", (name,)) as cursor:
				row = await cursor.fetchone()
		return Worker.model_validate_json(row["data"]) if row else None

	async def require(self, worker_id: str) -> Worker:
		worker = await self.get(worker_id)
		if worker is None:
			raise WorkerNotFoundError(f"Worker not found: {worker_id}")
		return worker

	async def list_workers(
		self,
		category: Optional[WorkerCategory] = None,
		status: Optional[WorkerStatus] = None,
	) -> list[Worker]:
		query = "SELECT data FROM workers WHERE 1 = 1"
		params: list = []
		if category is not None:
			query += " AND category = ?"
			params.append(category.value)
		if status is not None:
			query += " AND status = ?"
			params.append(status.value)
		query += " ORDER BY created_at, id"
		async with self.db.connect() as db:
			async with db.execute(query, params) as cursor:
				rows = await cursor.fetchall()
		return [Worker.model_validate_json(row["data"]) for row in rows]

	async def list_candidates(self, category: WorkerCategory) -> list[Worker]:
		"""Active workers of `category` plus universal workers, universal first."""
		async with self.db.connect() as db:
			async with db.execute(
				"""
				SELECT data FROM workers
				WHERE status = 'active' AND (category = ? OR is_universal = 1)
				ORDER BY is_universal DESC, created_at, id
				""",
				(category.value,),
			) as cursor:
				rows = await cursor.fetchall()
		return [Worker.model_validate_json(row["data"]) for row in rows]

	async def first_universal(self) -> Optional[Worker]:
		async with self.db.connect() as db:
			async with db.execute(
				"""
				SELECT data FROM workers
				WHERE status = 'active' AND is_universal = 1
				ORDER BY created_at, id LIMIT 1
				""",
			) as cursor:
				row = await cursor.fetchone()
		return Worker.model_validate_json(row["data"]) if row else None

	async def set_status(self, worker_id: str, status: WorkerStatus) -> Worker:
		worker = await self.require(worker_id)
		worker.status = status
		return await self.save(worker)

	async def record_outcome(
		self,
		worker_id: str,
		success: bool,
		tokens: int = 0,
		cost: float = 0.0,
		response_time_ms: int = 0,
	) -> None:
		"""Bump interaction counters and the running latency average."""
		async with self.db.connect() as db:
			await db.execute("BEGIN IMMEDIATE")
			async with db.execute("SELECT data FROM workers WHERE id = ?", (worker_id,)) as cursor:
				row = await cursor.fetchone()
			if row is None:
				await db.rollback()
				raise WorkerNotFoundError(f"Worker not found: {worker_id}")

			worker = Worker.model_validate_json(row["data"])
			metrics = worker.metrics
			metrics.total_interactions += 1
			metrics.last_used_at = self._clock()
			if success:
				metrics.successful_actions += 1
				metrics.total_tokens_used += tokens
				metrics.total_cost += cost
				done = metrics.successful_actions + metrics.failed_actions
				metrics.average_response_time_ms = (
					metrics.average_response_time_ms * (done - 1) + response_time_ms
				) / done
			else:
				metrics.failed_actions += 1

			await db.execute(
				"UPDATE workers SET data = ?, updated_at = ? WHERE id = ?",
				(worker.model_dump_json(), to_iso(self._clock()), worker_id),
			)
			await db.commit()

	async def check_quota(self, worker: Worker, at: Optional[datetime] = None) -> Optional[str]:
		"""
		Evaluate the worker's own quotas against the action log.

		Returns:
			A denial reason code, or None when the worker is under quota
		"""
		at = at or self._clock()
		hour_ago = to_iso(at - timedelta(hours=1))
		midnight = to_iso(start_of_day(at))
		quotas = worker.quotas

		async with self.db.connect() as db:
			async with db.execute(
				"SELECT COUNT(*) FROM actions WHERE worker_id = ? AND created_at >= ?",
				(worker.id, hour_ago),
			) as cursor:
				hourly = (await cursor.fetchone())[0]
			if hourly >= quotas.max_requests_per_hour:
				return "worker_hourly_limit_reached"

			async with db.execute(
				"""
				SELECT COALESCE(SUM(total_tokens), 0), COALESCE(SUM(cost), 0)
				FROM actions WHERE worker_id = ? AND created_at >= ?
				""",
				(worker.id, midnight),
			) as cursor:
				tokens, cost = await cursor.fetchone()

		if tokens >= quotas.max_tokens_per_day:
			return "worker_daily_token_limit_reached"
		if cost >= quotas.max_cost_per_day:
			return "worker_daily_cost_limit_reached"
		return None
