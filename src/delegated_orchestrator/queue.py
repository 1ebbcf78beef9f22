"""
Task Queue - durable, prioritized deferral of orchestration requests.

Jobs live in the queue_jobs table. A job moves
waiting -> active -> completed, or through delayed back to active when an
attempt fails, and ends failed after its last attempt. Claims and cancels
are conditional statements checked by rowcount, so a job runs once per
attempt and a running job can never be removed.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

import aiosqlite

from .database import Database
from .errors import ForbiddenError, JobNotFoundError, JobStateError, ValidationError
from .models import JobStatus, OrchestrationStatus, Principal, QueueJob, from_iso, now, to_iso

logger = logging.getLogger(__name__)

PRIORITIES = {"high": 2, "normal": 5, "low": 8}

# progress checkpoints
CLAIMED = 10
RUNNING = 30
DONE = 100

PENDING_STATES = (JobStatus.WAITING.value, JobStatus.DELAYED.value)


def resolve_priority(priority: Union[str, int, None]) -> int:
	if priority is None:
		return PRIORITIES["normal"]
	if isinstance(priority, int):
		return priority
	try:
		return PRIORITIES[priority.lower()]
	except KeyError:
		raise ValidationError(f"Unknown priority '{priority}'; use one of {', '.join(PRIORITIES)}") from None


class TaskQueue:
	"""
	SQLite-backed job queue feeding Orchestrator.execute.

	Usage:
		queue = TaskQueue(db, orchestrator)
		ticket = await queue.enqueue(Principal(id="u1"), "analiza el backlog")
		await queue.start(concurrency=2)
	"""

	def __init__(
		self,
		db: Database,
		orchestrator: Any,
		max_attempts: int = 3,
		backoff_seconds: float = 5.0,
		keep_completed: int = 100,
		keep_failed: int = 200,
		poll_interval: float = 1.0,
		clock: Callable[[], datetime] = now,
	):
		self.db = db
		self.orchestrator = orchestrator
		self.max_attempts = max_attempts
		self.backoff_seconds = backoff_seconds
		self.keep_completed = keep_completed
		self.keep_failed = keep_failed
		self.poll_interval = poll_interval
		self._clock = clock
		self._running = False
		self._tasks: list[asyncio.Task] = []

	@staticmethod
	def _from_row(row: aiosqlite.Row) -> QueueJob:
		return QueueJob(
			id=row["id"],
			principal_id=row["principal_id"],
			principal_role=row["principal_role"],
			input=row["input"],
			context=json.loads(row["context"] or "{}"),
			priority=row["priority"],
			status=JobStatus(row["status"]),
			attempts=row["attempts"],
			max_attempts=row["max_attempts"],
			progress=row["progress"],
			result=json.loads(row["result"]) if row["result"] else None,
			failure_reason=row["failure_reason"],
			available_at=from_iso(row["available_at"]),
			created_at=from_iso(row["created_at"]),
			started_at=from_iso(row["started_at"]),
			finished_at=from_iso(row["finished_at"]),
		)

	async def _fetch_row(self, db: aiosqlite.Connection, job_id: str) -> aiosqlite.Row:
		async with db.execute("SELECT * FROM queue_jobs WHERE id = ?", (job_id,)) as cursor:
			row = await cursor.fetchone()
		if row is None:
			raise JobNotFoundError(f"Job not found: {job_id}")
		return row

	async def get(self, job_id: str) -> QueueJob:
		async with self.db.connect() as db:
			return self._from_row(await self._fetch_row(db, job_id))

	# ------------------------------------------------------------------
	# Producer side
	# ------------------------------------------------------------------

	async def enqueue(
		self,
		principal: Principal,
		text: str,
		context: Optional[dict[str, Any]] = None,
		priority: Union[str, int, None] = "normal",
	) -> dict:
		"""
		Queue a request for background execution.

		Returns:
			{job_id, status: "queued", position, priority, enqueued_at}
		"""
		if principal is None or not str(principal.id or "").strip():
			raise ValidationError("A principal id is required")
		if not isinstance(text, str) or not text.strip():
			raise ValidationError("Request text is required")

		created = self._clock()
		job = QueueJob(
			id=f"{principal.id}-{int(created.timestamp() * 1000)}-{uuid.uuid4().hex[:6]}",
			principal_id=principal.id,
			principal_role=principal.role,
			input=text,
			context=context or {},
			priority=resolve_priority(priority),
			max_attempts=self.max_attempts,
			available_at=created,
			created_at=created,
		)
		async with self.db.connect() as db:
			await db.execute(
				"""
				INSERT INTO queue_jobs
					(id, principal_id, principal_role, input, context, priority, status,
					 attempts, max_attempts, progress, available_at, created_at)
				VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, 0, ?, ?)
				""",
				(
					job.id,
					job.principal_id,
					job.principal_role,
					job.input,
					json.dumps(job.context, default=str),
					job.priority,
					job.status.value,
					job.max_attempts,
					to_iso(job.available_at),
					to_iso(job.created_at),
				),
			)
			await db.commit()
			position = await self._position(db, job.id)

		logger.info(f"Queued job {job.id} (priority {job.priority}, position {position})")
		return {
			"job_id": job.id,
			"status": "queued",
			"position": position,
			"priority": job.priority,
			"enqueued_at": to_iso(created),
		}

	async def _position(self, db: aiosqlite.Connection, job_id: str) -> Optional[int]:
		"""1-based place in claim order, or None once the job left the pending states."""
		async with db.execute(
			"SELECT status, priority, created_at, seq FROM queue_jobs WHERE id = ?", (job_id,)
		) as cursor:
			row = await cursor.fetchone()
		if row is None or row["status"] not in PENDING_STATES:
			return None
		async with db.execute(
			"""
			SELECT COUNT(*) FROM queue_jobs
			WHERE status IN (?, ?) AND (
				priority < ?
				OR (priority = ? AND created_at < ?)
				OR (priority = ? AND created_at = ? AND seq < ?)
			)
			""",
			(
				*PENDING_STATES,
				row["priority"],
				row["priority"], row["created_at"],
				row["priority"], row["created_at"], row["seq"],
			),
		) as cursor:
			ahead = (await cursor.fetchone())[0]
		return ahead + 1

	async def status(self, job_id: str) -> dict:
		async with self.db.connect() as db:
			job = self._from_row(await self._fetch_row(db, job_id))
			position = await self._position(db, job_id)

		info: dict[str, Any] = {
			"job_id": job.id,
			"state": job.status.value,
			"attempts": job.attempts,
			"max_attempts": job.max_attempts,
			"progress": job.progress,
			"priority": job.priority,
			"created_at": to_iso(job.created_at),
			"started_at": to_iso(job.started_at),
			"finished_at": to_iso(job.finished_at),
		}
		if position is not None:
			info["position"] = position
		if job.status == JobStatus.DELAYED:
			info["retry_at"] = to_iso(job.available_at)
		if job.result is not None:
			info["result"] = job.result
		if job.failure_reason:
			info["failure_reason"] = job.failure_reason
		return info

	async def cancel(self, job_id: str, principal_id: str) -> dict:
		"""
		Remove a job that has not started.

		Raises:
			JobNotFoundError: no such job
			ForbiddenError: the job belongs to another principal
			JobStateError: the job is running or already finished
		"""
		async with self.db.connect() as db:
			row = await self._fetch_row(db, job_id)
			if row["principal_id"] != principal_id:
				raise ForbiddenError("Only the principal who queued a job can cancel it")

			cursor = await db.execute(
				"DELETE FROM queue_jobs WHERE id = ? AND status IN (?, ?)",
				(job_id, *PENDING_STATES),
			)
			await db.commit()
			if cursor.rowcount == 1:
				logger.info(f"Cancelled job {job_id}")
				return {"job_id": job_id, "cancelled": True}

			async with db.execute("SELECT status FROM queue_jobs WHERE id = ?", (job_id,)) as cursor:
				current = await cursor.fetchone()
		if current is None:
			raise JobNotFoundError(f"Job not found: {job_id}")
		raise JobStateError(f"Job {job_id} is {current['status']} and can no longer be cancelled")

	async def stats(self) -> dict:
		counts = {status.value: 0 for status in JobStatus}
		async with self.db.connect() as db:
			async with db.execute("SELECT status, COUNT(*) AS n FROM queue_jobs GROUP BY status") as cursor:
				for row in await cursor.fetchall():
					counts[row["status"]] = row["n"]
		counts["total"] = sum(counts.values())
		return counts

	# ------------------------------------------------------------------
	# Consumer side
	# ------------------------------------------------------------------

	async def claim(self) -> Optional[QueueJob]:
		"""Take the next runnable job: lowest priority value, then oldest, then insertion order."""
		at = to_iso(self._clock())
		async with self.db.connect() as db:
			await db.execute("BEGIN IMMEDIATE")
			try:
				async with db.execute(
					"""
					SELECT id FROM queue_jobs
					WHERE status IN (?, ?) AND available_at <= ?
					ORDER BY priority, created_at, seq
					LIMIT 1
					""",
					(*PENDING_STATES, at),
				) as cursor:
					row = await cursor.fetchone()
				if row is None:
					await db.rollback()
					return None

				cursor = await db.execute(
					"""
					UPDATE queue_jobs
					SET status = 'active', attempts = attempts + 1, progress = ?, started_at = ?
					WHERE id = ? AND status IN (?, ?)
					""",
					(CLAIMED, at, row["id"], *PENDING_STATES),
				)
				if cursor.rowcount != 1:
					await db.rollback()
					return None
				job = self._from_row(await self._fetch_row(db, row["id"]))
				await db.commit()
			except Exception:
				await db.rollback()
				raise
		return job

	async def _set_progress(self, job_id: str, progress: int) -> None:
		async with self.db.connect() as db:
			await db.execute(
				"UPDATE queue_jobs SET progress = ? WHERE id = ? AND status = 'active'",
				(progress, job_id),
			)
			await db.commit()

	async def process_next(self) -> Optional[QueueJob]:
		"""
		Claim and run one job.

		Returns:
			The job in its post-run state, or None when nothing was runnable
		"""
		job = await self.claim()
		if job is None:
			return None

		logger.info(f"Running job {job.id} (attempt {job.attempts}/{job.max_attempts})")
		await self._set_progress(job.id, RUNNING)
		principal = Principal(id=job.principal_id, role=job.principal_role)

		try:
			result = await self.orchestrator.execute(principal, job.input, job.context)
		except ValidationError as e:
			await self._finish_failed(job, str(e))
		except Exception as e:
			logger.error(f"Job {job.id} raised: {e}")
			await self._retry_or_fail(job, str(e))
		else:
			if result.status == OrchestrationStatus.ERROR:
				await self._retry_or_fail(job, result.error or result.message)
			else:
				await self._complete(job, result.to_dict())

		finished = await self.get(job.id)
		await self._retain()
		return finished

	async def _complete(self, job: QueueJob, result: dict) -> None:
		async with self.db.connect() as db:
			await db.execute(
				"""
				UPDATE queue_jobs SET status = 'completed', progress = ?, result = ?, finished_at = ?
				WHERE id = ?
				""",
				(DONE, json.dumps(result, default=str), to_iso(self._clock()), job.id),
			)
			await db.commit()
		logger.info(f"Job {job.id} completed ({result.get('status')})")

	async def _finish_failed(self, job: QueueJob, reason: str) -> None:
		async with self.db.connect() as db:
			await db.execute(
				"UPDATE queue_jobs SET status = 'failed', failure_reason = ?, finished_at = ? WHERE id = ?",
				(reason, to_iso(self._clock()), job.id),
			)
			await db.commit()
		logger.warning(f"Job {job.id} failed after {job.attempts} attempts: {reason}")

	async def _retry_or_fail(self, job: QueueJob, reason: str) -> None:
		if job.attempts >= job.max_attempts:
			await self._finish_failed(job, reason)
			return

		delay = self.backoff_seconds * 2 ** (job.attempts - 1)
		retry_at = self._clock() + timedelta(seconds=delay)
		async with self.db.connect() as db:
			await db.execute(
				"""
				UPDATE queue_jobs SET status = 'delayed', progress = 0, failure_reason = ?, available_at = ?
				WHERE id = ?
				""",
				(reason, to_iso(retry_at), job.id),
			)
			await db.commit()
		logger.info(f"Job {job.id} attempt {job.attempts} failed; retrying in {delay:.0f}s")

	async def _retain(self) -> int:
		"""Keep only the newest completed and failed jobs."""
		removed = 0
		async with self.db.connect() as db:
			for status, keep in (("completed", self.keep_completed), ("failed", self.keep_failed)):
				cursor = await db.execute(
					"""
					DELETE FROM queue_jobs WHERE status = ? AND seq NOT IN (
						SELECT seq FROM queue_jobs WHERE status = ?
						ORDER BY finished_at DESC, seq DESC LIMIT ?
					)
					""",
					(status, status, keep),
				)
				removed += cursor.rowcount
			await db.commit()
		return removed

	async def clean(self, grace_seconds: float = 0) -> int:
		"""Remove finished jobs older than the grace period, then apply retention."""
		cutoff = to_iso(self._clock() - timedelta(seconds=grace_seconds))
		async with self.db.connect() as db:
			cursor = await db.execute(
				"DELETE FROM queue_jobs WHERE status IN ('completed', 'failed') AND finished_at < ?",
				(cutoff,),
			)
			await db.commit()
			removed = cursor.rowcount
		removed += await self._retain()
		if removed:
			logger.info(f"Cleaned {removed} finished jobs")
		return removed

	async def recover_stalled(self) -> int:
		"""Return jobs left active by a previous process to the waiting state."""
		async with self.db.connect() as db:
			cursor = await db.execute(
				"""
				UPDATE queue_jobs SET status = 'waiting', progress = 0, started_at = NULL, available_at = ?
				WHERE status = 'active'
				""",
				(to_iso(self._clock()),),
			)
			await db.commit()
			count = cursor.rowcount
		if count:
			logger.warning(f"Recovered {count} stalled jobs")
		return count

	# ------------------------------------------------------------------
	# Worker loop
	# ------------------------------------------------------------------

	@property
	def running(self) -> bool:
		return self._running

	async def start(self, concurrency: int = 1) -> None:
		if self._running:
			return
		await self.recover_stalled()
		self._running = True
		self._tasks = [
			asyncio.create_task(self._worker_loop(n), name=f"queue-worker-{n}")
			for n in range(max(1, concurrency))
		]
		logger.info(f"Task queue started with {len(self._tasks)} workers")

	async def stop(self) -> None:
		self._running = False
		for task in self._tasks:
			task.cancel()
		await asyncio.gather(*self._tasks, return_exceptions=True)
		self._tasks = []
		logger.info("Task queue stopped")

	async def _worker_loop(self, n: int) -> None:
		while self._running:
			try:
				job = await self.process_next()
			except asyncio.CancelledError:
				break
			except Exception as e:
				logger.error(f"Queue worker {n} error: {e}")
				job = None

			if job is None:
				try:
					await asyncio.sleep(self.poll_interval)
				except asyncio.CancelledError:
					break
