"""
Audit Log - one Action record per orchestration attempt.

An Action is written `pending` when execution starts and finalized exactly
once. After that only the approval, feedback and rollback fields change.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Optional

import aiosqlite

from .database import Database
from .errors import ActionNotFoundError, ActionStateError, ForbiddenError, ValidationError
from .models import (
	Action,
	ActionMetrics,
	ActionResultStatus,
	ActionStatus,
	TokenUsage,
	now,
	to_iso,
)

logger = logging.getLogger(__name__)

# USD per 1K tokens
PROMPT_PRICE = 0.01
COMPLETION_PRICE = 0.03


def calculate_cost(usage: Optional[TokenUsage]) -> float:
	if usage is None:
		return 0.0
	return (usage.prompt_tokens / 1000) * PROMPT_PRICE + (usage.completion_tokens / 1000) * COMPLETION_PRICE


class ActionLog:
	"""
	SQLite-backed Action storage.

	Usage:
		log = ActionLog(db)
		action = await log.create(Action(...))
		await log.finalize(action.id, ActionStatus.COMPLETED, ActionResultStatus.SUCCESS, ...)
	"""

	def __init__(self, db: Database, clock: Callable[[], datetime] = now):
		self.db = db
		self._clock = clock

	@staticmethod
	async def _fetch(db: aiosqlite.Connection, action_id: str) -> Action:
		async with db.execute("SELECT data FROM actions WHERE id = ?", (action_id,)) as cursor:
			row = await cursor.fetchone()
		if row is None:
			raise ActionNotFoundError(f"Action not found: {action_id}")
		return Action.model_validate_json(row["data"])

	@staticmethod
	async def _write(db: aiosqlite.Connection, action: Action) -> None:
		await db.execute(
			"UPDATE actions SET status = ?, total_tokens = ?, cost = ?, session_id = ?, data = ? WHERE id = ?",
			(
				action.status.value,
				action.metrics.tokens.total_tokens,
				action.metrics.cost,
				action.session_id,
				action.model_dump_json(),
				action.id,
			),
		)

	async def create(self, action: Action) -> Action:
		"""Persist a new pending Action."""
		action.id = action.id or uuid.uuid4().hex[:16]
		action.status = ActionStatus.PENDING
		action.created_at = self._clock()
		async with self.db.connect() as db:
			await db.execute(
				"""
				INSERT INTO actions
					(id, principal_id, worker_id, delegation_id, session_id, status, total_tokens, cost, created_at, data)
				VALUES (?, ?, ?, ?, ?, ?, 0, 0, ?, ?)
				""",
				(
					action.id,
					action.principal_id,
					action.worker_id,
					action.delegation_id,
					action.session_id,
					action.status.value,
					to_iso(action.created_at),
					action.model_dump_json(),
				),
			)
			await db.commit()
		logger.debug(f"Action {action.id} created ({action.action_type})")
		return action

	async def finalize(
		self,
		action_id: str,
		status: ActionStatus,
		result_status: ActionResultStatus,
		raw_output: Optional[str] = None,
		parsed_output: Optional[dict[str, Any]] = None,
		usage: Optional[TokenUsage] = None,
		execution_time_ms: int = 0,
		error_message: Optional[str] = None,
	) -> Action:
		"""
		Finalize a pending Action.

		Raises:
			ActionStateError: the Action was already finalized
		"""
		if status == ActionStatus.PENDING:
			raise ValidationError("An Action cannot be finalized as pending")

		usage = usage or TokenUsage()
		async with self.db.connect() as db:
			await db.execute("BEGIN IMMEDIATE")
			try:
				action = await self._fetch(db, action_id)
				if action.is_finalized:
					raise ActionStateError(f"Action {action_id} is already {action.status.value}")
				action.status = status
				action.result_status = result_status
				action.raw_output = raw_output
				action.parsed_output = parsed_output
				action.error_message = error_message
				action.metrics = ActionMetrics(
					tokens=usage,
					cost=calculate_cost(usage),
					execution_time_ms=execution_time_ms,
				)
				action.completed_at = self._clock()
				await self._write(db, action)
				await db.commit()
			except Exception:
				await db.rollback()
				raise
		return action

	async def get(self, action_id: str) -> Action:
		async with self.db.connect() as db:
			return await self._fetch(db, action_id)

	async def list_for_principal(self, principal_id: str, limit: int = 50) -> list[Action]:
		return await self._list("principal_id", principal_id, limit)

	async def list_for_worker(self, worker_id: str, limit: int = 50) -> list[Action]:
		return await self._list("worker_id", worker_id, limit)

	async def _list(self, column: str, value: str, limit: int) -> list[Action]:
		async with self.db.connect() as db:
			async with db.execute(
				f"SELECT data FROM actions WHERE {column} = ? ORDER BY created_at DESC LIMIT ?",
				(value, limit),
			) as cursor:
				rows = await cursor.fetchall()
		return [Action.model_validate_json(row["data"]) for row in rows]

	async def _mutate(self, action_id: str, apply: Callable[[Action], None]) -> Action:
		async with self.db.connect() as db:
			await db.execute("BEGIN IMMEDIATE")
			try:
				action = await self._fetch(db, action_id)
				apply(action)
				await self._write(db, action)
				await db.commit()
			except Exception:
				await db.rollback()
				raise
		return action

	async def approve(self, action_id: str, approved_by: str) -> Action:
		at = self._clock()

		def apply(action: Action) -> None:
			if action.approval.approved is not None:
				raise ActionStateError(f"Action {action_id} was already reviewed")
			action.approval.approved = True
			action.approval.approved_by = approved_by
			action.approval.approved_at = at

		return await self._mutate(action_id, apply)

	async def reject(self, action_id: str, rejected_by: str, reason: str) -> Action:
		at = self._clock()

		def apply(action: Action) -> None:
			if action.approval.approved is not None:
				raise ActionStateError(f"Action {action_id} was already reviewed")
			action.approval.approved = False
			action.approval.approved_by = rejected_by
			action.approval.approved_at = at
			action.approval.rejection_reason = reason

		return await self._mutate(action_id, apply)

	async def add_feedback(
		self,
		action_id: str,
		principal_id: str,
		was_helpful: bool,
		rating: Optional[int] = None,
		comment: str = "",
	) -> Action:
		if rating is not None and not 1 <= rating <= 5:
			raise ValidationError("rating must be between 1 and 5")
		at = self._clock()

		def apply(action: Action) -> None:
			if action.principal_id != principal_id:
				raise ForbiddenError("Only the requesting principal can rate an action")
			action.feedback.was_helpful = was_helpful
			action.feedback.accuracy_rating = rating
			action.feedback.comment = comment
			action.feedback.submitted_at = at

		return await self._mutate(action_id, apply)

	async def rollback(self, action_id: str, rolled_back_by: str, reason: str) -> Action:
		"""Mark an Action as rolled back. Undoing domain effects is up to the caller."""
		at = self._clock()

		def apply(action: Action) -> None:
			if not action.rollback.can_rollback:
				raise ActionStateError(f"Action {action_id} cannot be rolled back")
			if action.rollback.rolled_back:
				raise ActionStateError(f"Action {action_id} was already rolled back")
			action.rollback.rolled_back = True
			action.rollback.rolled_back_by = rolled_back_by
			action.rollback.rolled_back_at = at
			action.rollback.reason = reason

		return await self._mutate(action_id, apply)

	async def pending_approvals(self) -> list[Action]:
		async with self.db.connect() as db:
			async with db.execute(
				"SELECT data FROM actions WHERE status != 'pending' ORDER BY created_at DESC"
			) as cursor:
				rows = await cursor.fetchall()
		actions = [Action.model_validate_json(row["data"]) for row in rows]
		return [a for a in actions if a.approval.requires_approval and a.approval.approved is None]

	async def success_rate(self, worker_id: str, since: Optional[datetime] = None) -> float:
		"""Percentage of finalized Actions for the worker that completed."""
		query = "SELECT status, COUNT(*) AS n FROM actions WHERE worker_id = ? AND status != 'pending'"
		params: list = [worker_id]
		if since is not None:
			query += " AND created_at >= ?"
			params.append(to_iso(since))
		query += " GROUP BY status"
		async with self.db.connect() as db:
			async with db.execute(query, params) as cursor:
				counts = {row["status"]: row["n"] for row in await cursor.fetchall()}
		total = sum(counts.values())
		if not total:
			return 0.0
		return counts.get(ActionStatus.COMPLETED.value, 0) / total * 100

	async def totals(
		self,
		worker_id: Optional[str] = None,
		start: Optional[datetime] = None,
		end: Optional[datetime] = None,
	) -> dict:
		query = "SELECT COUNT(*), COALESCE(SUM(cost), 0), COALESCE(SUM(total_tokens), 0) FROM actions WHERE 1 = 1"
		params: list = []
		if worker_id:
			query += " AND worker_id = ?"
			params.append(worker_id)
		if start:
			query += " AND created_at >= ?"
			params.append(to_iso(start))
		if end:
			query += " AND created_at <= ?"
			params.append(to_iso(end))
		async with self.db.connect() as db:
			async with db.execute(query, params) as cursor:
				count, cost, tokens = await cursor.fetchone()
		return {"action_count": count, "total_cost": cost, "total_tokens": tokens}
