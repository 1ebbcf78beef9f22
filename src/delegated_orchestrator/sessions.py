"""
Session Manager - bounded multi-turn conversations.

Each message append (message row + counter bump) runs in one IMMEDIATE
transaction so a retried append can never leave the counters out of step
with the stored messages.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

import aiosqlite

from .database import Database
from .errors import (
	SessionExpiredError,
	SessionNotFoundError,
	SessionOwnershipError,
	SessionStateError,
	ValidationError,
)
from .models import (
	MessageRole,
	Session,
	SessionContext,
	SessionMessage,
	SessionMetrics,
	SessionStatus,
	from_iso,
	now,
	to_iso,
)

logger = logging.getLogger(__name__)


class SessionManager:
	"""
	SQLite-backed session storage.

	Usage:
		sessions = SessionManager(db, ttl_hours=24)
		session = await sessions.create("user-1", {"product_id": "p1"})
		await sessions.append_message(session.id, MessageRole.USER, "hola")
	"""

	def __init__(self, db: Database, ttl_hours: int = 24, clock: Callable[[], datetime] = now):
		self.db = db
		self.ttl = timedelta(hours=ttl_hours)
		self._clock = clock

	@staticmethod
	def _from_row(row: aiosqlite.Row) -> Session:
		started = from_iso(row["started_at"])
		ended = from_iso(row["ended_at"])
		return Session(
			id=row["id"],
			principal_id=row["principal_id"],
			worker_id=row["worker_id"],
			status=SessionStatus(row["status"]),
			context=SessionContext.model_validate_json(row["context"]),
			metrics=SessionMetrics(
				total_messages=row["total_messages"],
				total_tokens=row["total_tokens"],
				total_cost=row["total_cost"],
				actions_count=row["actions_count"],
				duration_seconds=int((ended - started).total_seconds()) if ended else 0,
			),
			summary=row["summary"],
			error_message=row["error_message"],
			rating=row["rating"],
			feedback_comment=row["feedback_comment"],
			started_at=started,
			ended_at=ended,
			expires_at=from_iso(row["expires_at"]),
		)

	async def create(
		self,
		principal_id: str,
		context: Union[SessionContext, dict, None] = None,
		worker_id: Optional[str] = None,
	) -> Session:
		if not principal_id:
			raise ValidationError("principal_id is required")
		if not isinstance(context, SessionContext):
			raw = context or {}
			context = SessionContext(**{k: raw[k] for k in SessionContext.model_fields if raw.get(k) is not None})

		started = self._clock()
		session = Session(
			id=uuid.uuid4().hex[:16],
			principal_id=principal_id,
			worker_id=worker_id,
			context=context,
			started_at=started,
			expires_at=started + self.ttl,
		)
		async with self.db.connect() as db:
			await db.execute(
				"""
				INSERT INTO sessions (id, principal_id, worker_id, status, context, started_at, expires_at)
				VALUES (?, ?, ?, ?, ?, ?, ?)
				""",
				(
					session.id,
					principal_id,
					worker_id,
					session.status.value,
					context.model_dump_json(),
					to_iso(started),
					to_iso(session.expires_at),
				),
			)
			await db.commit()
		logger.info(f"Session {session.id} started for {principal_id}")
		return session

	async def get(self, session_id: str, with_messages: bool = True) -> Session:
		async with self.db.connect() as db:
			async with db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)) as cursor:
				row = await cursor.fetchone()
			if row is None:
				raise SessionNotFoundError(f"Session not found: {session_id}")
			session = self._from_row(row)

			if with_messages:
				async with db.execute(
					"SELECT * FROM session_messages WHERE session_id = ? ORDER BY id", (session_id,)
				) as cursor:
					session.messages = [self._message(r) for r in await cursor.fetchall()]
			async with db.execute(
				"SELECT action_id FROM session_actions WHERE session_id = ? ORDER BY rowid", (session_id,)
			) as cursor:
				session.action_ids = [r["action_id"] for r in await cursor.fetchall()]
		return session

	@staticmethod
	def _message(row: aiosqlite.Row) -> SessionMessage:
		return SessionMessage(
			role=MessageRole(row["role"]),
			content=row["content"],
			tokens=row["tokens"],
			metadata=json.loads(row["metadata"] or "{}"),
			timestamp=from_iso(row["timestamp"]),
		)

	async def get_owned(self, session_id: str, principal_id: str) -> Session:
		"""
		Load a session the principal may continue.

		Raises:
			SessionNotFoundError, SessionOwnershipError, SessionExpiredError, SessionStateError
		"""
		session = await self.get(session_id, with_messages=False)
		if session.principal_id != principal_id:
			raise SessionOwnershipError("Session does not belong to this principal")
		if session.status == SessionStatus.EXPIRED or session.is_expired(self._clock()):
			raise SessionExpiredError(f"Session {session_id} has expired")
		if session.status != SessionStatus.ACTIVE:
			raise SessionStateError(f"Session {session_id} is {session.status.value}")
		return session

	async def append_message(
		self,
		session_id: str,
		role: MessageRole,
		content: str,
		tokens: int = 0,
		cost: float = 0.0,
		metadata: Optional[dict[str, Any]] = None,
	) -> int:
		"""
		Append a message and bump the counters atomically.

		Returns:
			The session's total message count after the append
		"""
		at = self._clock()
		async with self.db.connect() as db:
			await db.execute("BEGIN IMMEDIATE")
			try:
				async with db.execute("SELECT status FROM sessions WHERE id = ?", (session_id,)) as cursor:
					row = await cursor.fetchone()
				if row is None:
					raise SessionNotFoundError(f"Session not found: {session_id}")
				if row["status"] != SessionStatus.ACTIVE.value:
					raise SessionStateError(f"Session {session_id} is {row['status']}")

				await db.execute(
					"""
					INSERT INTO session_messages (session_id, role, content, tokens, metadata, timestamp)
					VALUES (?, ?, ?, ?, ?, ?)
					""",
					(session_id, role.value, content, tokens, json.dumps(metadata or {}, default=str), to_iso(at)),
				)
				await db.execute(
					"""
					UPDATE sessions SET total_messages = total_messages + 1,
						total_tokens = total_tokens + ?, total_cost = total_cost + ?
					WHERE id = ?
					""",
					(tokens, cost, session_id),
				)
				async with db.execute("SELECT total_messages FROM sessions WHERE id = ?", (session_id,)) as cursor:
					total = (await cursor.fetchone())[0]
				await db.commit()
			except Exception:
				await db.rollback()
				raise
		return total

	async def bind_worker(self, session_id: str, worker_id: str) -> bool:
		"""Bind the session to a worker; only the first binding sticks."""
		async with self.db.connect() as db:
			cursor = await db.execute(
				"UPDATE sessions SET worker_id = ? WHERE id = ? AND worker_id IS NULL",
				(worker_id, session_id),
			)
			await db.commit()
			return cursor.rowcount == 1

	async def add_action(self, session_id: str, action_id: str) -> None:
		async with self.db.connect() as db:
			await db.execute("BEGIN IMMEDIATE")
			try:
				cursor = await db.execute(
					"INSERT OR IGNORE INTO session_actions (session_id, action_id) VALUES (?, ?)",
					(session_id, action_id),
				)
				if cursor.rowcount == 1:
					await db.execute(
						"UPDATE sessions SET actions_count = actions_count + 1 WHERE id = ?",
						(session_id,),
					)
				await db.commit()
			except Exception:
				await db.rollback()
				raise

	async def _finish(self, session_id: str, status: SessionStatus, **fields: Any) -> Session:
		at = self._clock()
		assignments = ", ".join(f"{k} = ?" for k in fields)
		sql = f"UPDATE sessions SET status = ?, ended_at = ?{', ' + assignments if assignments else ''} WHERE id = ? AND status = 'active'"
		async with self.db.connect() as db:
			cursor = await db.execute(sql, (status.value, to_iso(at), *fields.values(), session_id))
			await db.commit()
			updated = cursor.rowcount
		if not updated:
			session = await self.get(session_id, with_messages=False)
			raise SessionStateError(f"Session {session_id} is {session.status.value}")
		return await self.get(session_id, with_messages=False)

	async def complete(self, session_id: str, summary: str = "") -> Session:
		return await self._finish(session_id, SessionStatus.COMPLETED, summary=summary)

	async def fail(self, session_id: str, error_message: str) -> Session:
		return await self._finish(session_id, SessionStatus.ERROR, error_message=error_message)

	async def add_feedback(self, session_id: str, principal_id: str, rating: int, comment: str = "") -> Session:
		if not 1 <= rating <= 5:
			raise ValidationError("rating must be between 1 and 5")
		session = await self.get(session_id, with_messages=False)
		if session.principal_id != principal_id:
			raise SessionOwnershipError("Session does not belong to this principal")
		async with self.db.connect() as db:
			await db.execute(
				"UPDATE sessions SET rating = ?, feedback_comment = ? WHERE id = ?",
				(rating, comment, session_id),
			)
			await db.commit()
		session.rating = rating
		session.feedback_comment = comment
		return session

	async def history(self, session_id: str, limit: Optional[int] = None) -> list[SessionMessage]:
		"""Conversation history, oldest first; `limit` keeps the most recent N."""
		async with self.db.connect() as db:
			async with db.execute("SELECT id FROM sessions WHERE id = ?", (session_id,)) as cursor:
				if await cursor.fetchone() is None:
					raise SessionNotFoundError(f"Session not found: {session_id}")
			if limit:
				query = (
					"SELECT * FROM (SELECT * FROM session_messages WHERE session_id = ? "
					"ORDER BY id DESC LIMIT ?) ORDER BY id"
				)
				params: tuple = (session_id, limit)
			else:
				query = "SELECT * FROM session_messages WHERE session_id = ? ORDER BY id"
				params = (session_id,)
			async with db.execute(query, params) as cursor:
				rows = await cursor.fetchall()
		return [self._message(r) for r in rows]

	async def active_for_principal(self, principal_id: str) -> list[Session]:
		async with self.db.connect() as db:
			async with db.execute(
				"""
				SELECT * FROM sessions
				WHERE principal_id = ? AND status = 'active' AND expires_at > ?
				ORDER BY started_at DESC
				""",
				(principal_id, to_iso(self._clock())),
			) as cursor:
				rows = await cursor.fetchall()
		return [self._from_row(r) for r in rows]

	async def expire_sessions(self, at: Optional[datetime] = None) -> int:
		"""Mark active sessions past their expiry as expired. Idempotent."""
		at = at or self._clock()
		async with self.db.connect() as db:
			cursor = await db.execute(
				"UPDATE sessions SET status = 'expired', ended_at = ? WHERE status = 'active' AND expires_at < ?",
				(to_iso(at), to_iso(at)),
			)
			await db.commit()
			count = cursor.rowcount
		if count:
			logger.info(f"Expired {count} sessions")
		return count
