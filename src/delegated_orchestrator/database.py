"""SQLite database for workers, delegations, actions, sessions and queue jobs."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from .errors import InfrastructureError

logger = logging.getLogger(__name__)

SCHEMA = """
	CREATE TABLE IF NOT EXISTS workers (
		id TEXT PRIMARY KEY,
		name TEXT UNIQUE NOT NULL,
		category TEXT NOT NULL,
		status TEXT NOT NULL DEFAULT 'active',
		is_universal INTEGER NOT NULL DEFAULT 0,
		data TEXT NOT NULL,
		created_at TEXT NOT NULL,
		updated_at TEXT NOT NULL
	);

	CREATE TABLE IF NOT EXISTS delegations (
		id TEXT PRIMARY KEY,
		principal_id TEXT NOT NULL,
		worker_id TEXT NOT NULL REFERENCES workers(id),
		status TEXT NOT NULL,
		valid_from TEXT NOT NULL,
		valid_until TEXT,
		data TEXT NOT NULL,
		created_at TEXT NOT NULL,
		updated_at TEXT NOT NULL
	);

	-- At most one active delegation per (principal, worker)
	CREATE UNIQUE INDEX IF NOT EXISTS idx_delegations_one_active
		ON delegations(principal_id, worker_id) WHERE status = 'active';
	CREATE INDEX IF NOT EXISTS idx_delegations_principal ON delegations(principal_id, status);

	CREATE TABLE IF NOT EXISTS delegation_history (
		id INTEGER PRIMARY KEY AUTOINCREMENT,
		delegation_id TEXT NOT NULL REFERENCES delegations(id),
		change_type TEXT NOT NULL,
		description TEXT,
		changed_by TEXT,
		changed_at TEXT NOT NULL,
		previous_state TEXT
	);
	CREATE INDEX IF NOT EXISTS idx_history_delegation ON delegation_history(delegation_id);

	CREATE TABLE IF NOT EXISTS actions (
		id TEXT PRIMARY KEY,
		principal_id TEXT NOT NULL,
		worker_id TEXT NOT NULL,
		delegation_id TEXT,
		session_id TEXT,
		status TEXT NOT NULL,
		total_tokens INTEGER NOT NULL DEFAULT 0,
		cost REAL NOT NULL DEFAULT 0,
		created_at TEXT NOT NULL,
		data TEXT NOT NULL
	);
	CREATE INDEX IF NOT EXISTS idx_actions_pair_created
		ON actions(principal_id, worker_id, created_at);
	CREATE INDEX IF NOT EXISTS idx_actions_worker_created ON actions(worker_id, created_at);

	CREATE TABLE IF NOT EXISTS sessions (
		id TEXT PRIMARY KEY,
		principal_id TEXT NOT NULL,
		worker_id TEXT,
		status TEXT NOT NULL DEFAULT 'active',
		context TEXT NOT NULL DEFAULT '{}',
		summary TEXT,
		error_message TEXT,
		rating INTEGER,
		feedback_comment TEXT,
		total_messages INTEGER NOT NULL DEFAULT 0,
		total_tokens INTEGER NOT NULL DEFAULT 0,
		total_cost REAL NOT NULL DEFAULT 0,
		actions_count INTEGER NOT NULL DEFAULT 0,
		started_at TEXT NOT NULL,
		ended_at TEXT,
		expires_at TEXT NOT NULL
	);
	CREATE INDEX IF NOT EXISTS idx_sessions_principal ON sessions(principal_id, status);

	CREATE TABLE IF NOT EXISTS session_messages (
		id INTEGER PRIMARY KEY AUTOINCREMENT,
		session_id TEXT NOT NULL REFERENCES sessions(id),
		role TEXT NOT NULL,
		content TEXT NOT NULL,
		tokens INTEGER NOT NULL DEFAULT 0,
		metadata TEXT NOT NULL DEFAULT '{}',
		timestamp TEXT NOT NULL
	);
	CREATE INDEX IF NOT EXISTS idx_messages_session ON session_messages(session_id, id);

	CREATE TABLE IF NOT EXISTS session_actions (
		session_id TEXT NOT NULL REFERENCES sessions(id),
		action_id TEXT NOT NULL,
		PRIMARY KEY (session_id, action_id)
	);

	CREATE TABLE IF NOT EXISTS queue_jobs (
		seq INTEGER PRIMARY KEY AUTOINCREMENT,
		id TEXT UNIQUE NOT NULL,
		principal_id TEXT NOT NULL,
		principal_role TEXT NOT NULL DEFAULT 'user',
		input TEXT NOT NULL,
		context TEXT NOT NULL DEFAULT '{}',
		priority INTEGER NOT NULL DEFAULT 5,
		status TEXT NOT NULL DEFAULT 'waiting',
		attempts INTEGER NOT NULL DEFAULT 0,
		max_attempts INTEGER NOT NULL DEFAULT 3,
		progress INTEGER NOT NULL DEFAULT 0,
		result TEXT,
		failure_reason TEXT,
		available_at TEXT NOT NULL,
		created_at TEXT NOT NULL,
		started_at TEXT,
		finished_at TEXT
	);
	CREATE INDEX IF NOT EXISTS idx_jobs_claim ON queue_jobs(status, priority, created_at, seq);
"""


class Database:
	"""
	Owner of the schema and of connection setup.

	Each service opens its own short-lived connection per operation:

		async with db.connect() as conn:
			async with conn.execute("SELECT ...", params) as cursor:
				row = await cursor.fetchone()
	"""

	def __init__(self, db_path: str | Path = "", timeout: float = 30.0):
		if not db_path:
			from .config import get_config
			db_path = get_config().db_path
		self.db_path = Path(db_path)
		self.db_path.parent.mkdir(parents=True, exist_ok=True)
		self.timeout = timeout

	async def init(self) -> None:
		"""Initialize database schema."""
		async with self.connect() as db:
			await db.execute("PRAGMA journal_mode=WAL")
			await db.executescript(SCHEMA)
			await db.commit()
		logger.info(f"Database initialized: {self.db_path}")

	@asynccontextmanager
	async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
		try:
			conn = await aiosqlite.connect(self.db_path, timeout=self.timeout)
		except (OSError, aiosqlite.Error) as e:
			raise InfrastructureError(f"Cannot open database {self.db_path}: {e}") from e
		conn.row_factory = aiosqlite.Row
		try:
			await conn.execute("PRAGMA foreign_keys = ON")
			yield conn
		finally:
			await conn.close()

	async def ping(self) -> bool:
		"""True when the database answers a trivial query."""
		try:
			async with self.connect() as db:
				async with db.execute("SELECT 1") as cursor:
					return (await cursor.fetchone()) is not None
		except (InfrastructureError, aiosqlite.Error) as e:
			logger.error(f"Database ping failed: {e}")
			return False
