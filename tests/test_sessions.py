"""Tests for conversation sessions."""

import pytest

from delegated_orchestrator.errors import (
	SessionExpiredError,
	SessionNotFoundError,
	SessionOwnershipError,
	SessionStateError,
	ValidationError,
)
from delegated_orchestrator.models import MessageRole, SessionStatus

from .helpers import FakeClock, make_runtime


async def session_manager(tmp_path, clock=None):
	runtime = await make_runtime(tmp_path, clock=clock or FakeClock(), seed=False)
	return runtime.sessions


class TestLifecycle:
	@pytest.mark.asyncio
	async def test_create_keeps_known_context_fields(self, tmp_path):
		sessions = await session_manager(tmp_path)

		session = await sessions.create("u1", {"product_id": "p1", "unrelated": "x"})

		loaded = await sessions.get(session.id)
		assert loaded.context.product_id == "p1"
		assert loaded.status == SessionStatus.ACTIVE
		assert loaded.expires_at > loaded.started_at

	@pytest.mark.asyncio
	async def test_create_requires_principal(self, tmp_path):
		sessions = await session_manager(tmp_path)
		with pytest.raises(ValidationError):
			await sessions.create("")

	@pytest.mark.asyncio
	async def test_get_owned_checks(self, tmp_path):
		clock = FakeClock()
		sessions = await session_manager(tmp_path, clock)
		session = await sessions.create("u1")

		with pytest.raises(SessionNotFoundError):
			await sessions.get_owned("missing", "u1")
		with pytest.raises(SessionOwnershipError):
			await sessions.get_owned(session.id, "u2")

		clock.advance(hours=25)
		with pytest.raises(SessionExpiredError):
			await sessions.get_owned(session.id, "u1")

	@pytest.mark.asyncio
	async def test_completed_session_rejects_new_messages(self, tmp_path):
		sessions = await session_manager(tmp_path)
		session = await sessions.create("u1")

		done = await sessions.complete(session.id, "stories created")

		assert done.status == SessionStatus.COMPLETED
		assert done.summary == "stories created"
		with pytest.raises(SessionStateError):
			await sessions.append_message(session.id, MessageRole.USER, "one more thing")
		with pytest.raises(SessionStateError):
			await sessions.get_owned(session.id, "u1")
		with pytest.raises(SessionStateError):
			await sessions.fail(session.id, "too late")

	@pytest.mark.asyncio
	async def test_fail_records_error(self, tmp_path):
		clock = FakeClock()
		sessions = await session_manager(tmp_path, clock)
		session = await sessions.create("u1")
		clock.advance(minutes=5)

		failed = await sessions.fail(session.id, "provider unavailable")

		assert failed.status == SessionStatus.ERROR
		assert failed.error_message == "provider unavailable"
		assert failed.metrics.duration_seconds == 300

	@pytest.mark.asyncio
	async def test_expire_sessions_is_idempotent(self, tmp_path):
		clock = FakeClock()
		sessions = await session_manager(tmp_path, clock)
		old = await sessions.create("u1")
		clock.advance(hours=20)
		fresh = await sessions.create("u1")
		clock.advance(hours=5)

		assert await sessions.expire_sessions() == 1
		assert await sessions.expire_sessions() == 0
		assert (await sessions.get(old.id)).status == SessionStatus.EXPIRED
		assert [s.id for s in await sessions.active_for_principal("u1")] == [fresh.id]


class TestMessages:
	@pytest.mark.asyncio
	async def test_counters_match_messages(self, tmp_path):
		sessions = await session_manager(tmp_path)
		session = await sessions.create("u1")

		assert await sessions.append_message(session.id, MessageRole.USER, "hola") == 1
		assert await sessions.append_message(
			session.id, MessageRole.ASSISTANT, "¿En qué te ayudo?", tokens=120, cost=0.01
		) == 2

		loaded = await sessions.get(session.id)
		assert loaded.metrics.total_messages == len(loaded.messages) == 2
		assert loaded.metrics.total_tokens == 120
		assert loaded.metrics.total_cost == pytest.approx(0.01)
		assert [m.role for m in loaded.messages] == [MessageRole.USER, MessageRole.ASSISTANT]

	@pytest.mark.asyncio
	async def test_history_limit_keeps_latest_in_order(self, tmp_path):
		sessions = await session_manager(tmp_path)
		session = await sessions.create("u1")
		for i in range(5):
			await sessions.append_message(session.id, MessageRole.USER, f"message {i}")

		recent = await sessions.history(session.id, limit=2)
		everything = await sessions.history(session.id)

		assert [m.content for m in recent] == ["message 3", "message 4"]
		assert len(everything) == 5
		with pytest.raises(SessionNotFoundError):
			await sessions.history("missing")

	@pytest.mark.asyncio
	async def test_append_to_missing_session(self, tmp_path):
		sessions = await session_manager(tmp_path)
		with pytest.raises(SessionNotFoundError):
			await sessions.append_message("missing", MessageRole.USER, "hola")


class TestLinks:
	@pytest.mark.asyncio
	async def test_first_worker_binding_sticks(self, tmp_path):
		sessions = await session_manager(tmp_path)
		session = await sessions.create("u1")

		assert await sessions.bind_worker(session.id, "w1")
		assert not await sessions.bind_worker(session.id, "w2")
		assert (await sessions.get(session.id)).worker_id == "w1"

	@pytest.mark.asyncio
	async def test_actions_are_linked_once(self, tmp_path):
		sessions = await session_manager(tmp_path)
		session = await sessions.create("u1")

		await sessions.add_action(session.id, "a1")
		await sessions.add_action(session.id, "a1")
		await sessions.add_action(session.id, "a2")

		loaded = await sessions.get(session.id)
		assert loaded.action_ids == ["a1", "a2"]
		assert loaded.metrics.actions_count == 2

	@pytest.mark.asyncio
	async def test_feedback(self, tmp_path):
		sessions = await session_manager(tmp_path)
		session = await sessions.create("u1")

		rated = await sessions.add_feedback(session.id, "u1", 4, "useful")

		assert rated.rating == 4
		assert (await sessions.get(session.id)).feedback_comment == "useful"
		with pytest.raises(ValidationError):
			await sessions.add_feedback(session.id, "u1", 6)
		with pytest.raises(SessionOwnershipError):
			await sessions.add_feedback(session.id, "u2", 3)
