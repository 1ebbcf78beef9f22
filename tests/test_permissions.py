"""Tests for the delegation engine: creation, authorization checks, quotas and lifecycle."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from delegated_orchestrator.errors import (
	DelegationNotFoundError,
	DuplicateDelegationError,
	InvalidTransitionError,
	ValidationError,
	WorkerNotFoundError,
	WorkerUnavailableError,
)
from delegated_orchestrator.models import (
	Action,
	ActionCategory,
	ActionInput,
	ActionResultStatus,
	ActionStatus,
	ChangeType,
	DelegationStatus,
	TokenUsage,
	WorkerQuotas,
	WorkerStatus,
)
from delegated_orchestrator.permissions import build_scope, operation_type, required_permission

from .helpers import FakeClock, make_runtime, make_worker


async def runtime_with_worker(tmp_path, **worker_fields):
	clock = FakeClock()
	runtime = await make_runtime(tmp_path, clock=clock, seed=False)
	worker = await runtime.workers.create(make_worker(**worker_fields))
	return runtime, worker, clock


async def log_action(runtime, principal_id, worker_id, usage=None):
	action = await runtime.actions.create(Action(
		principal_id=principal_id,
		worker_id=worker_id,
		action_type="analyze_backlog",
		category=ActionCategory.ANALYSIS,
		input=ActionInput(user_prompt="analizar el backlog"),
	))
	if usage is not None:
		await runtime.actions.finalize(
			action.id, ActionStatus.COMPLETED, ActionResultStatus.SUCCESS, usage=usage
		)
	return action


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:
	@pytest.mark.parametrize("action_type,expected", [
		("create_backlog_item", "create"),
		("update_sprint", "edit"),
		("edit_story", "edit"),
		("delete_backlog_item", "delete"),
		("analyze_backlog", "read"),
		("generate_report", "read"),
		("prioritize_backlog", "other"),
	])
	def test_operation_type(self, action_type, expected):
		assert operation_type(action_type) == expected

	def test_required_permission(self):
		assert required_permission("create_backlog_item") == "canCreateBacklogItems"
		assert required_permission("consultation") is None
		assert required_permission("analyze_velocity") == "canViewBacklog"
		assert required_permission("unknown_action") is None

	def test_all_products_follows_product_list(self):
		assert build_scope({}).all_products is True
		assert build_scope({"products": ["p1"]}).all_products is False
		assert build_scope({"products": ["p1"], "all_products": True}).all_products is True

	def test_unknown_scope_field(self):
		with pytest.raises(ValidationError):
			build_scope({"max_actions": 3})


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

class TestCreate:
	@pytest.mark.asyncio
	async def test_create_and_lookup(self, tmp_path):
		runtime, worker, _ = await runtime_with_worker(tmp_path)
		engine = runtime.delegations

		delegation = await engine.create("u1", worker.id, ["canViewBacklog", "canViewBacklog"])

		assert delegation.status == DelegationStatus.ACTIVE
		assert delegation.permission_keys() == {"canViewBacklog"}
		assert delegation.permissions[0].permission_name == "View backlog"
		active = await engine.get_active_delegation("u1", worker.id)
		assert active is not None and active.id == delegation.id

		history = await engine.history(delegation.id)
		assert [h.change_type for h in history] == [ChangeType.CREATED]

	@pytest.mark.asyncio
	async def test_duplicate_active_delegation_rejected(self, tmp_path):
		runtime, worker, _ = await runtime_with_worker(tmp_path)
		await runtime.delegations.create("u1", worker.id, ["canViewBacklog"])
		with pytest.raises(DuplicateDelegationError):
			await runtime.delegations.create("u1", worker.id, ["canCreateBacklogItems"])

	@pytest.mark.asyncio
	async def test_concurrent_creates_yield_one_delegation(self, tmp_path):
		runtime, worker, _ = await runtime_with_worker(tmp_path)
		engine = runtime.delegations

		results = await asyncio.gather(
			engine.create("u1", worker.id, ["canViewBacklog"]),
			engine.create("u1", worker.id, ["canViewBacklog"]),
			return_exceptions=True,
		)

		created = [r for r in results if not isinstance(r, Exception)]
		errors = [r for r in results if isinstance(r, Exception)]
		assert len(created) == 1
		assert len(errors) == 1 and isinstance(errors[0], DuplicateDelegationError)
		assert len(await engine.list_for_principal("u1")) == 1

	@pytest.mark.asyncio
	async def test_worker_must_exist_and_be_active(self, tmp_path):
		runtime, worker, _ = await runtime_with_worker(tmp_path)
		with pytest.raises(WorkerNotFoundError):
			await runtime.delegations.create("u1", "nope", ["canViewBacklog"])

		await runtime.workers.set_status(worker.id, WorkerStatus.INACTIVE)
		with pytest.raises(WorkerUnavailableError):
			await runtime.delegations.create("u1", worker.id, ["canViewBacklog"])

	@pytest.mark.asyncio
	async def test_input_validation(self, tmp_path):
		runtime, worker, clock = await runtime_with_worker(tmp_path)
		engine = runtime.delegations
		with pytest.raises(ValidationError):
			await engine.create("u1", worker.id, [])
		with pytest.raises(ValidationError):
			await engine.create("u1", worker.id, ["canViewBacklog"], {"bogus": 1})
		with pytest.raises(ValidationError):
			await engine.create("u1", worker.id, ["canViewBacklog"], valid_until=clock() - timedelta(hours=1))
		with pytest.raises(ValidationError):
			await engine.create("", worker.id, ["canViewBacklog"])

	@pytest.mark.asyncio
	async def test_not_yet_valid_delegation_is_not_active(self, tmp_path):
		runtime, worker, clock = await runtime_with_worker(tmp_path)
		await runtime.delegations.create(
			"u1", worker.id, ["canViewBacklog"], valid_from=clock() + timedelta(hours=1)
		)
		assert await runtime.delegations.get_active_delegation("u1", worker.id) is None
		clock.advance(hours=2)
		assert await runtime.delegations.get_active_delegation("u1", worker.id) is not None

	@pytest.mark.asyncio
	async def test_offset_aware_window_is_stored_as_local_time(self, tmp_path):
		runtime, worker, clock = await runtime_with_worker(tmp_path)
		valid_until = datetime(2030, 1, 1, tzinfo=timezone.utc)

		delegation = await runtime.delegations.create(
			"u1", worker.id, ["canViewBacklog"],
			valid_from=clock().astimezone(), valid_until=valid_until,
		)

		assert delegation.valid_until == valid_until.astimezone().replace(tzinfo=None)
		assert delegation.valid_until.tzinfo is None
		assert delegation.valid_from == clock()
		assert await runtime.delegations.get_active_delegation("u1", worker.id) is not None


# ---------------------------------------------------------------------------
# Authorization checks
# ---------------------------------------------------------------------------

class TestCanPerformAction:
	@pytest.mark.asyncio
	async def test_no_active_delegation(self, tmp_path):
		runtime, worker, _ = await runtime_with_worker(tmp_path)
		decision = await runtime.delegations.can_perform_action("u1", worker.id, "analyze_backlog")
		assert not decision.allowed
		assert decision.reason == "no_active_delegation"

	@pytest.mark.asyncio
	async def test_insufficient_permissions(self, tmp_path):
		runtime, worker, _ = await runtime_with_worker(tmp_path)
		await runtime.delegations.create("u1", worker.id, ["canViewBacklog"])
		decision = await runtime.delegations.can_perform_action("u1", worker.id, "create_backlog_item")
		assert decision.reason == "insufficient_permissions"

	@pytest.mark.asyncio
	async def test_product_scope(self, tmp_path):
		runtime, worker, _ = await runtime_with_worker(tmp_path)
		engine = runtime.delegations
		await engine.create("u1", worker.id, ["canViewBacklog"], {"products": ["p1"]})

		denied = await engine.can_perform_action("u1", worker.id, "analyze_backlog", {"product_id": "p2"})
		allowed = await engine.can_perform_action("u1", worker.id, "analyze_backlog", {"product_id": "p1"})

		assert denied.reason == "product_not_in_scope"
		assert allowed.allowed

	@pytest.mark.asyncio
	async def test_operation_flags(self, tmp_path):
		runtime, worker, _ = await runtime_with_worker(tmp_path)
		engine = runtime.delegations
		await engine.create(
			"u1", worker.id, ["canCreateBacklogItems", "canDeleteBacklogItems"], {"can_create": False}
		)

		create = await engine.can_perform_action("u1", worker.id, "create_backlog_item")
		delete = await engine.can_perform_action("u1", worker.id, "delete_backlog_item")

		assert create.reason == "create_not_allowed"
		assert delete.reason == "delete_not_allowed"

	@pytest.mark.asyncio
	async def test_requires_approval_is_passed_through(self, tmp_path):
		runtime, worker, _ = await runtime_with_worker(tmp_path)
		await runtime.delegations.create("u1", worker.id, ["canViewBacklog"], {"requires_approval": True})
		decision = await runtime.delegations.can_perform_action("u1", worker.id, "analyze_backlog")
		assert decision.allowed and decision.requires_approval

	@pytest.mark.asyncio
	async def test_hourly_window_slides(self, tmp_path):
		runtime, worker, clock = await runtime_with_worker(tmp_path)
		engine = runtime.delegations
		await engine.create("u1", worker.id, ["canViewBacklog"], {"max_actions_per_hour": 2})
		await log_action(runtime, "u1", worker.id)
		clock.advance(minutes=30)
		await log_action(runtime, "u1", worker.id)

		decision = await engine.can_perform_action("u1", worker.id, "analyze_backlog")
		assert decision.reason == "hourly_limit_reached"

		clock.advance(minutes=31)
		assert (await engine.can_perform_action("u1", worker.id, "analyze_backlog")).allowed

	@pytest.mark.asyncio
	async def test_daily_limit_resets_at_midnight(self, tmp_path):
		runtime, worker, clock = await runtime_with_worker(tmp_path)
		engine = runtime.delegations
		await engine.create("u1", worker.id, ["canViewBacklog"], {"max_actions_per_day": 2})
		await log_action(runtime, "u1", worker.id)
		await log_action(runtime, "u1", worker.id)

		clock.advance(hours=2)
		assert (await engine.can_perform_action("u1", worker.id, "analyze_backlog")).reason == "daily_limit_reached"

		clock.advance(days=1)
		assert (await engine.can_perform_action("u1", worker.id, "analyze_backlog")).allowed

	@pytest.mark.asyncio
	async def test_daily_cost_limit(self, tmp_path):
		runtime, worker, _ = await runtime_with_worker(tmp_path)
		engine = runtime.delegations
		await engine.create("u1", worker.id, ["canViewBacklog"], {"max_cost_per_day": 0.02})
		await log_action(runtime, "u1", worker.id, TokenUsage(prompt_tokens=1000, completion_tokens=500, total_tokens=1500))

		decision = await engine.can_perform_action("u1", worker.id, "analyze_backlog")
		assert decision.reason == "daily_cost_limit_reached"

	@pytest.mark.asyncio
	async def test_worker_quota_counts_every_principal(self, tmp_path):
		runtime, worker, _ = await runtime_with_worker(tmp_path, quotas=WorkerQuotas(max_requests_per_hour=1))
		await runtime.delegations.create("u1", worker.id, ["canViewBacklog"])
		await log_action(runtime, "someone-else", worker.id)

		decision = await runtime.delegations.can_perform_action("u1", worker.id, "analyze_backlog")
		assert decision.reason == "worker_hourly_limit_reached"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
	@pytest.mark.asyncio
	async def test_suspend_reactivate_revoke(self, tmp_path):
		runtime, worker, _ = await runtime_with_worker(tmp_path)
		engine = runtime.delegations
		delegation = await engine.create("u1", worker.id, ["canViewBacklog"])

		suspended = await engine.suspend(delegation.id, "u1", "vacation")
		assert suspended.status == DelegationStatus.SUSPENDED
		assert suspended.suspension_reason == "vacation"
		assert await engine.get_active_delegation("u1", worker.id) is None

		await engine.reactivate(delegation.id, "u1")
		revoked = await engine.revoke(delegation.id, "u1", "no longer needed")
		assert revoked.status == DelegationStatus.REVOKED
		assert revoked.revocation_reason == "no longer needed"

		history = await engine.history(delegation.id)
		assert [h.change_type for h in history] == [
			ChangeType.CREATED, ChangeType.SUSPENDED, ChangeType.REACTIVATED, ChangeType.REVOKED,
		]
		assert history[-1].previous_state == {"status": "active"}

	@pytest.mark.asyncio
	async def test_invalid_transitions(self, tmp_path):
		runtime, worker, _ = await runtime_with_worker(tmp_path)
		engine = runtime.delegations
		delegation = await engine.create("u1", worker.id, ["canViewBacklog"])

		with pytest.raises(InvalidTransitionError):
			await engine.reactivate(delegation.id)
		await engine.revoke(delegation.id)
		with pytest.raises(InvalidTransitionError):
			await engine.revoke(delegation.id)
		with pytest.raises(InvalidTransitionError):
			await engine.suspend(delegation.id)
		with pytest.raises(DelegationNotFoundError):
			await engine.suspend("missing")

	@pytest.mark.asyncio
	async def test_reactivate_blocked_by_newer_active_delegation(self, tmp_path):
		runtime, worker, _ = await runtime_with_worker(tmp_path)
		engine = runtime.delegations
		first = await engine.create("u1", worker.id, ["canViewBacklog"])
		await engine.suspend(first.id)
		await engine.create("u1", worker.id, ["canCreateBacklogItems"])

		with pytest.raises(DuplicateDelegationError):
			await engine.reactivate(first.id)
		assert (await engine.get(first.id)).status == DelegationStatus.SUSPENDED

	@pytest.mark.asyncio
	async def test_expire_old_delegations_is_idempotent(self, tmp_path):
		runtime, worker, clock = await runtime_with_worker(tmp_path)
		engine = runtime.delegations
		delegation = await engine.create(
			"u1", worker.id, ["canViewBacklog"], valid_until=clock() + timedelta(hours=1)
		)
		clock.advance(hours=2)

		assert await engine.expire_old_delegations() == 1
		assert await engine.expire_old_delegations() == 0
		assert (await engine.get(delegation.id)).status == DelegationStatus.EXPIRED
		assert (await engine.history(delegation.id))[-1].change_type == ChangeType.EXPIRED

	@pytest.mark.asyncio
	async def test_update_scope(self, tmp_path):
		runtime, worker, _ = await runtime_with_worker(tmp_path)
		engine = runtime.delegations
		delegation = await engine.create("u1", worker.id, ["canViewBacklog"])

		updated = await engine.update_scope(delegation.id, "u1", {"max_actions_per_hour": 10})
		assert updated.scope.max_actions_per_hour == 10
		entry = (await engine.history(delegation.id))[-1]
		assert entry.change_type == ChangeType.UPDATED
		assert entry.previous_state["scope"]["max_actions_per_hour"] == 50

		with pytest.raises(ValidationError):
			await engine.update_scope(delegation.id, "u1", {"nope": True})
		with pytest.raises(ValidationError):
			await engine.update_scope(delegation.id, "u1", {"max_actions_per_hour": -1})

		await engine.revoke(delegation.id)
		with pytest.raises(InvalidTransitionError):
			await engine.update_scope(delegation.id, "u1", {"max_actions_per_hour": 5})

	@pytest.mark.asyncio
	async def test_record_usage(self, tmp_path):
		runtime, worker, _ = await runtime_with_worker(tmp_path)
		engine = runtime.delegations
		delegation = await engine.create("u1", worker.id, ["canViewBacklog"])

		await engine.record_usage(delegation.id, True, 0.5)
		await engine.record_usage(delegation.id, False)

		usage = (await engine.get(delegation.id)).usage
		assert usage.total_actions == 2
		assert usage.successful_actions == 1
		assert usage.failed_actions == 1
		assert usage.total_cost == pytest.approx(0.5)
