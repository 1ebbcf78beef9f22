"""Tests for worker records, executor variants, fallbacks and the default catalogue."""

import json

import pytest

from delegated_orchestrator.errors import ExecutionError, ValidationError
from delegated_orchestrator.models import (
	Action,
	ActionCategory,
	ActionInput,
	ActionResultStatus,
	ActionStatus,
	Entities,
	IntentType,
	TokenUsage,
	WorkerCategory,
	WorkerQuotas,
	WorkerStatus,
)
from delegated_orchestrator.seed import DEFAULT_WORKERS, seed_workers
from delegated_orchestrator.workers import (
	DeveloperWorker,
	ProductOwnerWorker,
	UnifiedWorker,
	build_worker,
	simulate_response,
)

from .helpers import FakeProvider, make_runtime, make_worker


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------

class TestVariants:
	def test_build_worker_dispatches_on_category(self):
		assert isinstance(build_worker(make_worker()), ProductOwnerWorker)
		assert isinstance(build_worker(make_worker(category=WorkerCategory.DEVELOPER)), DeveloperWorker)
		universal_tester = make_worker(category=WorkerCategory.TESTER, is_universal=True)
		assert isinstance(build_worker(universal_tester), UnifiedWorker)
		with pytest.raises(ExecutionError):
			build_worker(make_worker(category=WorkerCategory.TESTER))

	def test_unified_worker_covers_every_domain_intent(self):
		worker = build_worker(make_worker(category=WorkerCategory.UNIFIED_SYSTEM, is_universal=True))
		assert worker.supports(IntentType.PLAN_SPRINT)
		assert worker.supports(IntentType.ESTIMATE_STORY)
		assert worker.supports(IntentType.CREATE_USER_STORY)
		assert not worker.supports(IntentType.GENERAL_QUESTION)

	@pytest.mark.asyncio
	async def test_execute_parses_provider_json(self):
		provider = FakeProvider(payload={"message": "3 stories", "stories": [1, 2, 3]})
		worker = build_worker(make_worker(), provider)

		result = await worker.execute(IntentType.CREATE_USER_STORY, {"primary_product": {"name": "Shop"}}, Entities(count=3))

		assert result.message == "3 stories"
		assert result.data["stories"] == [1, 2, 3]
		assert result.token_usage.prompt_tokens == 1000
		_, user_prompt, settings = provider.calls[0]
		prompt = json.loads(user_prompt)
		assert prompt["intent"] == "create_user_story"
		assert prompt["entities"] == {"count": 3}
		assert settings.model == "gpt-4-turbo"

	@pytest.mark.asyncio
	async def test_non_json_output_is_wrapped(self):
		class PlainProvider(FakeProvider):
			async def complete(self, system_prompt, user_prompt, settings):
				response = await super().complete(system_prompt, user_prompt, settings)
				response.content = "just text"
				return response

		worker = build_worker(make_worker(), PlainProvider())
		result = await worker.execute(IntentType.ANALYZE_BACKLOG, {}, Entities())
		assert result.data == {"content": "just text"}
		assert result.message == "Analyze backlog completed"

	@pytest.mark.asyncio
	async def test_execute_failures_raise_execution_error(self):
		with pytest.raises(ExecutionError):
			await build_worker(make_worker()).execute(IntentType.ANALYZE_BACKLOG, {}, Entities())
		with pytest.raises(ExecutionError):
			await build_worker(make_worker(), FakeProvider()).execute(IntentType.PLAN_SPRINT, {}, Entities())
		failing = FakeProvider(error=TimeoutError("slow"))
		with pytest.raises(ExecutionError, match="slow"):
			await build_worker(make_worker(), failing).execute(IntentType.ANALYZE_BACKLOG, {}, Entities())


class TestFallback:
	def test_simulated_payload_is_labeled(self):
		context = {"backlog": [{}, {}], "backlog_stats": {"total_points": 8}}
		payload = simulate_response(IntentType.ANALYZE_BACKLOG, Entities(), context, "no provider")

		assert payload["simulated"] is True
		assert payload["note"].endswith("no provider")
		assert payload["details"]["intent"] == "analyze_backlog"
		assert "2 items in the backlog" in payload["details"]["insights"]

	def test_unknown_intent_echoes_entities(self):
		payload = simulate_response(IntentType.GENERATE_REPORT, Entities(keywords=["velocity"]), {})
		assert payload["message"] == "Detected intent: generate_report"
		assert payload["details"]["entities"] == {"keywords": ["velocity"]}


# ---------------------------------------------------------------------------
# Repository and catalogue
# ---------------------------------------------------------------------------

class TestRepository:
	@pytest.mark.asyncio
	async def test_names_are_unique(self, tmp_path):
		runtime = await make_runtime(tmp_path, seed=False)
		await runtime.workers.create(make_worker("dup"))
		with pytest.raises(ValidationError):
			await runtime.workers.create(make_worker("dup"))

	@pytest.mark.asyncio
	async def test_candidates_put_universal_first_and_skip_inactive(self, tmp_path):
		runtime = await make_runtime(tmp_path, seed=False)
		po = await runtime.workers.create(make_worker("po"))
		universal = await runtime.workers.create(
			make_worker("uni", category=WorkerCategory.UNIFIED_SYSTEM, is_universal=True)
		)
		retired = await runtime.workers.create(make_worker("old-po"))
		await runtime.workers.set_status(retired.id, WorkerStatus.DEPRECATED)

		candidates = await runtime.workers.list_candidates(WorkerCategory.PRODUCT_OWNER)

		assert [w.id for w in candidates] == [universal.id, po.id]
		assert (await runtime.workers.first_universal()).id == universal.id

	@pytest.mark.asyncio
	async def test_record_outcome_running_average(self, tmp_path):
		runtime = await make_runtime(tmp_path, seed=False)
		worker = await runtime.workers.create(make_worker())

		await runtime.workers.record_outcome(worker.id, True, 100, 0.01, 200)
		await runtime.workers.record_outcome(worker.id, True, 50, 0.02, 400)
		await runtime.workers.record_outcome(worker.id, False)

		metrics = (await runtime.workers.get(worker.id)).metrics
		assert metrics.total_interactions == 3
		assert metrics.successful_actions == 2
		assert metrics.failed_actions == 1
		assert metrics.total_tokens_used == 150
		assert metrics.total_cost == pytest.approx(0.03)
		assert metrics.average_response_time_ms == pytest.approx(300)

	@pytest.mark.asyncio
	async def test_daily_token_quota(self, tmp_path):
		runtime = await make_runtime(tmp_path, seed=False)
		worker = await runtime.workers.create(make_worker(quotas=WorkerQuotas(max_tokens_per_day=1000)))
		assert await runtime.workers.check_quota(worker) is None

		action = await runtime.actions.create(Action(
			principal_id="u1",
			worker_id=worker.id,
			action_type="analyze_backlog",
			category=ActionCategory.ANALYSIS,
			input=ActionInput(user_prompt="analizar el backlog"),
		))
		await runtime.actions.finalize(
			action.id, ActionStatus.COMPLETED, ActionResultStatus.SUCCESS,
			usage=TokenUsage(prompt_tokens=1000, completion_tokens=500, total_tokens=1500),
		)

		assert await runtime.workers.check_quota(worker) == "worker_daily_token_limit_reached"


class TestSeed:
	@pytest.mark.asyncio
	async def test_seed_is_idempotent(self, tmp_path):
		runtime = await make_runtime(tmp_path, seed=False)

		created = await seed_workers(runtime.workers)
		again = await seed_workers(runtime.workers)

		assert [w.name for w in created] == [w.name for w in DEFAULT_WORKERS]
		assert again == []
		universal = await runtime.workers.first_universal()
		assert universal.name == "scrum-ai"
		assert universal.is_system_worker
		assert DEFAULT_WORKERS[0].id == ""
