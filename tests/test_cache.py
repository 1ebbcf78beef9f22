"""Tests for the context cache and the context builder on top of it."""

import pytest

from delegated_orchestrator.cache import ContextCache, make_key
from delegated_orchestrator.context_builder import ContextBuilder, StaticContextProvider, summarize
from delegated_orchestrator.intent import classify
from delegated_orchestrator.models import Entities, IntentType, Principal, to_iso

from .helpers import FakeClock, make_context_provider


class Ticker:
	def __init__(self):
		self.now = 1000.0

	def __call__(self) -> float:
		return self.now


# ---------------------------------------------------------------------------
# ContextCache
# ---------------------------------------------------------------------------

class TestContextCache:
	def test_param_order_does_not_change_key(self):
		assert make_key("backlog", "p1", {"a": 1, "b": 2}) == make_key("backlog", "p1", {"b": 2, "a": 1})
		assert make_key("backlog", "p1") != make_key("backlog", "p1", {"a": 1})

	def test_hit_miss_and_expiry(self):
		clock = Ticker()
		cache = ContextCache(ttl_seconds=300, clock=clock)

		assert cache.get("product", "p1") is None
		cache.set("product", "p1", {"id": "p1"})
		assert cache.get("product", "p1") == {"id": "p1"}

		clock.now += 301
		assert cache.get("product", "p1") is None
		assert len(cache) == 0

		stats = cache.stats()
		assert stats["hits"] == 1
		assert stats["misses"] == 2
		assert stats["sets"] == 1
		assert stats["hit_rate"] == "33.33%"

	def test_invalidate_product_only_touches_that_product(self):
		cache = ContextCache()
		cache.set("backlog", "p1", [1])
		cache.set("sprints", "p1", [2])
		cache.set("backlog", "p2", [3])

		assert cache.invalidate_product("p1") == 2
		assert cache.get("backlog", "p2") == [3]
		assert cache.invalidate_all() == 1

	def test_purge_expired(self):
		clock = Ticker()
		cache = ContextCache(ttl_seconds=10, clock=clock)
		cache.set("a", 1, "x")
		cache.set("b", 1, "y", ttl=100)
		clock.now += 20
		assert cache.purge_expired() == 1
		assert len(cache) == 1

	@pytest.mark.asyncio
	async def test_get_or_load_does_not_cache_none(self):
		cache = ContextCache()
		calls = []

		async def loader():
			calls.append(1)
			return None

		assert await cache.get_or_load("product", "missing", loader) is None
		assert await cache.get_or_load("product", "missing", loader) is None
		assert len(calls) == 2

	@pytest.mark.asyncio
	async def test_start_stop(self):
		cache = ContextCache(check_period=0.01)
		await cache.start()
		await cache.stop()
		assert cache._sweep_task is None


# ---------------------------------------------------------------------------
# ContextBuilder
# ---------------------------------------------------------------------------

class TestContextBuilder:
	@pytest.mark.asyncio
	async def test_backlog_intent_loads_product_backlog_and_standards(self):
		provider = make_context_provider()
		builder = ContextBuilder(provider, ContextCache())
		entities = Entities(product_ids=["p1"])

		context = await builder.build(IntentType.CREATE_USER_STORY, entities, Principal(id="u1"))

		assert context["primary_product"]["name"] == "Shop"
		assert context["backlog_stats"]["total"] == 3
		assert context["backlog_stats"]["total_points"] == 8
		assert context["backlog_stats"]["by_type"] == {"story": 2, "bug": 1}
		assert "standards" in context
		assert "sprints" not in context

	@pytest.mark.asyncio
	async def test_second_build_is_served_from_cache(self):
		provider = make_context_provider()
		cache = ContextCache()
		builder = ContextBuilder(provider, cache)
		entities = Entities(product_ids=["p1"])

		await builder.build(IntentType.PLAN_SPRINT, entities, Principal(id="u1"))
		first = dict(provider.calls)
		context = await builder.build(IntentType.PLAN_SPRINT, entities, Principal(id="u1"))

		assert dict(provider.calls) == first
		assert context["active_sprint"]["name"] == "Sprint 7"
		assert context["team_capacity"]["average_velocity"] == 21
		assert cache.stats()["hits"] > 0

	@pytest.mark.asyncio
	async def test_provider_failure_is_reported_not_raised(self):
		class Broken(StaticContextProvider):
			async def get_backlog(self, product_id):
				raise RuntimeError("backlog service down")

		builder = ContextBuilder(Broken(), ContextCache())
		context = await builder.build(IntentType.ANALYZE_BACKLOG, Entities(), Principal(id="u1"))
		assert context["error"] == "backlog service down"

	@pytest.mark.asyncio
	async def test_no_provider_gives_minimal_context(self):
		builder = ContextBuilder(None, ContextCache())
		classification = classify("analizar el backlog")
		context = await builder.build(classification.intent, classification.entities, Principal(id="u1"))
		assert context["intent"] == "analyze_backlog"
		assert context["principal"]["id"] == "u1"

	@pytest.mark.asyncio
	async def test_timestamp_follows_injected_clock(self):
		clock = FakeClock()
		builder = ContextBuilder(None, ContextCache(), clock=clock)
		context = await builder.build(IntentType.ANALYZE_BACKLOG, Entities(), Principal(id="u1"))
		assert context["timestamp"] == to_iso(clock())

	def test_summarize(self):
		summary = summarize({
			"primary_product": {"name": "Shop"},
			"backlog_stats": {"total": 3, "total_points": 8},
			"active_sprint": {"name": "Sprint 7"},
			"team_capacity": {"team_size": 4, "average_velocity": 21},
		})
		assert summary == (
			"Product: Shop | Backlog: 3 items (8 points) | Active sprint: Sprint 7 | "
			"Team: 4 developers, average velocity 21 points"
		)
