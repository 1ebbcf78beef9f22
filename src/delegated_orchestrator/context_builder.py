"""
Context Builder - assembles the domain context a worker needs for an intent.

Responsible for:
- Deciding which snapshots an intent needs (product, backlog, sprints,
  standards, team capacity)
- Loading them from the external ContextProvider through the ContextCache
- Producing the one-line context summary recorded on every Action
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from .cache import ContextCache
from .models import Entities, IntentType, Principal, now, to_iso

logger = logging.getLogger(__name__)

BACKLOG_INTENTS = {
	IntentType.CREATE_USER_STORY,
	IntentType.REFINE_USER_STORY,
	IntentType.PRIORITIZE_BACKLOG,
	IntentType.ANALYZE_BACKLOG,
	IntentType.ESTIMATE_STORY,
	IntentType.ANALYZE_BUSINESS_VALUE,
	IntentType.SUGGEST_IMPROVEMENTS,
}
PRODUCT_INTENTS = {
	IntentType.CREATE_USER_STORY,
	IntentType.PRIORITIZE_BACKLOG,
	IntentType.ANALYZE_BACKLOG,
	IntentType.SUGGEST_SPRINT_GOAL,
	IntentType.PLAN_SPRINT,
}
SPRINT_INTENTS = {
	IntentType.SUGGEST_SPRINT_GOAL,
	IntentType.PLAN_SPRINT,
	IntentType.ESTIMATE_STORY,
	IntentType.GENERATE_REPORT,
}
STANDARDS_INTENTS = {
	IntentType.CREATE_USER_STORY,
	IntentType.REFINE_USER_STORY,
	IntentType.GENERATE_ACCEPTANCE_CRITERIA,
}
CAPACITY_INTENTS = {IntentType.PLAN_SPRINT, IntentType.ESTIMATE_STORY}

ALL_PRODUCTS = "*"


class ContextProvider(Protocol):
	"""Read-only access to domain snapshots (products, backlog, sprints)."""

	async def get_product(self, product_id: str) -> Optional[dict]:
		...

	async def list_products(self, principal_id: str) -> list[dict]:
		...

	async def get_backlog(self, product_id: Optional[str]) -> list[dict]:
		...

	async def get_sprints(self, product_id: Optional[str]) -> list[dict]:
		...

	async def get_team_capacity(self, product_id: str) -> Optional[dict]:
		...

	async def get_standards(self) -> dict:
		...


class StaticContextProvider:
	"""In-memory provider serving fixed snapshots; counts loads per kind."""

	def __init__(
		self,
		products: Optional[dict[str, dict]] = None,
		backlog: Optional[dict[str, list[dict]]] = None,
		sprints: Optional[dict[str, list[dict]]] = None,
		capacity: Optional[dict[str, dict]] = None,
		standards: Optional[dict] = None,
	):
		self.products = products or {}
		self.backlog = backlog or {}
		self.sprints = sprints or {}
		self.capacity = capacity or {}
		self.standards = standards or {}
		self.calls: Counter = Counter()

	async def get_product(self, product_id: str) -> Optional[dict]:
		self.calls["product"] += 1
		return self.products.get(product_id)

	async def list_products(self, principal_id: str) -> list[dict]:
		self.calls["products"] += 1
		return list(self.products.values())

	async def get_backlog(self, product_id: Optional[str]) -> list[dict]:
		self.calls["backlog"] += 1
		if product_id is None:
			return [item for items in self.backlog.values() for item in items]
		return list(self.backlog.get(product_id, []))

	async def get_sprints(self, product_id: Optional[str]) -> list[dict]:
		self.calls["sprints"] += 1
		if product_id is None:
			return [s for sprints in self.sprints.values() for s in sprints]
		return list(self.sprints.get(product_id, []))

	async def get_team_capacity(self, product_id: str) -> Optional[dict]:
		self.calls["capacity"] += 1
		return self.capacity.get(product_id)

	async def get_standards(self) -> dict:
		self.calls["standards"] += 1
		return dict(self.standards)


def backlog_stats(items: list[dict]) -> dict:
	return {
		"total": len(items),
		"by_type": dict(Counter(item.get("type", "unknown") for item in items)),
		"by_status": dict(Counter(item.get("status", "unknown") for item in items)),
		"by_priority": dict(Counter(item.get("priority", "unknown") for item in items)),
		"total_points": sum(item.get("story_points") or 0 for item in items),
	}


def find_active_sprint(sprints: list[dict]) -> Optional[dict]:
	return next((s for s in sprints if s.get("status") == "in_progress"), None)


def summarize(context: dict) -> str:
	"""One-line summary of what the context contains."""
	parts = []
	if context.get("primary_product"):
		parts.append(f"Product: {context['primary_product'].get('name', context['primary_product'].get('id'))}")
	if context.get("backlog_stats"):
		stats = context["backlog_stats"]
		parts.append(f"Backlog: {stats['total']} items ({stats['total_points']} points)")
	if context.get("active_sprint"):
		parts.append(f"Active sprint: {context['active_sprint'].get('name')}")
	if context.get("team_capacity"):
		capacity = context["team_capacity"]
		parts.append(
			f"Team: {capacity.get('team_size', 0)} developers, "
			f"average velocity {capacity.get('average_velocity', 0)} points"
		)
	return " | ".join(parts)


class ContextBuilder:
	"""Intent-driven context assembly through the cache."""

	def __init__(
		self,
		provider: Optional[ContextProvider],
		cache: ContextCache,
		clock: Callable[[], datetime] = now,
	):
		self.provider = provider
		self.cache = cache
		self._clock = clock

	async def build(self, intent: IntentType, entities: Entities, principal: Principal) -> dict[str, Any]:
		"""
		Build the context for `intent`.

		Provider failures do not abort the pipeline: they are logged and the
		returned context carries an `error` field instead.
		"""
		context: dict[str, Any] = {
			"principal": {"id": principal.id, "name": principal.name, "role": principal.role},
			"timestamp": to_iso(self._clock()),
			"intent": intent.value,
		}
		if self.provider is None:
			return context

		product_ids = entities.product_ids
		try:
			await self._load(context, intent, product_ids, principal)
		except Exception as e:
			logger.error(f"Context build failed for {intent.value}: {e}")
			context["error"] = str(e)
		return context

	async def _load(
		self,
		context: dict,
		intent: IntentType,
		product_ids: list[str],
		principal: Principal,
	) -> None:
		provider = self.provider

		if product_ids:
			products = []
			for pid in product_ids:
				product = await self.cache.get_or_load("product", pid, lambda pid=pid: provider.get_product(pid))
				if product:
					products.append(product)
			context["products"] = products
			if len(products) == 1:
				context["primary_product"] = products[0]
		elif intent in PRODUCT_INTENTS:
			context["products"] = await self.cache.get_or_load(
				"products", principal.id, lambda: provider.list_products(principal.id)
			) or []

		scope = product_ids or [None]

		if intent in BACKLOG_INTENTS:
			backlog = []
			for pid in scope:
				items = await self.cache.get_or_load(
					"backlog", pid or ALL_PRODUCTS, lambda pid=pid: provider.get_backlog(pid)
				)
				backlog.extend(items or [])
			context["backlog"] = backlog
			context["backlog_stats"] = backlog_stats(backlog)

		if intent in SPRINT_INTENTS:
			sprints = []
			for pid in scope:
				found = await self.cache.get_or_load(
					"sprints", pid or ALL_PRODUCTS, lambda pid=pid: provider.get_sprints(pid)
				)
				sprints.extend(found or [])
			context["sprints"] = sprints
			context["active_sprint"] = find_active_sprint(sprints)

		if intent in STANDARDS_INTENTS:
			context["standards"] = await self.cache.get_or_load("standards", "team", provider.get_standards)

		if intent in CAPACITY_INTENTS and product_ids:
			pid = product_ids[0]
			context["team_capacity"] = await self.cache.get_or_load(
				"team_capacity", pid, lambda: provider.get_team_capacity(pid)
			)
