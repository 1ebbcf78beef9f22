"""Shared test fixtures and helpers for delegated-orchestrator tests."""

import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional

from delegated_orchestrator.config import Config
from delegated_orchestrator.context_builder import StaticContextProvider
from delegated_orchestrator.models import LLMSettings, TokenUsage, Worker, WorkerCategory
from delegated_orchestrator.runtime import Runtime
from delegated_orchestrator.workers import ProviderResponse


def capture_tools(runtime: Any, register_fn: Callable) -> dict:
	"""Register tools on a mock MCP and return the captured tool functions.

	Args:
		runtime: Runtime passed to the registration function
		register_fn: The registration function (e.g., register_delegation_tools)

	Returns:
		Dict mapping tool name to the tool function
	"""
	captured = {}

	class MockMCP:
		def tool(self):
			def decorator(fn):
				captured[fn.__name__] = fn
				return fn
			return decorator

	register_fn(MockMCP(), runtime)
	return captured


class FakeProvider:
	"""Language-model provider returning a canned JSON answer, or failing on demand."""

	def __init__(
		self,
		payload: Optional[dict] = None,
		usage: Optional[TokenUsage] = None,
		error: Optional[Exception] = None,
	):
		self.payload = payload or {"message": "Created 1 user story", "stories": [{"title": "Login"}]}
		self.usage = usage or TokenUsage(prompt_tokens=1000, completion_tokens=500)
		self.error = error
		self.calls: list[tuple[str, str, LLMSettings]] = []

	async def complete(self, system_prompt: str, user_prompt: str, settings: LLMSettings) -> ProviderResponse:
		self.calls.append((system_prompt, user_prompt, settings))
		if self.error is not None:
			raise self.error
		return ProviderResponse(content=json.dumps(self.payload), usage=self.usage)


class FakeClock:
	"""Mutable clock for time-window tests."""

	def __init__(self, start: Optional[datetime] = None):
		self.current = start or datetime(2024, 3, 12, 10, 0, 0)

	def __call__(self) -> datetime:
		return self.current

	def advance(self, **kwargs) -> datetime:
		self.current += timedelta(**kwargs)
		return self.current


def make_config(tmp_path: Path, **overrides) -> Config:
	config = Config(config_dir=tmp_path / "config", data_dir=tmp_path / "data")
	for key, value in overrides.items():
		setattr(config, key, value)
	config.ensure_dirs()
	return config


async def make_runtime(
	tmp_path: Path,
	provider: Any = None,
	context_provider: Any = None,
	clock: Optional[Callable[[], datetime]] = None,
	seed: bool = True,
	**config_overrides,
) -> Runtime:
	"""Build a ready Runtime over a temporary database."""
	config = make_config(tmp_path, **config_overrides)
	kwargs = {"clock": clock} if clock is not None else {}
	runtime = Runtime(config, provider=provider, context_provider=context_provider, **kwargs)
	return await runtime.ready(seed=seed)


def make_worker(
	name: str = "po-worker",
	category: WorkerCategory = WorkerCategory.PRODUCT_OWNER,
	is_universal: bool = False,
	**fields,
) -> Worker:
	return Worker(
		name=name,
		display_name=name.replace("-", " ").title(),
		category=category,
		is_universal=is_universal,
		capabilities=fields.pop("capabilities", ["create_user_stories", "analyze_backlog"]),
		**fields,
	)


def make_context_provider() -> StaticContextProvider:
	"""A small product with a backlog, an active sprint and team capacity."""
	return StaticContextProvider(
		products={"p1": {"id": "p1", "name": "Shop"}},
		backlog={
			"p1": [
				{"id": "s1", "type": "story", "status": "todo", "priority": "high", "story_points": 5},
				{"id": "s2", "type": "story", "status": "done", "priority": "low", "story_points": 3},
				{"id": "b1", "type": "bug", "status": "todo", "priority": "high", "story_points": None},
			],
		},
		sprints={"p1": [{"id": "sp1", "name": "Sprint 7", "status": "in_progress"}]},
		capacity={"p1": {"team_size": 4, "average_velocity": 21}},
		standards={"story_format": "As a <role> I want <goal> so that <benefit>"},
	)
