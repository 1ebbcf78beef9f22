"""
Worker contract and language-model provider boundary.

A worker turns (intent, context, entities) into a WorkerResult. Concrete
variants differ only in which intents they accept and how they phrase the
request for the provider; the provider itself is an external collaborator.
"""

import json
import logging
from abc import ABC
from typing import Any, ClassVar, Optional, Protocol

from pydantic import BaseModel, Field

from ..errors import ExecutionError
from ..models import Entities, IntentType, LLMSettings, TokenUsage, Worker, WorkerCategory

logger = logging.getLogger(__name__)


class ProviderResponse(BaseModel):
	content: str
	usage: TokenUsage = Field(default_factory=TokenUsage)


class LanguageModelProvider(Protocol):
	"""Anything that can complete a prompt pair under a model configuration."""

	async def complete(
		self,
		system_prompt: str,
		user_prompt: str,
		settings: LLMSettings,
	) -> ProviderResponse:
		...


class WorkerResult(BaseModel):
	message: str
	data: dict[str, Any] = Field(default_factory=dict)
	token_usage: TokenUsage = Field(default_factory=TokenUsage)


class BaseWorker(ABC):
	"""
	Base class for worker variants.

	Subclasses set `category`, `role_description` and `tasks` (intent ->
	task instruction). Dispatch from a stored Worker record to a variant
	goes through `workers.variants.build_worker`.
	"""

	category: ClassVar[WorkerCategory]
	role_description: ClassVar[str] = "You are an assistant for an agile team."
	tasks: ClassVar[dict[IntentType, str]] = {}

	def __init__(self, record: Worker, provider: Optional[LanguageModelProvider] = None):
		self.record = record
		self.provider = provider

	def supports(self, intent: IntentType) -> bool:
		return intent in self.tasks

	def system_prompt(self) -> str:
		return (
			f"{self.role_description}\n"
			"Answer with a single JSON object containing a short 'message' "
			"for the user and any structured fields the task asks for."
		)

	def build_prompt(self, intent: IntentType, context: dict, entities: Entities) -> str:
		payload = {
			"task": self.tasks[intent],
			"intent": intent.value,
			"entities": entities.model_dump(exclude_defaults=True),
			"context": {k: v for k, v in context.items() if v not in (None, [], {})},
		}
		return json.dumps(payload, ensure_ascii=False, default=str)

	@staticmethod
	def parse(content: str) -> dict[str, Any]:
		try:
			data = json.loads(content)
		except json.JSONDecodeError:
			return {"content": content}
		return data if isinstance(data, dict) else {"content": data}

	async def execute(self, intent: IntentType, context: dict, entities: Entities) -> WorkerResult:
		"""
		Run one task through the provider.

		Raises:
			ExecutionError: unsupported intent, no provider, or provider failure
		"""
		if not self.supports(intent):
			raise ExecutionError(f"{type(self).__name__} does not handle intent {intent.value}")
		if self.provider is None:
			raise ExecutionError("No language-model provider configured")

		logger.debug(f"{self.record.name} executing {intent.value}")
		try:
			response = await self.provider.complete(
				self.system_prompt(),
				self.build_prompt(intent, context, entities),
				self.record.llm,
			)
			data = self.parse(response.content)
			usage = response.usage
		except ExecutionError:
			raise
		except Exception as e:
			raise ExecutionError(f"Provider call failed: {e}") from e

		message = data.get("message") or f"{intent.value.replace('_', ' ').capitalize()} completed"
		return WorkerResult(message=str(message), data=data, token_usage=usage)
