"""
Orchestrator - the request pipeline.

CLASSIFY -> SELECT_WORKER -> AUTHORIZE -> BUILD_CONTEXT -> EXECUTE -> RESPOND

Pipeline outcomes (clarification, no worker, denial, execution failure) come
back as status-tagged OrchestrationResults. Only bad input and
infrastructure faults raise.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Optional

from .audit import ActionLog
from .context_builder import ContextBuilder, summarize
from .errors import ExecutionError, ValidationError
from .intent import CLARIFICATION_THRESHOLD, action_for_intent, classify, required_permissions
from .models import (
	Action,
	ActionCategory,
	ActionInput,
	ActionResultStatus,
	ActionStatus,
	AuthorizationMode,
	Classification,
	IntentType,
	MessageRole,
	OrchestrationResult,
	OrchestrationStatus,
	Principal,
	ResultMetrics,
	TokenUsage,
	WorkerRef,
)
from .permissions import DelegationEngine
from .selector import Selection, WorkerSelector
from .sessions import SessionManager
from .workers import LanguageModelProvider, WorkerRepository, build_worker, simulate_response

logger = logging.getLogger(__name__)

HOW_TO_DELEGATE = {
	"step_1": "Identify the worker you need (see `suggestion`)",
	"step_2": "Delegate the required permissions with the create_delegation tool",
	"step_3": "Send your request again",
}

QUICK_ACTIONS = [
	"Crear historia de usuario",
	"Analizar backlog",
	"Priorizar items",
	"Sugerir objetivo de sprint",
]


def check_principal(principal: Principal) -> None:
	if principal is None or not str(principal.id or "").strip():
		raise ValidationError("A principal id is required")


class Orchestrator:
	"""
	Coordinates classification, selection, authorization, context and execution.

	Usage:
		orchestrator = Orchestrator(workers, delegations, selector, builder, actions, sessions)
		result = await orchestrator.execute(Principal(id="u1"), "crea una historia para el login")
	"""

	def __init__(
		self,
		workers: WorkerRepository,
		delegations: DelegationEngine,
		selector: WorkerSelector,
		context_builder: ContextBuilder,
		actions: ActionLog,
		sessions: SessionManager,
		provider: Optional[LanguageModelProvider] = None,
		is_production: bool = False,
		classifier: Callable[..., Classification] = classify,
	):
		self.workers = workers
		self.delegations = delegations
		self.selector = selector
		self.context_builder = context_builder
		self.actions = actions
		self.sessions = sessions
		self.provider = provider
		self.is_production = is_production
		self.classifier = classifier

	async def execute(
		self,
		principal: Principal,
		text: str,
		context: Optional[dict[str, Any]] = None,
		session_id: Optional[str] = None,
	) -> OrchestrationResult:
		"""
		Run one request through the pipeline.

		Raises:
			ValidationError: blank principal id
		"""
		check_principal(principal)
		context = context or {}

		# 1. CLASSIFY
		classification = self.classifier(text, context)
		logger.info(
			f"Classified request from {principal.id} as {classification.intent.value} "
			f"({classification.confidence:.2f})"
		)
		if classification.requires_clarification or classification.confidence < CLARIFICATION_THRESHOLD:
			return OrchestrationResult(
				status=OrchestrationStatus.NEEDS_CLARIFICATION,
				message="Could you be more specific about what you need?",
				intent=classification.intent,
				confidence=classification.confidence,
				suggestions=classification.suggestions,
				error=classification.error,
			)
		if classification.intent == IntentType.GENERAL_QUESTION:
			return OrchestrationResult(
				status=OrchestrationStatus.CONVERSATIONAL,
				message=(
					"Hi! I can create and refine user stories, analyze and prioritize the "
					"backlog, and help plan sprints. What would you like to do?"
				),
				intent=classification.intent,
				confidence=classification.confidence,
			)

		intent = classification.intent

		# 2. SELECT_WORKER
		selection = await self.selector.select(intent, principal)
		if selection is None:
			product_id = context.get("product_id")
			return OrchestrationResult(
				status=OrchestrationStatus.NO_AGENT_AVAILABLE,
				message="You have no worker available for this task.",
				intent=intent,
				confidence=classification.confidence,
				suggestion=await self.selector.suggest_worker(intent, principal, product_id),
				required_permissions=required_permissions(intent),
				how_to_delegate=dict(HOW_TO_DELEGATE),
			)

		# 3. AUTHORIZE
		action_type, category = action_for_intent(intent)
		requires_approval = False
		if selection.authorization_mode == AuthorizationMode.DELEGATION:
			decision = await self.delegations.can_perform_action(
				principal.id, selection.worker.id, action_type, context, selection.worker
			)
			if not decision.allowed:
				return OrchestrationResult(
					status=OrchestrationStatus.DENIED,
					message=decision.message,
					intent=intent,
					confidence=classification.confidence,
					worker=self._ref(selection),
					reason=decision.reason,
				)
			requires_approval = decision.requires_approval

		# 4. BUILD_CONTEXT
		entities = classification.entities
		built = await self.context_builder.build(intent, entities, principal)
		context_summary = summarize(built)

		# 5. EXECUTE
		action = Action(
			principal_id=principal.id,
			worker_id=selection.worker.id,
			delegation_id=selection.delegation.id or None,
			session_id=session_id,
			action_type=action_type,
			category=ActionCategory(category),
			intent=intent,
			confidence=classification.confidence,
			authorization_mode=selection.authorization_mode,
			input=ActionInput(
				user_prompt=text,
				entities=entities.model_dump(exclude_defaults=True),
				product_id=context.get("product_id"),
				sprint_id=context.get("sprint_id"),
				context_summary=context_summary,
			),
		)
		action.approval.requires_approval = requires_approval
		action = await self.actions.create(action)

		return await self._run(selection, classification, action, built, context_summary)

	async def _run(
		self,
		selection: Selection,
		classification: Classification,
		action: Action,
		built: dict,
		context_summary: str,
	) -> OrchestrationResult:
		intent = classification.intent
		worker_record = selection.worker
		started = time.monotonic()

		try:
			worker = build_worker(worker_record, self.provider)
			outcome = await worker.execute(intent, built, classification.entities)
		except asyncio.CancelledError:
			elapsed = int((time.monotonic() - started) * 1000)
			await self.actions.finalize(
				action.id,
				ActionStatus.FAILED,
				ActionResultStatus.FAILURE,
				execution_time_ms=elapsed,
				error_message="Cancelled before the worker finished",
			)
			await self._record(selection, False, 0, 0.0, elapsed)
			raise
		except ExecutionError as e:
			elapsed = int((time.monotonic() - started) * 1000)
			return await self._fail(selection, classification, action, built, context_summary, e, elapsed)
		except Exception as e:
			logger.exception(f"Unexpected error from worker {worker_record.name}")
			elapsed = int((time.monotonic() - started) * 1000)
			error = ExecutionError(f"{type(e).__name__}: {e}")
			return await self._fail(selection, classification, action, built, context_summary, error, elapsed)

		elapsed = int((time.monotonic() - started) * 1000)
		usage = outcome.token_usage
		if not usage.total_tokens:
			usage = TokenUsage(
				prompt_tokens=usage.prompt_tokens,
				completion_tokens=usage.completion_tokens,
				total_tokens=usage.prompt_tokens + usage.completion_tokens,
			)

		action = await self.actions.finalize(
			action.id,
			ActionStatus.COMPLETED,
			ActionResultStatus.SUCCESS,
			raw_output=json.dumps(outcome.data, ensure_ascii=False, default=str),
			parsed_output=outcome.data,
			usage=usage,
			execution_time_ms=elapsed,
		)
		cost = action.metrics.cost
		await self._record(selection, True, usage.total_tokens, cost, elapsed)
		logger.info(
			f"Action {action.id} completed by {worker_record.name} "
			f"({usage.total_tokens} tokens, ${cost:.4f}, {elapsed} ms)"
		)

		return OrchestrationResult(
			status=OrchestrationStatus.SUCCESS,
			message=outcome.message,
			intent=intent,
			confidence=classification.confidence,
			worker=self._ref(selection),
			result={"message": outcome.message, "data": outcome.data},
			context_summary=context_summary,
			metrics=ResultMetrics(tokens_used=usage.total_tokens, cost=cost, execution_time_ms=elapsed),
			action_id=action.id,
			authorization_mode=selection.authorization_mode,
		)

	async def _fail(
		self,
		selection: Selection,
		classification: Classification,
		action: Action,
		built: dict,
		context_summary: str,
		error: ExecutionError,
		elapsed: int,
	) -> OrchestrationResult:
		intent = classification.intent
		logger.error(f"Worker {selection.worker.name} failed on {intent.value}: {error}")

		await self.actions.finalize(
			action.id,
			ActionStatus.FAILED,
			ActionResultStatus.FAILURE if self.is_production else ActionResultStatus.SIMULATED,
			execution_time_ms=elapsed,
			error_message=str(error),
		)
		await self._record(selection, False, 0, 0.0, elapsed)

		if self.is_production:
			return OrchestrationResult(
				status=OrchestrationStatus.ERROR,
				message="The worker could not complete the request",
				intent=intent,
				confidence=classification.confidence,
				worker=self._ref(selection),
				error=str(error),
				action_id=action.id,
				authorization_mode=selection.authorization_mode,
			)

		simulated = simulate_response(intent, classification.entities, built, str(error))
		return OrchestrationResult(
			status=OrchestrationStatus.SUCCESS,
			message=simulated["message"],
			intent=intent,
			confidence=classification.confidence,
			worker=self._ref(selection),
			result=simulated,
			context_summary=context_summary,
			metrics=ResultMetrics(execution_time_ms=elapsed, simulated=True),
			action_id=action.id,
			authorization_mode=selection.authorization_mode,
		)

	async def _record(self, selection: Selection, success: bool, tokens: int, cost: float, elapsed: int) -> None:
		if not selection.delegation.synthetic:
			await self.delegations.record_usage(selection.delegation.id, success, cost)
		await self.workers.record_outcome(selection.worker.id, success, tokens, cost, elapsed)

	@staticmethod
	def _ref(selection: Selection) -> WorkerRef:
		worker = selection.worker
		return WorkerRef(id=worker.id, name=worker.name, category=worker.category)

	async def chat(
		self,
		principal: Principal,
		text: str,
		session_id: Optional[str] = None,
		context: Optional[dict[str, Any]] = None,
	) -> OrchestrationResult:
		"""
		Run a request as one turn of a session.

		Starts a new session when `session_id` is not given. The session's
		product and sprint fill in whatever the request context leaves out.
		"""
		check_principal(principal)
		context = dict(context or {})

		if session_id:
			session = await self.sessions.get_owned(session_id, principal.id)
		else:
			session = await self.sessions.create(principal.id, context)

		for key in ("product_id", "sprint_id"):
			value = getattr(session.context, key)
			if value and not context.get(key):
				context[key] = value

		await self.sessions.append_message(session.id, MessageRole.USER, text)
		result = await self.execute(principal, text, context, session_id=session.id)

		if result.worker is not None and result.action_id:
			await self.sessions.bind_worker(session.id, result.worker.id)
			await self.sessions.add_action(session.id, result.action_id)

		reply = (result.result or {}).get("message") or result.message
		length = await self.sessions.append_message(
			session.id,
			MessageRole.ASSISTANT,
			reply,
			tokens=result.metrics.tokens_used,
			cost=result.metrics.cost,
			metadata={
				"status": result.status.value,
				"intent": result.intent.value if result.intent else None,
				"action_id": result.action_id,
			},
		)

		result.session_id = session.id
		result.conversation_length = length
		return result

	async def suggestions(self, principal: Principal, context: Optional[dict[str, Any]] = None) -> dict:
		"""Workers the principal can use plus actions that fit the current context."""
		check_principal(principal)
		context = context or {}
		available = await self.selector.available_workers(principal)

		suggested = []
		if context.get("product_id"):
			suggested.extend([
				{
					"action": "create_user_story",
					"label": "Crear historia de usuario",
					"example": "Crea una historia para exportar reportes a PDF",
				},
				{
					"action": "analyze_backlog",
					"label": "Analizar backlog",
					"example": "¿Cómo está mi backlog?",
				},
				{
					"action": "prioritize_backlog",
					"label": "Priorizar backlog",
					"example": "Ayúdame a priorizar el backlog",
				},
			])
		if context.get("sprint_id"):
			suggested.append({
				"action": "suggest_sprint_goal",
				"label": "Sugerir objetivo de sprint",
				"example": "¿Qué objetivo debería tener mi sprint?",
			})

		return {
			"status": "success",
			"available_workers": available,
			"suggestions": suggested,
			"quick_actions": list(QUICK_ACTIONS),
		}
