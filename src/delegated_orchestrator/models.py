"""
Domain Models - Pydantic schemas for workers, delegations and audit records.

Defines the durable entities (Worker, Delegation, Action, Session,
QueueJob) and the value objects passed between pipeline stages
(Classification, AuthorizationDecision, OrchestrationResult).
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def now() -> datetime:
	"""Current local time; daily quota windows follow the local calendar day."""
	return datetime.now()


def to_iso(value: Optional[datetime]) -> Optional[str]:
	"""Fixed-width ISO timestamp so lexical order equals chronological order."""
	if value is None:
		return None
	return value.isoformat(timespec="microseconds")


def as_local(value: Optional[datetime]) -> Optional[datetime]:
	"""Offset-aware timestamps are converted to naive local time, the form every store compares in."""
	if value is None or value.tzinfo is None:
		return value
	return value.astimezone().replace(tzinfo=None)


def from_iso(value: Optional[str]) -> Optional[datetime]:
	if not value:
		return None
	return datetime.fromisoformat(value)


class IntentType(str, Enum):
	"""Closed set of request classifications."""
	CREATE_USER_STORY = "create_user_story"
	REFINE_USER_STORY = "refine_user_story"
	PRIORITIZE_BACKLOG = "prioritize_backlog"
	ANALYZE_BACKLOG = "analyze_backlog"
	SUGGEST_SPRINT_GOAL = "suggest_sprint_goal"
	PLAN_SPRINT = "plan_sprint"
	ESTIMATE_STORY = "estimate_story"
	ANALYZE_BUSINESS_VALUE = "analyze_business_value"
	GENERATE_ACCEPTANCE_CRITERIA = "generate_acceptance_criteria"
	SUGGEST_IMPROVEMENTS = "suggest_improvements"
	GENERATE_REPORT = "generate_report"
	GENERAL_QUESTION = "general_question"
	CLARIFICATION_NEEDED = "clarification_needed"


class WorkerCategory(str, Enum):
	PRODUCT_OWNER = "product_owner"
	SCRUM_MASTER = "scrum_master"
	DEVELOPER = "developer"
	TESTER = "tester"
	CUSTOM = "custom"
	UNIFIED_SYSTEM = "unified_system"


class WorkerStatus(str, Enum):
	ACTIVE = "active"
	INACTIVE = "inactive"
	TRAINING = "training"
	DEPRECATED = "deprecated"


class DelegationStatus(str, Enum):
	ACTIVE = "active"
	SUSPENDED = "suspended"
	REVOKED = "revoked"
	EXPIRED = "expired"


class ChangeType(str, Enum):
	CREATED = "created"
	UPDATED = "updated"
	SUSPENDED = "suspended"
	REACTIVATED = "reactivated"
	REVOKED = "revoked"
	EXPIRED = "expired"


class ActionStatus(str, Enum):
	PENDING = "pending"
	COMPLETED = "completed"
	FAILED = "failed"


class ActionCategory(str, Enum):
	CREATION = "creation"
	MODIFICATION = "modification"
	DELETION = "deletion"
	ANALYSIS = "analysis"
	CONSULTATION = "consultation"


class ActionResultStatus(str, Enum):
	SUCCESS = "success"
	SIMULATED = "simulated"
	FAILURE = "failure"


class AuthorizationMode(str, Enum):
	DELEGATION = "delegation"
	OPERATOR_BYPASS = "operator_bypass"


class SessionStatus(str, Enum):
	ACTIVE = "active"
	COMPLETED = "completed"
	EXPIRED = "expired"
	ERROR = "error"


class MessageRole(str, Enum):
	SYSTEM = "system"
	USER = "user"
	ASSISTANT = "assistant"


class JobStatus(str, Enum):
	WAITING = "waiting"
	ACTIVE = "active"
	COMPLETED = "completed"
	FAILED = "failed"
	DELAYED = "delayed"


class OrchestrationStatus(str, Enum):
	"""Terminal outcome of one pipeline run."""
	SUCCESS = "success"
	NEEDS_CLARIFICATION = "needs_clarification"
	CONVERSATIONAL = "conversational"
	NO_AGENT_AVAILABLE = "no_agent_available"
	DENIED = "denied"
	ERROR = "error"


# ---------------------------------------------------------------------------
# Principals and workers
# ---------------------------------------------------------------------------

class Principal(BaseModel):
	"""The authenticated actor issuing a request."""
	id: str
	role: str = "user"
	name: str = ""
	email: str = ""


class WorkerQuotas(BaseModel):
	max_requests_per_hour: int = 100
	max_tokens_per_day: int = 100_000
	max_cost_per_day: float = 10.0


class LLMSettings(BaseModel):
	provider: str = "openai"
	model: str = "gpt-4-turbo"
	temperature: float = Field(default=0.7, ge=0, le=2)
	max_tokens: int = 4096


class WorkerMetrics(BaseModel):
	total_interactions: int = 0
	successful_actions: int = 0
	failed_actions: int = 0
	total_tokens_used: int = 0
	total_cost: float = 0.0
	average_response_time_ms: float = 0.0
	last_used_at: Optional[datetime] = None


class Worker(BaseModel):
	"""A capability-bound executor registered in the store."""
	id: str = ""
	name: str
	display_name: str
	description: str = ""
	category: WorkerCategory
	status: WorkerStatus = WorkerStatus.ACTIVE
	version: str = "1.0.0"
	capabilities: list[str] = Field(default_factory=list)
	quotas: WorkerQuotas = Field(default_factory=WorkerQuotas)
	allowed_roles: list[str] = Field(default_factory=list)
	is_universal: bool = False
	is_system_worker: bool = False
	llm: LLMSettings = Field(default_factory=LLMSettings)
	metrics: WorkerMetrics = Field(default_factory=WorkerMetrics)
	created_at: datetime = Field(default_factory=now)
	updated_at: datetime = Field(default_factory=now)

	def can_be_used_by(self, role: str) -> bool:
		if not self.allowed_roles:
			return True
		return role in self.allowed_roles


class WorkerRef(BaseModel):
	id: str
	name: str
	category: WorkerCategory


# ---------------------------------------------------------------------------
# Delegations
# ---------------------------------------------------------------------------

class PermissionGrant(BaseModel):
	permission_key: str
	permission_name: str = ""
	granted_at: datetime = Field(default_factory=now)


class DelegationScope(BaseModel):
	"""Resource scope, quotas and capability flags of a delegation."""
	products: list[str] = Field(default_factory=list)
	all_products: bool = True
	sprints: list[str] = Field(default_factory=list)
	max_actions_per_hour: int = Field(default=50, ge=0)
	max_actions_per_day: int = Field(default=200, ge=0)
	max_cost_per_day: float = Field(default=5.0, ge=0)
	can_create: bool = True
	can_edit: bool = True
	can_delete: bool = False
	requires_approval: bool = False


class DelegationUsage(BaseModel):
	total_actions: int = 0
	successful_actions: int = 0
	failed_actions: int = 0
	total_cost: float = 0.0
	last_used_at: Optional[datetime] = None


class HistoryEntry(BaseModel):
	"""One append-only row of a delegation's change log."""
	delegation_id: str
	change_type: ChangeType
	description: str = ""
	changed_by: Optional[str] = None
	changed_at: datetime = Field(default_factory=now)
	previous_state: dict[str, Any] = Field(default_factory=dict)


class Delegation(BaseModel):
	"""
	A scoped, time-boxed, quota-limited grant from a principal to a worker.

	Synthetic delegations (operator bypass) are never persisted.
	"""
	id: str = ""
	principal_id: str
	worker_id: str
	permissions: list[PermissionGrant] = Field(default_factory=list)
	scope: DelegationScope = Field(default_factory=DelegationScope)
	status: DelegationStatus = DelegationStatus.ACTIVE
	valid_from: datetime = Field(default_factory=now)
	valid_until: Optional[datetime] = None
	usage: DelegationUsage = Field(default_factory=DelegationUsage)
	suspension_reason: Optional[str] = None
	revocation_reason: Optional[str] = None
	created_by: Optional[str] = None
	updated_by: Optional[str] = None
	created_at: datetime = Field(default_factory=now)
	updated_at: datetime = Field(default_factory=now)
	synthetic: bool = False

	def permission_keys(self) -> set[str]:
		return {p.permission_key for p in self.permissions}

	def has_permission(self, key: str) -> bool:
		return key in self.permission_keys()

	def can_access_product(self, product_id: str) -> bool:
		if self.scope.all_products:
			return True
		return str(product_id) in {str(p) for p in self.scope.products}

	def is_valid(self, at: Optional[datetime] = None) -> bool:
		at = at or now()
		if self.status != DelegationStatus.ACTIVE:
			return False
		if at < self.valid_from:
			return False
		if self.valid_until is not None and at > self.valid_until:
			return False
		return True


class AuthorizationDecision(BaseModel):
	allowed: bool
	reason: Optional[str] = None
	message: str = ""
	delegation: Optional[Delegation] = None
	requires_approval: bool = False


# ---------------------------------------------------------------------------
# Audit actions
# ---------------------------------------------------------------------------

class TokenUsage(BaseModel):
	prompt_tokens: int = 0
	completion_tokens: int = 0
	total_tokens: int = 0


class ActionInput(BaseModel):
	user_prompt: str
	entities: dict[str, Any] = Field(default_factory=dict)
	product_id: Optional[str] = None
	sprint_id: Optional[str] = None
	context_summary: str = ""


class ActionMetrics(BaseModel):
	tokens: TokenUsage = Field(default_factory=TokenUsage)
	cost: float = 0.0
	execution_time_ms: int = 0


class ActionApproval(BaseModel):
	requires_approval: bool = False
	approved: Optional[bool] = None
	approved_by: Optional[str] = None
	approved_at: Optional[datetime] = None
	rejection_reason: Optional[str] = None


class ActionFeedback(BaseModel):
	was_helpful: Optional[bool] = None
	accuracy_rating: Optional[int] = Field(default=None, ge=1, le=5)
	comment: str = ""
	submitted_at: Optional[datetime] = None


class ActionRollback(BaseModel):
	can_rollback: bool = True
	rolled_back: bool = False
	rolled_back_by: Optional[str] = None
	rolled_back_at: Optional[datetime] = None
	reason: Optional[str] = None


class Action(BaseModel):
	"""Audit record of one orchestration attempt."""
	id: str = ""
	principal_id: str
	worker_id: str
	delegation_id: Optional[str] = None
	session_id: Optional[str] = None
	action_type: str
	category: ActionCategory
	intent: Optional[IntentType] = None
	confidence: float = 0.0
	authorization_mode: AuthorizationMode = AuthorizationMode.DELEGATION
	input: ActionInput
	raw_output: Optional[str] = None
	parsed_output: Optional[dict[str, Any]] = None
	status: ActionStatus = ActionStatus.PENDING
	result_status: Optional[ActionResultStatus] = None
	error_message: Optional[str] = None
	metrics: ActionMetrics = Field(default_factory=ActionMetrics)
	approval: ActionApproval = Field(default_factory=ActionApproval)
	feedback: ActionFeedback = Field(default_factory=ActionFeedback)
	rollback: ActionRollback = Field(default_factory=ActionRollback)
	created_at: datetime = Field(default_factory=now)
	completed_at: Optional[datetime] = None

	@property
	def is_finalized(self) -> bool:
		return self.status != ActionStatus.PENDING


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class SessionMessage(BaseModel):
	role: MessageRole
	content: str
	tokens: int = 0
	metadata: dict[str, Any] = Field(default_factory=dict)
	timestamp: datetime = Field(default_factory=now)


class SessionContext(BaseModel):
	product_id: Optional[str] = None
	sprint_id: Optional[str] = None
	workspace: Optional[str] = None
	initial_intent: Optional[str] = None


class SessionMetrics(BaseModel):
	total_messages: int = 0
	total_tokens: int = 0
	total_cost: float = 0.0
	actions_count: int = 0
	duration_seconds: int = 0


class Session(BaseModel):
	"""Bounded multi-turn conversation between a principal and a worker."""
	id: str
	principal_id: str
	worker_id: Optional[str] = None
	status: SessionStatus = SessionStatus.ACTIVE
	context: SessionContext = Field(default_factory=SessionContext)
	messages: list[SessionMessage] = Field(default_factory=list)
	action_ids: list[str] = Field(default_factory=list)
	metrics: SessionMetrics = Field(default_factory=SessionMetrics)
	summary: Optional[str] = None
	error_message: Optional[str] = None
	rating: Optional[int] = Field(default=None, ge=1, le=5)
	feedback_comment: Optional[str] = None
	started_at: datetime = Field(default_factory=now)
	ended_at: Optional[datetime] = None
	expires_at: datetime

	def is_expired(self, at: Optional[datetime] = None) -> bool:
		return (at or now()) > self.expires_at


# ---------------------------------------------------------------------------
# Queue jobs
# ---------------------------------------------------------------------------

class QueueJob(BaseModel):
	"""Durable wrapper around one deferred orchestration call."""
	id: str
	principal_id: str
	principal_role: str = "user"
	input: str
	context: dict[str, Any] = Field(default_factory=dict)
	priority: int = 5
	status: JobStatus = JobStatus.WAITING
	attempts: int = 0
	max_attempts: int = 3
	progress: int = 0
	result: Optional[dict[str, Any]] = None
	failure_reason: Optional[str] = None
	available_at: datetime = Field(default_factory=now)
	created_at: datetime = Field(default_factory=now)
	started_at: Optional[datetime] = None
	finished_at: Optional[datetime] = None

	@property
	def is_terminal(self) -> bool:
		return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


# ---------------------------------------------------------------------------
# Pipeline values
# ---------------------------------------------------------------------------

class Entities(BaseModel):
	product_ids: list[str] = Field(default_factory=list)
	sprint_ids: list[str] = Field(default_factory=list)
	story_ids: list[str] = Field(default_factory=list)
	count: Optional[int] = None
	priorities: list[str] = Field(default_factory=list)
	modules: list[str] = Field(default_factory=list)
	technologies: list[str] = Field(default_factory=list)
	keywords: list[str] = Field(default_factory=list)


class Classification(BaseModel):
	intent: IntentType
	confidence: float = Field(ge=0, le=1)
	matched_pattern: Optional[str] = None
	entities: Entities = Field(default_factory=Entities)
	requires_clarification: bool = False
	suggestions: list[str] = Field(default_factory=list)
	error: Optional[str] = None


class ResultMetrics(BaseModel):
	tokens_used: int = 0
	cost: float = 0.0
	execution_time_ms: int = 0
	simulated: bool = False


class OrchestrationResult(BaseModel):
	"""Status-tagged outcome; callers never parse `message` to branch."""
	status: OrchestrationStatus
	message: str = ""
	intent: Optional[IntentType] = None
	confidence: Optional[float] = None
	worker: Optional[WorkerRef] = None
	result: Optional[dict[str, Any]] = None
	context_summary: Optional[str] = None
	metrics: ResultMetrics = Field(default_factory=ResultMetrics)
	action_id: Optional[str] = None
	authorization_mode: Optional[AuthorizationMode] = None
	reason: Optional[str] = None
	error: Optional[str] = None
	suggestions: list[str] = Field(default_factory=list)
	suggestion: Optional[dict[str, Any]] = None
	required_permissions: list[str] = Field(default_factory=list)
	how_to_delegate: Optional[dict[str, str]] = None
	session_id: Optional[str] = None
	conversation_length: Optional[int] = None

	def to_dict(self) -> dict:
		return self.model_dump(mode="json", exclude_none=True)
