"""Concrete worker variants, keyed by WorkerCategory."""

from typing import Optional

from ..errors import ExecutionError
from ..models import IntentType, Worker, WorkerCategory
from .base import BaseWorker, LanguageModelProvider

WORKER_TYPES: dict[WorkerCategory, type[BaseWorker]] = {}


def register_worker_type(cls: type[BaseWorker]) -> type[BaseWorker]:
	"""Class decorator adding a variant to the category dispatch table."""
	WORKER_TYPES[cls.category] = cls
	return cls


@register_worker_type
class ProductOwnerWorker(BaseWorker):
	category = WorkerCategory.PRODUCT_OWNER
	role_description = "You are an experienced product owner managing a product backlog."
	tasks = {
		IntentType.CREATE_USER_STORY: "Write well-formed user stories with acceptance criteria and priority.",
		IntentType.REFINE_USER_STORY: "Refine the referenced user stories: clarify scope, split if too large.",
		IntentType.GENERATE_ACCEPTANCE_CRITERIA: "Write testable acceptance criteria in Given/When/Then form.",
		IntentType.PRIORITIZE_BACKLOG: "Order the backlog by value, risk and dependencies; justify the order.",
		IntentType.ANALYZE_BACKLOG: "Summarize backlog health: size, readiness, gaps and risks.",
		IntentType.ANALYZE_BUSINESS_VALUE: "Assess the business value and expected impact of the items.",
		IntentType.SUGGEST_SPRINT_GOAL: "Propose a concise sprint goal and the stories that support it.",
		IntentType.SUGGEST_IMPROVEMENTS: "Suggest concrete improvements to the backlog and its stories.",
		IntentType.GENERATE_REPORT: "Write a stakeholder report on backlog and sprint progress.",
	}


@register_worker_type
class ScrumMasterWorker(BaseWorker):
	category = WorkerCategory.SCRUM_MASTER
	role_description = "You are a scrum master facilitating sprint planning for the team."
	tasks = {
		IntentType.PLAN_SPRINT: "Plan the sprint against team capacity; list selected items and risks.",
		IntentType.SUGGEST_SPRINT_GOAL: "Propose a sprint goal the team can commit to.",
		IntentType.GENERATE_REPORT: "Report sprint progress, velocity and impediments.",
	}


@register_worker_type
class DeveloperWorker(BaseWorker):
	category = WorkerCategory.DEVELOPER
	role_description = "You are a senior developer estimating and refining technical work."
	tasks = {
		IntentType.ESTIMATE_STORY: "Estimate story points with reasoning about complexity and risk.",
		IntentType.REFINE_USER_STORY: "Add technical notes and split the story into implementable tasks.",
		IntentType.GENERATE_ACCEPTANCE_CRITERIA: "Write technical acceptance criteria and test notes.",
	}


@register_worker_type
class UnifiedWorker(BaseWorker):
	"""Universal handler accepting every domain intent."""

	category = WorkerCategory.UNIFIED_SYSTEM
	role_description = "You are a unified agile assistant covering product, process and technical work."
	tasks = {
		**ProductOwnerWorker.tasks,
		**ScrumMasterWorker.tasks,
		IntentType.ESTIMATE_STORY: DeveloperWorker.tasks[IntentType.ESTIMATE_STORY],
	}


def build_worker(record: Worker, provider: Optional[LanguageModelProvider] = None) -> BaseWorker:
	"""Instantiate the variant for a stored worker record."""
	cls = WORKER_TYPES.get(record.category)
	if cls is None and record.is_universal:
		cls = UnifiedWorker
	if cls is None:
		raise ExecutionError(f"Unsupported worker category: {record.category.value}")
	return cls(record, provider)
