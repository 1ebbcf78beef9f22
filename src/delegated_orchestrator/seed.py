"""Default worker catalogue, registered idempotently by name."""

import logging

from .intent import INTENT_CAPABILITY
from .models import LLMSettings, Worker, WorkerCategory
from .workers import WorkerRepository

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = [
	Worker(
		name="scrum-ai",
		display_name="Scrum AI",
		description="Unified assistant covering backlog, sprint and estimation work.",
		category=WorkerCategory.UNIFIED_SYSTEM,
		capabilities=sorted(set(INTENT_CAPABILITY.values())),
		is_universal=True,
		is_system_worker=True,
		llm=LLMSettings(temperature=0.7, max_tokens=4096),
	),
	Worker(
		name="product-owner-assistant",
		display_name="Product Owner Assistant",
		description="Backlog management: user stories, acceptance criteria and prioritization.",
		category=WorkerCategory.PRODUCT_OWNER,
		capabilities=[
			"create_user_stories",
			"refine_user_stories",
			"generate_acceptance_criteria",
			"prioritize_backlog",
			"analyze_backlog",
			"analyze_business_value",
			"suggest_sprint_goal",
			"suggest_improvements",
			"generate_reports",
		],
		llm=LLMSettings(model="gpt-4", max_tokens=2000),
	),
	Worker(
		name="scrum-master-assistant",
		display_name="Scrum Master Assistant",
		description="Sprint planning, sprint goals and progress reports.",
		category=WorkerCategory.SCRUM_MASTER,
		capabilities=["plan_sprint", "suggest_sprint_goal", "generate_reports"],
		llm=LLMSettings(model="gpt-4", max_tokens=2000),
	),
	Worker(
		name="developer-assistant",
		display_name="Developer Assistant",
		description="Story point estimation and technical refinement.",
		category=WorkerCategory.DEVELOPER,
		capabilities=["estimate_stories", "refine_user_stories", "generate_acceptance_criteria"],
		llm=LLMSettings(model="gpt-4", temperature=0.6, max_tokens=2000),
	),
]


async def seed_workers(workers: WorkerRepository) -> list[Worker]:
	"""Register every default worker that is not yet present. Returns the newly created ones."""
	created = []
	for template in DEFAULT_WORKERS:
		if await workers.get_by_name(template.name) is not None:
			continue
		created.append(await workers.create(template.model_copy(deep=True)))
	if created:
		logger.info(f"Seeded {len(created)} workers: {', '.join(w.name for w in created)}")
	return created
