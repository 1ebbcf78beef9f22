"""
Intent Classifier - maps free text to a closed set of backlog/sprint intents.

Classification is a pure function of the text and the static tables in this
module: conversational phrases short-circuit first, then every intent's
pattern set is scored and the best ratio wins.
"""

import logging
import re
from typing import Any, Optional

from .models import Classification, Entities, IntentType, WorkerCategory

logger = logging.getLogger(__name__)

CLARIFICATION_THRESHOLD = 0.6
CONVERSATIONAL_CONFIDENCE = 0.9
FALLBACK_CONFIDENCE = 0.5

# Greetings and open questions; matched before any domain pattern
CONVERSATIONAL_PATTERNS = [
	r"^\s*(hola|hello|hi|hey|buenas|buenos\s+d[ií]as|buenas\s+(tardes|noches))\b[\s!.,¡]*$",
	r"^\s*¿?\s*(qu[eé]\s+es|what\s+is|what's)\b",
	r"^\s*(expl[ií]ca(me)?|explain)\b",
	r"^\s*(ayuda|help)\s*[!?.]*$",
	r"^\s*(gracias|thanks|thank\s+you)\b",
]

# Order matters: ties keep the first intent in this table
INTENT_PATTERNS: dict[IntentType, list[str]] = {
	IntentType.CREATE_USER_STORY: [
		r"crear.*historia",
		r"\bcrea\b.*historia",
		r"nueva.*historia",
		r"agregar.*historia",
		r"necesito.*historia",
		r"quiero.*historia",
		r"genera.*historia",
		r"hacer.*historia",
		r"necesito.*feature",
		r"nueva.*funcionalidad",
		r"implementar.*funcionalidad",
	],
	IntentType.REFINE_USER_STORY: [
		r"refinar.*historia",
		r"mejorar.*historia",
		r"detallar.*historia",
		r"completar.*historia",
		r"ampliar.*historia",
		r"expandir.*historia",
	],
	IntentType.PRIORITIZE_BACKLOG: [
		r"priorizar",
		r"ordenar.*backlog",
		r"organizar.*backlog",
		r"qu[eé].*primero",
		r"qu[eé].*importante",
		r"importancia",
		r"urgente",
		r"orden.*prioridad",
	],
	IntentType.ANALYZE_BACKLOG: [
		r"analizar.*backlog",
		r"revisar.*backlog",
		r"estado.*backlog",
		r"m[eé]tricas.*backlog",
		r"c[oó]mo.*est[aá].*backlog",
		r"resumen.*backlog",
	],
	IntentType.SUGGEST_SPRINT_GOAL: [
		r"objetivo.*sprint",
		r"meta.*sprint",
		r"sprint goal",
		r"proponer.*objetivo",
		r"sugerir.*objetivo",
		r"qu[eé].*objetivo.*sprint",
	],
	IntentType.PLAN_SPRINT: [
		r"planificar.*sprint",
		r"planear.*sprint",
		r"plan.*sprint",
		r"preparar.*sprint",
		r"organizar.*sprint",
	],
	IntentType.ESTIMATE_STORY: [
		r"estimar",
		r"puntos.*historia",
		r"cu[aá]nto.*tiempo",
		r"esfuerzo",
		r"complejidad",
	],
	IntentType.ANALYZE_BUSINESS_VALUE: [
		r"valor.*negocio",
		r"business value",
		r"retorno.*inversi[oó]n",
		r"\broi\b",
		r"impacto.*negocio",
		r"beneficio",
	],
	IntentType.GENERATE_ACCEPTANCE_CRITERIA: [
		r"criterios.*aceptaci[oó]n",
		r"acceptance criteria",
		r"condiciones.*aceptaci[oó]n",
		r"definir.*criterios",
		r"generar.*criterios",
	],
	IntentType.SUGGEST_IMPROVEMENTS: [
		r"mejorar",
		r"sugerencias",
		r"recomendaciones",
		r"optimizar",
		r"c[oó]mo.*mejor",
	],
	IntentType.GENERATE_REPORT: [
		r"reporte",
		r"informe",
		r"resumen",
		r"dashboard",
		r"estad[ií]sticas",
		r"m[eé]tricas",
	],
}

_COMPILED = {
	intent: [re.compile(p, re.IGNORECASE) for p in patterns]
	for intent, patterns in INTENT_PATTERNS.items()
}
_CONVERSATIONAL = [re.compile(p, re.IGNORECASE) for p in CONVERSATIONAL_PATTERNS]

COUNT_RE = re.compile(r"(\d+)\s*(historias|stories|items|tareas|features|funcionalidades)", re.IGNORECASE)
MODULE_RE = re.compile(r"para\s+(?:el\s+)?(?:m[oó]dulo|feature|funcionalidad)\s+(?:de\s+)?(\w+)", re.IGNORECASE)

PRIORITY_KEYWORDS = {
	"alta": ["alta", "high", "crítica", "urgente", "importante"],
	"media": ["media", "medium", "normal"],
	"baja": ["baja", "low", "menor"],
}

TECHNOLOGY_KEYWORDS = [
	"api", "frontend", "backend", "react", "node", "python", "mongodb",
	"postgres", "docker", "login", "auth", "pagos", "payments", "dashboard",
	"mobile", "notificaciones", "reportes",
]

STOPWORDS = {"para", "crear", "nueva", "necesito", "quiero", "hacer", "tiene"}
MAX_KEYWORDS = 5

DEFAULT_SUGGESTIONS = [
	"Crear una nueva historia de usuario",
	"Priorizar el backlog actual",
	"Analizar el estado del backlog",
	"Sugerir objetivo para el próximo sprint",
	"Refinar una historia existente",
	"Generar criterios de aceptación",
	"Analizar valor de negocio",
]

REQUIRED_PERMISSIONS: dict[IntentType, list[str]] = {
	IntentType.CREATE_USER_STORY: ["canCreateBacklogItems"],
	IntentType.REFINE_USER_STORY: ["canEditBacklogItems"],
	IntentType.PRIORITIZE_BACKLOG: ["canPrioritizeBacklog"],
	IntentType.ANALYZE_BACKLOG: ["canViewBacklog"],
	IntentType.SUGGEST_SPRINT_GOAL: ["canViewSprints"],
	IntentType.PLAN_SPRINT: ["canEditSprints"],
	IntentType.ESTIMATE_STORY: ["canEditBacklogItems"],
	IntentType.ANALYZE_BUSINESS_VALUE: ["canViewBacklog"],
	IntentType.GENERATE_ACCEPTANCE_CRITERIA: ["canEditBacklogItems"],
	IntentType.SUGGEST_IMPROVEMENTS: ["canViewBacklog"],
	IntentType.GENERATE_REPORT: ["canViewBacklog", "canViewSprints"],
}

WORKER_CATEGORY: dict[IntentType, WorkerCategory] = {
	IntentType.PLAN_SPRINT: WorkerCategory.SCRUM_MASTER,
	IntentType.ESTIMATE_STORY: WorkerCategory.DEVELOPER,
}

INTENT_CAPABILITY: dict[IntentType, str] = {
	IntentType.CREATE_USER_STORY: "create_user_stories",
	IntentType.REFINE_USER_STORY: "refine_user_stories",
	IntentType.PRIORITIZE_BACKLOG: "prioritize_backlog",
	IntentType.ANALYZE_BACKLOG: "analyze_backlog",
	IntentType.SUGGEST_SPRINT_GOAL: "suggest_sprint_goal",
	IntentType.PLAN_SPRINT: "plan_sprint",
	IntentType.ESTIMATE_STORY: "estimate_stories",
	IntentType.ANALYZE_BUSINESS_VALUE: "analyze_business_value",
	IntentType.GENERATE_ACCEPTANCE_CRITERIA: "generate_acceptance_criteria",
	IntentType.SUGGEST_IMPROVEMENTS: "suggest_improvements",
	IntentType.GENERATE_REPORT: "generate_reports",
}

# intent -> (action_type, category) recorded on the Action
ACTION_MAPPING: dict[IntentType, tuple[str, str]] = {
	IntentType.CREATE_USER_STORY: ("create_backlog_item", "creation"),
	IntentType.REFINE_USER_STORY: ("refine_user_story", "modification"),
	IntentType.GENERATE_ACCEPTANCE_CRITERIA: ("generate_acceptance_criteria", "creation"),
	IntentType.PRIORITIZE_BACKLOG: ("prioritize_backlog", "modification"),
	IntentType.ANALYZE_BACKLOG: ("analyze_backlog", "analysis"),
	IntentType.ANALYZE_BUSINESS_VALUE: ("analyze_business_value", "analysis"),
	IntentType.SUGGEST_SPRINT_GOAL: ("generate_sprint_goal", "consultation"),
	IntentType.GENERATE_REPORT: ("generate_report", "analysis"),
	IntentType.PLAN_SPRINT: ("plan_sprint", "creation"),
	IntentType.ESTIMATE_STORY: ("estimate_story", "consultation"),
	IntentType.SUGGEST_IMPROVEMENTS: ("suggest_improvements", "consultation"),
}
DEFAULT_ACTION = ("consultation", "consultation")


def classify(text: Any, context: Optional[dict] = None) -> Classification:
	"""
	Classify a request.

	Args:
		text: Raw user input
		context: Optional ids (product_id, sprint_id) folded into the entities

	Returns:
		Classification with intent, confidence, matched pattern and entities
	"""
	context = context or {}
	if not isinstance(text, str) or not text.strip():
		return Classification(
			intent=IntentType.CLARIFICATION_NEEDED,
			confidence=0.0,
			error="invalid input",
		)

	lowered = text.lower().strip()
	entities = extract_entities(text, context)

	for pattern in _CONVERSATIONAL:
		if pattern.search(lowered):
			return Classification(
				intent=IntentType.GENERAL_QUESTION,
				confidence=CONVERSATIONAL_CONFIDENCE,
				matched_pattern=pattern.pattern,
				entities=entities,
			)

	best: Optional[tuple[IntentType, float, str]] = None
	highest = 0.0
	for intent, regexes in _COMPILED.items():
		matched = [r.pattern for r in regexes if r.search(lowered)]
		if not matched:
			continue
		score = len(matched) / len(regexes)
		if score > highest:
			highest = score
			best = (intent, min(0.7 + score * 0.3, 0.95), matched[-1])

	if best is None or best[1] < CLARIFICATION_THRESHOLD:
		logger.debug(f"No clear intent for input: {lowered[:60]!r}")
		return Classification(
			intent=IntentType.GENERAL_QUESTION,
			confidence=best[1] if best else FALLBACK_CONFIDENCE,
			entities=entities,
			requires_clarification=True,
			suggestions=suggestions_for(lowered),
		)

	intent, confidence, pattern = best
	return Classification(
		intent=intent,
		confidence=confidence,
		matched_pattern=pattern,
		entities=entities,
	)


def extract_entities(text: str, context: Optional[dict] = None) -> Entities:
	"""Deterministic entity pass: counts, priorities, modules, keywords, ids."""
	context = context or {}
	lowered = text.lower()
	entities = Entities()

	count_match = COUNT_RE.search(text)
	if count_match:
		entities.count = int(count_match.group(1))

	for priority, keywords in PRIORITY_KEYWORDS.items():
		if any(kw in lowered for kw in keywords):
			entities.priorities.append(priority)

	module_match = MODULE_RE.search(text)
	if module_match:
		entities.modules.append(module_match.group(1))

	words = set(re.findall(r"\w+", lowered))
	entities.technologies = [t for t in TECHNOLOGY_KEYWORDS if t in words]

	important = [w for w in lowered.split() if len(w) > 4 and w not in STOPWORDS]
	entities.keywords = important[:MAX_KEYWORDS]

	if context.get("product_id"):
		entities.product_ids.append(str(context["product_id"]))
	if context.get("sprint_id"):
		entities.sprint_ids.append(str(context["sprint_id"]))
	if context.get("story_id"):
		entities.story_ids.append(str(context["story_id"]))

	return entities


def suggestions_for(text: str) -> list[str]:
	"""Ranked suggestions, nudged by the topic the text mentions."""
	text = text.lower()
	if "historia" in text or "story" in text:
		return [
			"Crear una nueva historia de usuario",
			"Refinar una historia existente",
			"Generar criterios de aceptación",
			*DEFAULT_SUGGESTIONS[3:],
		]
	if "sprint" in text:
		return [
			"Sugerir objetivo para el próximo sprint",
			"Planificar sprint",
			"Estimar historias",
			*DEFAULT_SUGGESTIONS[3:],
		]
	return list(DEFAULT_SUGGESTIONS)


def required_permissions(intent: IntentType) -> list[str]:
	return list(REQUIRED_PERMISSIONS.get(intent, ["canViewBacklog"]))


def worker_category_for_intent(intent: IntentType) -> WorkerCategory:
	return WORKER_CATEGORY.get(intent, WorkerCategory.PRODUCT_OWNER)


def capability_for_intent(intent: IntentType) -> Optional[str]:
	return INTENT_CAPABILITY.get(intent)


def action_for_intent(intent: IntentType) -> tuple[str, str]:
	return ACTION_MAPPING.get(intent, DEFAULT_ACTION)
