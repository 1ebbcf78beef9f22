"""Deterministic, labeled fallback payloads used when a worker call fails outside production."""

from typing import Any

from ..models import Entities, IntentType


def simulate_response(intent: IntentType, entities: Entities, context: dict, error: str = "") -> dict[str, Any]:
	"""
	Build a simulated result for `intent`.

	The payload always carries `simulated: True` and a note naming the
	original failure so callers cannot mistake it for real worker output.
	"""
	product = (context.get("primary_product") or {}).get("name", "the product")
	backlog = context.get("backlog") or []
	stats = context.get("backlog_stats") or {}

	if intent == IntentType.CREATE_USER_STORY:
		count = entities.count or 1
		message = f"I can help you create {count} user stor{'y' if count == 1 else 'ies'}."
		details = {"would_create": count, "product": product, "modules": entities.modules}
	elif intent == IntentType.REFINE_USER_STORY:
		message = "I can help you refine user stories."
		details = {"backlog_items": len(backlog)}
	elif intent == IntentType.PRIORITIZE_BACKLOG:
		message = "I can help you prioritize the backlog."
		details = {"current_backlog_size": len(backlog), "total_points": stats.get("total_points", 0)}
	elif intent == IntentType.ANALYZE_BACKLOG:
		message = "Current backlog analysis."
		details = {
			"statistics": stats,
			"insights": [
				f"{len(backlog)} items in the backlog",
				f"{stats.get('total_points', 0)} story points in total",
			],
		}
	elif intent == IntentType.SUGGEST_SPRINT_GOAL:
		active = context.get("active_sprint") or {}
		capacity = context.get("team_capacity") or {}
		message = "I can suggest a sprint goal."
		details = {
			"active_sprint": active.get("name", "none active"),
			"team_capacity": capacity.get("average_velocity", "unknown"),
		}
	else:
		message = f"Detected intent: {intent.value}"
		details = {"entities": entities.model_dump(exclude_defaults=True)}

	note = "Worker execution failed; simulated response"
	if error:
		note = f"{note}: {error}"
	return {
		"message": message,
		"details": {"intent": intent.value, **details},
		"simulated": True,
		"note": note,
	}
