"""Cache and Action review tools."""

from mcp.server.fastmcp import FastMCP

from ..errors import ForbiddenError
from ..models import Action
from ..runtime import Runtime
from .common import dumps, guarded, principal_from


def action_summary(action: Action) -> dict:
	return {
		"id": action.id,
		"action_type": action.action_type,
		"status": action.status.value,
		"result_status": action.result_status.value if action.result_status else None,
		"authorization_mode": action.authorization_mode.value,
		"approval": action.approval.model_dump(mode="json"),
		"feedback": action.feedback.model_dump(mode="json"),
		"rollback": action.rollback.model_dump(mode="json"),
	}


def register_admin_tools(mcp: FastMCP, runtime: Runtime) -> None:
	"""Register cache and Action review tools."""

	async def reviewable(rt: Runtime, action_id: str, principal_id: str, role: str) -> Action:
		principal = principal_from(principal_id, role)
		action = await rt.actions.get(action_id)
		if action.principal_id != principal.id and not rt.selector.is_operator(principal):
			raise ForbiddenError("Only the requesting principal or an operator can review this action")
		return action

	@mcp.tool()
	@guarded
	async def cache_stats() -> str:
		"""Get context cache hit/miss counters and size."""
		return dumps({"success": True, "cache": runtime.cache.stats()})

	@mcp.tool()
	@guarded
	async def invalidate_cache(product_id: str = "") -> str:
		"""
		Drop cached context. Without product_id the whole cache is cleared.

		Args:
			product_id: Only drop entries for this product
		"""
		if product_id:
			removed = runtime.cache.invalidate_product(product_id)
		else:
			removed = runtime.cache.invalidate_all()
		return dumps({"success": True, "removed": removed})

	@mcp.tool()
	@guarded
	async def action_feedback(
		action_id: str,
		principal_id: str,
		was_helpful: bool,
		rating: int = 0,
		comment: str = "",
	) -> str:
		"""
		Rate the outcome of an action.

		Args:
			action_id: The action (from an orchestrate result)
			principal_id: Must be the principal who made the request
			was_helpful: Whether the result helped
			rating: Optional accuracy rating 1-5 (0 = none)
			comment: Optional comment
		"""
		rt = await runtime.ready()
		action = await rt.actions.add_feedback(
			action_id, principal_from(principal_id).id, was_helpful, rating or None, comment
		)
		return dumps({"success": True, "action": action_summary(action)})

	@mcp.tool()
	@guarded
	async def approve_action(
		action_id: str,
		principal_id: str,
		approve: bool = True,
		reason: str = "",
		role: str = "user",
	) -> str:
		"""
		Approve or reject an action recorded under a delegation that requires approval.

		Args:
			action_id: The action
			principal_id: Reviewer
			approve: True to approve, False to reject
			reason: Rejection reason
			role: The reviewer's role
		"""
		rt = await runtime.ready()
		await reviewable(rt, action_id, principal_id, role)
		if approve:
			action = await rt.actions.approve(action_id, principal_id)
		else:
			action = await rt.actions.reject(action_id, principal_id, reason or "Rejected")
		return dumps({"success": True, "action": action_summary(action)})

	@mcp.tool()
	@guarded
	async def rollback_action(action_id: str, principal_id: str, reason: str, role: str = "user") -> str:
		"""
		Mark an action as rolled back.

		Args:
			action_id: The action
			principal_id: Who rolls it back
			reason: Why
			role: The caller's role
		"""
		rt = await runtime.ready()
		await reviewable(rt, action_id, principal_id, role)
		action = await rt.actions.rollback(action_id, principal_id, reason)
		return dumps({"success": True, "action": action_summary(action)})
