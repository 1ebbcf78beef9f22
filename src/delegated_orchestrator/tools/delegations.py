"""Delegation lifecycle and worker catalogue tools."""

from typing import Optional

from mcp.server.fastmcp import FastMCP

from ..errors import ForbiddenError, ValidationError
from ..models import Delegation, DelegationStatus, WorkerCategory, WorkerStatus
from ..runtime import Runtime
from .common import dumps, guarded, parse_datetime, parse_json_object, principal_from, split_csv


def delegation_summary(delegation: Delegation) -> dict:
	return {
		"id": delegation.id,
		"principal_id": delegation.principal_id,
		"worker_id": delegation.worker_id,
		"status": delegation.status.value,
		"permissions": sorted(delegation.permission_keys()),
		"scope": delegation.scope.model_dump(),
		"valid_from": delegation.valid_from.isoformat(),
		"valid_until": delegation.valid_until.isoformat() if delegation.valid_until else None,
		"usage": delegation.usage.model_dump(mode="json"),
	}


def register_delegation_tools(mcp: FastMCP, runtime: Runtime) -> None:
	"""Register delegation and worker tools."""

	async def owned(rt: Runtime, delegation_id: str, principal_id: str, role: str) -> Delegation:
		principal = principal_from(principal_id, role)
		delegation = await rt.delegations.get(delegation_id)
		if delegation.principal_id != principal.id and not rt.selector.is_operator(principal):
			raise ForbiddenError("Only the delegating principal can change this delegation")
		return delegation

	@mcp.tool()
	@guarded
	async def create_delegation(
		principal_id: str,
		worker_id: str,
		permissions: str,
		scope_json: str = "",
		valid_until: str = "",
	) -> str:
		"""
		Delegate permissions to a worker.

		Args:
			principal_id: The delegating principal
			worker_id: Worker receiving the permissions
			permissions: Comma-separated permission keys (e.g., "canCreateBacklogItems,canViewBacklog")
			scope_json: Optional JSON scope (products, max_actions_per_hour, can_delete, ...)
			valid_until: Optional ISO 8601 expiry
		"""
		rt = await runtime.ready()
		delegation = await rt.delegations.create(
			principal_from(principal_id).id,
			worker_id,
			split_csv(permissions),
			parse_json_object(scope_json, "scope_json"),
			valid_until=parse_datetime(valid_until, "valid_until"),
		)
		return dumps({"success": True, "delegation": delegation_summary(delegation)})

	@mcp.tool()
	@guarded
	async def suspend_delegation(
		delegation_id: str,
		principal_id: str,
		reason: str = "Temporarily suspended",
		role: str = "user",
	) -> str:
		"""
		Suspend an active delegation.

		Args:
			delegation_id: Delegation to suspend
			principal_id: The delegating principal
			reason: Why it is suspended
			role: The caller's role
		"""
		rt = await runtime.ready()
		await owned(rt, delegation_id, principal_id, role)
		delegation = await rt.delegations.suspend(delegation_id, principal_id, reason)
		return dumps({"success": True, "delegation": delegation_summary(delegation)})

	@mcp.tool()
	@guarded
	async def reactivate_delegation(delegation_id: str, principal_id: str, role: str = "user") -> str:
		"""
		Reactivate a suspended delegation.

		Args:
			delegation_id: Delegation to reactivate
			principal_id: The delegating principal
			role: The caller's role
		"""
		rt = await runtime.ready()
		await owned(rt, delegation_id, principal_id, role)
		delegation = await rt.delegations.reactivate(delegation_id, principal_id)
		return dumps({"success": True, "delegation": delegation_summary(delegation)})

	@mcp.tool()
	@guarded
	async def revoke_delegation(
		delegation_id: str,
		principal_id: str,
		reason: str = "Revoked by the principal",
		role: str = "user",
	) -> str:
		"""
		Permanently revoke a delegation.

		Args:
			delegation_id: Delegation to revoke
			principal_id: The delegating principal
			reason: Why it is revoked
			role: The caller's role
		"""
		rt = await runtime.ready()
		await owned(rt, delegation_id, principal_id, role)
		delegation = await rt.delegations.revoke(delegation_id, principal_id, reason)
		return dumps({"success": True, "delegation": delegation_summary(delegation)})

	@mcp.tool()
	@guarded
	async def update_delegation_scope(
		delegation_id: str,
		principal_id: str,
		changes_json: str,
		role: str = "user",
	) -> str:
		"""
		Change scope fields of a delegation.

		Args:
			delegation_id: Delegation to update
			principal_id: The delegating principal
			changes_json: JSON object of scope fields to change (e.g., {"max_actions_per_hour": 10})
			role: The caller's role
		"""
		rt = await runtime.ready()
		changes = parse_json_object(changes_json, "changes_json")
		if not changes:
			raise ValidationError("changes_json must name at least one scope field")
		await owned(rt, delegation_id, principal_id, role)
		delegation = await rt.delegations.update_scope(delegation_id, principal_id, changes)
		return dumps({"success": True, "delegation": delegation_summary(delegation)})

	@mcp.tool()
	@guarded
	async def list_delegations(principal_id: str, status: str = "active") -> str:
		"""
		List a principal's delegations.

		Args:
			principal_id: The delegating principal
			status: active, suspended, revoked, expired or "all"
		"""
		rt = await runtime.ready()
		wanted: Optional[DelegationStatus] = None
		if status and status != "all":
			try:
				wanted = DelegationStatus(status)
			except ValueError:
				raise ValidationError(f"Unknown delegation status: {status}") from None
		delegations = await rt.delegations.list_for_principal(principal_from(principal_id).id, wanted)
		return dumps({
			"success": True,
			"count": len(delegations),
			"delegations": [delegation_summary(d) for d in delegations],
		})

	@mcp.tool()
	@guarded
	async def delegation_history(delegation_id: str) -> str:
		"""
		Get the change history of a delegation, oldest first.

		Args:
			delegation_id: The delegation
		"""
		rt = await runtime.ready()
		entries = await rt.delegations.history(delegation_id)
		return dumps({
			"success": True,
			"delegation_id": delegation_id,
			"history": [e.model_dump(mode="json") for e in entries],
		})

	@mcp.tool()
	@guarded
	async def list_workers(principal_id: str = "", role: str = "user", category: str = "") -> str:
		"""
		List active workers. With a principal_id, only workers that principal may use,
		annotated with delegation status.

		Args:
			principal_id: Optional principal to filter for
			role: The principal's role
			category: Optional worker category filter
		"""
		rt = await runtime.ready()
		wanted: Optional[WorkerCategory] = None
		if category:
			try:
				wanted = WorkerCategory(category)
			except ValueError:
				raise ValidationError(f"Unknown worker category: {category}") from None

		if principal_id:
			workers = await rt.selector.available_workers(principal_from(principal_id, role))
			if wanted is not None:
				workers = [w for w in workers if w["category"] == wanted.value]
		else:
			records = await rt.workers.list_workers(category=wanted, status=WorkerStatus.ACTIVE)
			workers = [
				{
					"id": w.id,
					"name": w.name,
					"display_name": w.display_name,
					"category": w.category.value,
					"capabilities": w.capabilities,
					"is_universal": w.is_universal,
					"available_permissions": rt.delegations.available_permissions(w.category),
				}
				for w in records
			]
		return dumps({"success": True, "count": len(workers), "workers": workers})
