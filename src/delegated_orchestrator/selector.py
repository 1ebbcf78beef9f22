"""
Worker Selector - matches an intent to a capable worker the principal has
delegated to.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .intent import capability_for_intent, required_permissions, worker_category_for_intent
from .logging_config import get_audit_logger
from .models import (
	AuthorizationMode,
	Delegation,
	DelegationScope,
	IntentType,
	PermissionGrant,
	Principal,
	Worker,
	WorkerStatus,
)
from .permissions import PERMISSION_NAMES, DelegationEngine, permission_name
from .workers.registry import WorkerRepository

logger = logging.getLogger(__name__)
audit = get_audit_logger()


@dataclass
class Selection:
	worker: Worker
	delegation: Delegation
	authorization_mode: AuthorizationMode = AuthorizationMode.DELEGATION


def operator_delegation(principal: Principal, worker: Worker) -> Delegation:
	"""Synthetic, never persisted delegation with every permission and no scope limits."""
	return Delegation(
		id="",
		principal_id=principal.id,
		worker_id=worker.id,
		permissions=[
			PermissionGrant(permission_key=key, permission_name=name)
			for key, name in PERMISSION_NAMES.items()
		],
		scope=DelegationScope(
			all_products=True,
			max_actions_per_hour=1_000_000,
			max_actions_per_day=1_000_000,
			max_cost_per_day=1_000_000.0,
			can_create=True,
			can_edit=True,
			can_delete=True,
		),
		created_by=principal.id,
		synthetic=True,
	)


def describe(worker: Worker) -> dict:
	return {
		"id": worker.id,
		"name": worker.name,
		"display_name": worker.display_name,
		"category": worker.category.value,
	}


def has_permissions(delegation: Optional[Delegation], required: list[str]) -> bool:
	if delegation is None:
		return False
	return set(required) <= delegation.permission_keys()


class WorkerSelector:
	"""Selects workers for intents and explains how to fix a failed selection."""

	def __init__(
		self,
		workers: WorkerRepository,
		delegations: DelegationEngine,
		operator_roles: Optional[list[str]] = None,
	):
		self.workers = workers
		self.delegations = delegations
		self.operator_roles = set(operator_roles if operator_roles is not None else ["super_admin"])

	def is_operator(self, principal: Principal) -> bool:
		return principal.role in self.operator_roles

	async def select(self, intent: IntentType, principal: Principal) -> Optional[Selection]:
		"""
		Find a worker for `intent`.

		Operators get the first universal worker under a synthetic delegation.
		Everyone else gets the first candidate (universal workers first) whose
		active delegation grants every required permission.
		"""
		category = worker_category_for_intent(intent)
		required = required_permissions(intent)

		if self.is_operator(principal):
			universal = await self.workers.first_universal()
			if universal is not None:
				audit.info(
					f"selection.operator_bypass principal={principal.id} role={principal.role} "
					f"worker={universal.id} intent={intent.value}"
				)
				return Selection(
					worker=universal,
					delegation=operator_delegation(principal, universal),
					authorization_mode=AuthorizationMode.OPERATOR_BYPASS,
				)
			logger.warning("Operator bypass requested but no universal worker is registered")

		candidates = await self.workers.list_candidates(category)
		logger.debug(f"{len(candidates)} candidates for {intent.value} ({category.value}), need {required}")

		for worker in candidates:
			delegation = await self.delegations.get_active_delegation(principal.id, worker.id)
			if delegation is None:
				continue
			if has_permissions(delegation, required):
				return Selection(worker=worker, delegation=delegation)
			logger.debug(f"Delegation to {worker.name} lacks {set(required) - delegation.permission_keys()}")

		return None

	def can_execute_intent(self, worker: Worker, intent: IntentType) -> bool:
		capability = capability_for_intent(intent)
		if capability is None:
			return False
		return capability in worker.capabilities

	def check_compatibility(self, intent: IntentType, worker: Worker) -> dict:
		category = worker_category_for_intent(intent)
		has_capability = self.can_execute_intent(worker, intent)
		category_match = worker.category == category or worker.is_universal
		return {
			"is_compatible": category_match and has_capability,
			"category_match": category_match,
			"has_capability": has_capability,
			"required_category": category.value,
			"actual_category": worker.category.value,
			"required_permissions": required_permissions(intent),
		}

	async def suggest_worker(
		self,
		intent: IntentType,
		principal: Principal,
		product_id: Optional[str] = None,
	) -> dict:
		"""
		Propose a worker and the delegation steps that would make `select` succeed.

		Never proposes steps when a sufficient delegation already exists.
		"""
		category = worker_category_for_intent(intent)
		required = required_permissions(intent)
		candidates = await self.workers.list_candidates(category)

		if not candidates:
			return {
				"suggested": None,
				"has_delegation": False,
				"reason": f"No active workers of category '{category.value}'",
				"worker_category": category.value,
				"required_permissions": required,
			}

		# Prefer a worker of the exact category over a universal one
		suggested = next((w for w in candidates if w.category == category), candidates[0])
		worker_info = describe(suggested)

		for worker in candidates:
			existing = await self.delegations.get_active_delegation(principal.id, worker.id)
			if has_permissions(existing, required):
				return {
					"suggested": describe(worker),
					"has_delegation": True,
					"reason": "An active delegation with the required permissions already exists",
					"delegation_id": existing.id,
				}

		existing = await self.delegations.get_active_delegation(principal.id, suggested.id)
		scope = {"products": [product_id]} if product_id else {}

		if existing is not None:
			missing = sorted(set(required) - existing.permission_keys())
			permissions = sorted(existing.permission_keys() | set(required))
			steps = [
				{
					"tool": "revoke_delegation",
					"arguments": {"delegation_id": existing.id, "reason": "Replacing with broader permissions"},
				},
				{
					"tool": "create_delegation",
					"arguments": {"worker_id": suggested.id, "permissions": permissions, "scope": scope},
				},
			]
			reason = f"The active delegation lacks: {', '.join(missing)}"
		else:
			missing = required
			steps = [
				{
					"tool": "create_delegation",
					"arguments": {"worker_id": suggested.id, "permissions": required, "scope": scope},
				},
			]
			reason = "Delegate permissions to this worker first"

		return {
			"suggested": worker_info,
			"has_delegation": False,
			"reason": reason,
			"worker_category": category.value,
			"required_permissions": required,
			"missing_permissions": list(missing),
			"permission_names": {key: permission_name(key) for key in required},
			"delegation_instructions": steps,
		}

	async def available_workers(self, principal: Principal) -> list[dict]:
		"""Active workers the principal's role may use, with delegation status."""
		workers = await self.workers.list_workers(status=WorkerStatus.ACTIVE)
		result = []
		for worker in workers:
			if not worker.can_be_used_by(principal.role):
				continue
			delegation = await self.delegations.get_active_delegation(principal.id, worker.id)
			result.append({
				"id": worker.id,
				"name": worker.name,
				"display_name": worker.display_name,
				"category": worker.category.value,
				"description": worker.description,
				"capabilities": worker.capabilities,
				"is_universal": worker.is_universal,
				"has_delegation": delegation is not None,
				"delegation_id": delegation.id if delegation else None,
				"delegated_permissions": sorted(delegation.permission_keys()) if delegation else [],
			})
		return result
