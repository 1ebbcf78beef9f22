"""
Delegation / Permission Engine.

Features:
- Create scoped, time-boxed, quota-limited delegations (principal -> worker)
- Authorization checks with machine-readable denial reasons
- Lifecycle transitions (suspend, reactivate, revoke, expire) with history
- Usage accounting

At most one active delegation per (principal, worker) is guaranteed by a
partial UNIQUE index, so racing creates cannot both succeed. Quota checks
always read the action log directly.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional, Union

import aiosqlite
from pydantic import ValidationError as PydanticValidationError

from .database import Database
from .errors import (
	DelegationNotFoundError,
	DuplicateDelegationError,
	InvalidTransitionError,
	ValidationError,
	WorkerUnavailableError,
)
from .logging_config import get_audit_logger
from .models import (
	AuthorizationDecision,
	ChangeType,
	Delegation,
	DelegationScope,
	DelegationStatus,
	HistoryEntry,
	PermissionGrant,
	Worker,
	WorkerCategory,
	WorkerStatus,
	as_local,
	now,
	to_iso,
)
from .workers.registry import WorkerRepository, start_of_day

logger = logging.getLogger(__name__)
audit = get_audit_logger()

PERMISSION_NAMES = {
	"canViewBacklog": "View backlog",
	"canCreateBacklogItems": "Create backlog items",
	"canEditBacklogItems": "Edit backlog items",
	"canDeleteBacklogItems": "Delete backlog items",
	"canPrioritizeBacklog": "Prioritize backlog",
	"canViewSprints": "View sprints",
	"canCreateSprints": "Create sprints",
	"canEditSprints": "Edit sprints",
	"canCloseSprints": "Close sprints",
	"canCreateProducts": "Create products",
	"canEditProducts": "Edit products",
	"canViewMetrics": "View metrics",
	"canGenerateReports": "Generate reports",
}

# action_type -> permission key required to perform it (None: no key needed)
ACTION_PERMISSIONS: dict[str, Optional[str]] = {
	"create_backlog_item": "canCreateBacklogItems",
	"update_backlog_item": "canEditBacklogItems",
	"delete_backlog_item": "canDeleteBacklogItems",
	"refine_user_story": "canEditBacklogItems",
	"generate_acceptance_criteria": "canEditBacklogItems",
	"estimate_story": "canEditBacklogItems",
	"prioritize_backlog": "canPrioritizeBacklog",
	"create_sprint": "canCreateSprints",
	"update_sprint": "canEditSprints",
	"plan_sprint": "canEditSprints",
	"generate_sprint_goal": "canViewSprints",
	"analyze_backlog": "canViewBacklog",
	"analyze_business_value": "canViewBacklog",
	"suggest_improvements": "canViewBacklog",
	"generate_report": "canViewBacklog",
	"create_product": "canCreateProducts",
	"update_product": "canEditProducts",
	"consultation": None,
}

# Keys offered when delegating to a worker of a given category, with defaults
CATEGORY_PERMISSIONS: dict[WorkerCategory, list[tuple[str, bool]]] = {
	WorkerCategory.PRODUCT_OWNER: [
		("canViewBacklog", True),
		("canCreateBacklogItems", True),
		("canEditBacklogItems", True),
		("canDeleteBacklogItems", False),
		("canPrioritizeBacklog", True),
		("canViewSprints", True),
		("canCreateSprints", True),
		("canEditSprints", True),
		("canCreateProducts", False),
		("canEditProducts", True),
		("canViewMetrics", True),
		("canGenerateReports", True),
	],
	WorkerCategory.SCRUM_MASTER: [
		("canViewBacklog", True),
		("canCreateBacklogItems", False),
		("canEditBacklogItems", True),
		("canViewSprints", True),
		("canCreateSprints", True),
		("canEditSprints", True),
		("canCloseSprints", True),
		("canViewMetrics", True),
	],
	WorkerCategory.DEVELOPER: [
		("canViewBacklog", True),
		("canEditBacklogItems", True),
		("canViewSprints", True),
		("canViewMetrics", True),
	],
}

SCOPE_FIELDS = set(DelegationScope.model_fields)


def permission_name(key: str) -> str:
	return PERMISSION_NAMES.get(key, key)


def required_permission(action_type: str) -> Optional[str]:
	if action_type in ACTION_PERMISSIONS:
		return ACTION_PERMISSIONS[action_type]
	if action_type.startswith(("analyze_", "generate_")):
		return "canViewBacklog"
	return None


def operation_type(action_type: str) -> str:
	"""Coarse operation class used for the create/edit/delete scope flags."""
	if action_type.startswith("create_"):
		return "create"
	if action_type.startswith(("update_", "edit_")):
		return "edit"
	if action_type.startswith("delete_"):
		return "delete"
	if action_type.startswith(("analyze_", "generate_")):
		return "read"
	return "other"


def build_scope(scope: Union[DelegationScope, dict, None]) -> DelegationScope:
	"""
	Validate a scope. `all_products` defaults to True only when no product
	list is given.
	"""
	if isinstance(scope, DelegationScope):
		return scope
	raw = dict(scope or {})
	unknown = set(raw) - SCOPE_FIELDS
	if unknown:
		raise ValidationError(f"Unknown scope fields: {sorted(unknown)}")
	if "all_products" not in raw:
		raw["all_products"] = not raw.get("products")
	try:
		return DelegationScope.model_validate(raw)
	except PydanticValidationError as e:
		raise ValidationError(f"Invalid scope: {e.errors()[0]['msg']}") from e


def build_grants(permissions: Iterable[Any], at: datetime) -> list[PermissionGrant]:
	grants: list[PermissionGrant] = []
	seen: set[str] = set()
	for perm in permissions:
		if isinstance(perm, PermissionGrant):
			grant = perm
		elif isinstance(perm, str):
			grant = PermissionGrant(permission_key=perm, permission_name=permission_name(perm), granted_at=at)
		elif isinstance(perm, dict) and perm.get("permission_key"):
			grant = PermissionGrant(
				permission_key=perm["permission_key"],
				permission_name=perm.get("permission_name") or permission_name(perm["permission_key"]),
				granted_at=at,
			)
		else:
			raise ValidationError(f"Invalid permission entry: {perm!r}")
		if grant.permission_key not in seen:
			seen.add(grant.permission_key)
			grants.append(grant)
	return grants


def deny(reason: str, message: str) -> AuthorizationDecision:
	return AuthorizationDecision(allowed=False, reason=reason, message=message)


class DelegationEngine:
	"""
	Authorization and lifecycle management for delegations.

	Usage:
		engine = DelegationEngine(db, workers)
		delegation = await engine.create("user-1", worker.id, ["canCreateBacklogItems"])

		decision = await engine.can_perform_action(
			"user-1", worker.id, "create_backlog_item", {"product_id": "p1"}
		)
		if not decision.allowed:
			print(decision.reason)
	"""

	def __init__(
		self,
		db: Database,
		workers: WorkerRepository,
		clock: Callable[[], datetime] = now,
	):
		self.db = db
		self.workers = workers
		self._clock = clock

	# ------------------------------------------------------------------
	# Persistence helpers
	# ------------------------------------------------------------------

	@staticmethod
	async def _fetch(db: aiosqlite.Connection, delegation_id: str) -> Delegation:
		async with db.execute("SELECT data FROM delegations WHERE id = ?", (delegation_id,)) as cursor:
			row = await cursor.fetchone()
		if row is None:
			raise DelegationNotFoundError(f"Delegation not found: {delegation_id}")
		return Delegation.model_validate_json(row["data"])

	@staticmethod
	async def _write(db: aiosqlite.Connection, delegation: Delegation) -> None:
		await db.execute(
			"""
			UPDATE delegations SET status = ?, valid_from = ?, valid_until = ?, data = ?, updated_at = ?
			WHERE id = ?
			""",
			(
				delegation.status.value,
				to_iso(delegation.valid_from),
				to_iso(delegation.valid_until),
				delegation.model_dump_json(),
				to_iso(delegation.updated_at),
				delegation.id,
			),
		)

	@staticmethod
	async def _append_history(db: aiosqlite.Connection, entry: HistoryEntry) -> None:
		await db.execute(
			"""
			INSERT INTO delegation_history
				(delegation_id, change_type, description, changed_by, changed_at, previous_state)
			VALUES (?, ?, ?, ?, ?, ?)
			""",
			(
				entry.delegation_id,
				entry.change_type.value,
				entry.description,
				entry.changed_by,
				to_iso(entry.changed_at),
				json.dumps(entry.previous_state, default=str),
			),
		)

	# ------------------------------------------------------------------
	# Creation and lookup
	# ------------------------------------------------------------------

	async def create(
		self,
		principal_id: str,
		worker_id: str,
		permissions: Iterable[Any],
		scope: Union[DelegationScope, dict, None] = None,
		valid_from: Optional[datetime] = None,
		valid_until: Optional[datetime] = None,
		created_by: Optional[str] = None,
	) -> Delegation:
		"""
		Create an active delegation.

		Raises:
			WorkerNotFoundError: unknown worker
			WorkerUnavailableError: worker is not active
			DuplicateDelegationError: an active delegation already exists for the pair
			ValidationError: malformed permissions, scope or window
		"""
		if not principal_id:
			raise ValidationError("principal_id is required")

		worker = await self.workers.require(worker_id)
		if worker.status != WorkerStatus.ACTIVE:
			raise WorkerUnavailableError(f"Worker {worker.name} is {worker.status.value}")

		valid_from = as_local(valid_from)
		valid_until = as_local(valid_until)
		at = self._clock()
		grants = build_grants(permissions, at)
		if not grants:
			raise ValidationError("At least one permission is required")
		if valid_until is not None and valid_until <= (valid_from or at):
			raise ValidationError("valid_until must be after valid_from")

		delegation = Delegation(
			id=uuid.uuid4().hex[:12],
			principal_id=principal_id,
			worker_id=worker_id,
			permissions=grants,
			scope=build_scope(scope),
			valid_from=valid_from or at,
			valid_until=valid_until,
			created_by=created_by or principal_id,
			updated_by=created_by or principal_id,
			created_at=at,
			updated_at=at,
		)

		async with self.db.connect() as db:
			async with db.execute(
				"SELECT id FROM delegations WHERE principal_id = ? AND worker_id = ? AND status = 'active'",
				(principal_id, worker_id),
			) as cursor:
				if await cursor.fetchone():
					raise DuplicateDelegationError(
						f"Principal {principal_id} already has an active delegation to worker {worker_id}"
					)
			try:
				await db.execute(
					"""
					INSERT INTO delegations
						(id, principal_id, worker_id, status, valid_from, valid_until, data, created_at, updated_at)
					VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
					""",
					(
						delegation.id,
						principal_id,
						worker_id,
						delegation.status.value,
						to_iso(delegation.valid_from),
						to_iso(delegation.valid_until),
						delegation.model_dump_json(),
						to_iso(at),
						to_iso(at),
					),
				)
				await self._append_history(db, HistoryEntry(
					delegation_id=delegation.id,
					change_type=ChangeType.CREATED,
					description="Delegation created",
					changed_by=delegation.created_by,
					changed_at=at,
				))
				await db.commit()
			except aiosqlite.IntegrityError as e:
				await db.rollback()
				raise DuplicateDelegationError(
					f"Principal {principal_id} already has an active delegation to worker {worker_id}"
				) from e

		audit.info(
			f"delegation.created id={delegation.id} principal={principal_id} worker={worker_id} "
			f"permissions={sorted(delegation.permission_keys())}"
		)
		return delegation

	async def get(self, delegation_id: str) -> Delegation:
		async with self.db.connect() as db:
			return await self._fetch(db, delegation_id)

	def is_valid(self, delegation: Delegation, at: Optional[datetime] = None) -> bool:
		return delegation.is_valid(at or self._clock())

	async def get_active_delegation(
		self,
		principal_id: str,
		worker_id: str,
		at: Optional[datetime] = None,
	) -> Optional[Delegation]:
		"""The active, currently valid delegation for the pair, or None."""
		async with self.db.connect() as db:
			async with db.execute(
				"SELECT data FROM delegations WHERE principal_id = ? AND worker_id = ? AND status = 'active'",
				(principal_id, worker_id),
			) as cursor:
				row = await cursor.fetchone()
		if row is None:
			return None
		delegation = Delegation.model_validate_json(row["data"])
		return delegation if self.is_valid(delegation, at) else None

	async def list_for_principal(
		self,
		principal_id: str,
		status: Optional[DelegationStatus] = DelegationStatus.ACTIVE,
	) -> list[Delegation]:
		query = "SELECT data FROM delegations WHERE principal_id = ?"
		params: list = [principal_id]
		if status is not None:
			query += " AND status = ?"
			params.append(status.value)
		query += " ORDER BY created_at DESC"
		async with self.db.connect() as db:
			async with db.execute(query, params) as cursor:
				rows = await cursor.fetchall()
		return [Delegation.model_validate_json(row["data"]) for row in rows]

	async def history(self, delegation_id: str) -> list[HistoryEntry]:
		async with self.db.connect() as db:
			await self._fetch(db, delegation_id)
			async with db.execute(
				"SELECT * FROM delegation_history WHERE delegation_id = ? ORDER BY id",
				(delegation_id,),
			) as cursor:
				rows = await cursor.fetchall()
		return [
			HistoryEntry(
				delegation_id=row["delegation_id"],
				change_type=ChangeType(row["change_type"]),
				description=row["description"] or "",
				changed_by=row["changed_by"],
				changed_at=datetime.fromisoformat(row["changed_at"]),
				previous_state=json.loads(row["previous_state"] or "{}"),
			)
			for row in rows
		]

	def available_permissions(self, category: WorkerCategory) -> list[dict]:
		entries = CATEGORY_PERMISSIONS.get(category)
		if entries is None:
			entries = [(key, False) for key in PERMISSION_NAMES]
		return [
			{"key": key, "name": permission_name(key), "default": default}
			for key, default in entries
		]

	# ------------------------------------------------------------------
	# Authorization
	# ------------------------------------------------------------------

	async def check_limits(
		self,
		delegation: Delegation,
		at: Optional[datetime] = None,
	) -> AuthorizationDecision:
		"""
		Evaluate the delegation's quotas against the action log.

		The hourly limit uses a sliding one-hour window; the daily count and
		daily cost limits use the current local calendar day.
		"""
		at = at or self._clock()
		scope = delegation.scope
		hour_ago = to_iso(at - timedelta(hours=1))
		midnight = to_iso(start_of_day(at))
		pair = (delegation.principal_id, delegation.worker_id)

		async with self.db.connect() as db:
			async with db.execute(
				"SELECT COUNT(*) FROM actions WHERE principal_id = ? AND worker_id = ? AND created_at >= ?",
				(*pair, hour_ago),
			) as cursor:
				hourly = (await cursor.fetchone())[0]
			if hourly >= scope.max_actions_per_hour:
				return deny(
					"hourly_limit_reached",
					f"Limit of {scope.max_actions_per_hour} actions per hour reached",
				)

			async with db.execute(
				"""
				SELECT COUNT(*), COALESCE(SUM(cost), 0) FROM actions
				WHERE principal_id = ? AND worker_id = ? AND created_at >= ?
				""",
				(*pair, midnight),
			) as cursor:
				daily, daily_cost = await cursor.fetchone()

		if daily >= scope.max_actions_per_day:
			return deny(
				"daily_limit_reached",
				f"Limit of {scope.max_actions_per_day} actions per day reached",
			)
		if daily_cost >= scope.max_cost_per_day:
			return deny(
				"daily_cost_limit_reached",
				f"Daily cost limit of ${scope.max_cost_per_day} reached",
			)
		return AuthorizationDecision(allowed=True, delegation=delegation)

	async def can_perform_action(
		self,
		principal_id: str,
		worker_id: str,
		action_type: str,
		context: Optional[dict] = None,
		worker: Optional[Worker] = None,
	) -> AuthorizationDecision:
		"""
		Run the ordered authorization checks; the first failure wins.

		Order: active delegation, delegation quotas, worker quotas,
		permission key, product scope, create/edit/delete flags.
		"""
		context = context or {}
		at = self._clock()

		decision = await self._evaluate(principal_id, worker_id, action_type, context, worker, at)
		if not decision.allowed:
			audit.info(
				f"authorization.denied principal={principal_id} worker={worker_id} "
				f"action={action_type} reason={decision.reason}"
			)
		return decision

	async def _evaluate(
		self,
		principal_id: str,
		worker_id: str,
		action_type: str,
		context: dict,
		worker: Optional[Worker],
		at: datetime,
	) -> AuthorizationDecision:
		delegation = await self.get_active_delegation(principal_id, worker_id, at)
		if delegation is None:
			return deny("no_active_delegation", "No active delegation for this worker")

		limits = await self.check_limits(delegation, at)
		if not limits.allowed:
			return limits

		worker = worker or await self.workers.get(worker_id)
		if worker is not None:
			reason = await self.workers.check_quota(worker, at)
			if reason:
				return deny(reason, f"Worker {worker.name} has reached its own quota")

		required = required_permission(action_type)
		if required and not delegation.has_permission(required):
			return deny("insufficient_permissions", f"Required permission: {required}")

		product_id = context.get("product_id")
		if product_id and not delegation.can_access_product(product_id):
			return deny("product_not_in_scope", "The worker has no access to this product")

		operation = operation_type(action_type)
		if operation == "create" and not delegation.scope.can_create:
			return deny("create_not_allowed", "The delegation does not allow creating items")
		if operation == "edit" and not delegation.scope.can_edit:
			return deny("edit_not_allowed", "The delegation does not allow editing items")
		if operation == "delete" and not delegation.scope.can_delete:
			return deny("delete_not_allowed", "The delegation does not allow deleting items")

		return AuthorizationDecision(
			allowed=True,
			delegation=delegation,
			requires_approval=delegation.scope.requires_approval,
		)

	# ------------------------------------------------------------------
	# Lifecycle
	# ------------------------------------------------------------------

	async def _transition(
		self,
		delegation_id: str,
		allowed_from: set[DelegationStatus],
		to_status: DelegationStatus,
		change_type: ChangeType,
		actor: Optional[str],
		reason: str,
		apply: Optional[Callable[[Delegation], None]] = None,
	) -> Delegation:
		at = self._clock()
		async with self.db.connect() as db:
			await db.execute("BEGIN IMMEDIATE")
			try:
				delegation = await self._fetch(db, delegation_id)
				if delegation.status not in allowed_from:
					raise InvalidTransitionError(
						f"Delegation {delegation_id} is {delegation.status.value}; "
						f"cannot move it to {to_status.value}"
					)
				previous = {"status": delegation.status.value}
				delegation.status = to_status
				delegation.updated_by = actor
				delegation.updated_at = at
				if apply:
					apply(delegation)
				await self._write(db, delegation)
				await self._append_history(db, HistoryEntry(
					delegation_id=delegation_id,
					change_type=change_type,
					description=reason,
					changed_by=actor,
					changed_at=at,
					previous_state=previous,
				))
				await db.commit()
			except aiosqlite.IntegrityError as e:
				await db.rollback()
				raise DuplicateDelegationError(
					"Another active delegation exists for this principal and worker"
				) from e
			except Exception:
				await db.rollback()
				raise

		audit.info(
			f"delegation.{change_type.value} id={delegation_id} by={actor} "
			f"from={previous['status']} reason={reason!r}"
		)
		return delegation

	async def suspend(
		self,
		delegation_id: str,
		suspended_by: Optional[str] = None,
		reason: str = "Temporarily suspended",
	) -> Delegation:
		def apply(d: Delegation) -> None:
			d.suspension_reason = reason

		return await self._transition(
			delegation_id,
			{DelegationStatus.ACTIVE},
			DelegationStatus.SUSPENDED,
			ChangeType.SUSPENDED,
			suspended_by,
			reason,
			apply,
		)

	async def reactivate(self, delegation_id: str, reactivated_by: Optional[str] = None) -> Delegation:
		def apply(d: Delegation) -> None:
			d.suspension_reason = None

		return await self._transition(
			delegation_id,
			{DelegationStatus.SUSPENDED},
			DelegationStatus.ACTIVE,
			ChangeType.REACTIVATED,
			reactivated_by,
			"Delegation reactivated",
			apply,
		)

	async def revoke(
		self,
		delegation_id: str,
		revoked_by: Optional[str] = None,
		reason: str = "Revoked by the principal",
	) -> Delegation:
		def apply(d: Delegation) -> None:
			d.revocation_reason = reason

		return await self._transition(
			delegation_id,
			{DelegationStatus.ACTIVE, DelegationStatus.SUSPENDED},
			DelegationStatus.REVOKED,
			ChangeType.REVOKED,
			revoked_by,
			reason,
			apply,
		)

	async def update_scope(
		self,
		delegation_id: str,
		updated_by: Optional[str],
		changes: dict,
	) -> Delegation:
		"""Merge validated scope changes and record the previous scope."""
		unknown = set(changes) - SCOPE_FIELDS
		if unknown:
			raise ValidationError(f"Unknown scope fields: {sorted(unknown)}")

		at = self._clock()
		async with self.db.connect() as db:
			await db.execute("BEGIN IMMEDIATE")
			try:
				delegation = await self._fetch(db, delegation_id)
				if delegation.status == DelegationStatus.REVOKED:
					raise InvalidTransitionError("Cannot update a revoked delegation")
				previous = delegation.scope.model_dump()
				try:
					delegation.scope = DelegationScope.model_validate({**previous, **changes})
				except PydanticValidationError as e:
					raise ValidationError(f"Invalid scope: {e.errors()[0]['msg']}") from e
				delegation.updated_by = updated_by
				delegation.updated_at = at
				await self._write(db, delegation)
				await self._append_history(db, HistoryEntry(
					delegation_id=delegation_id,
					change_type=ChangeType.UPDATED,
					description="Scope updated",
					changed_by=updated_by,
					changed_at=at,
					previous_state={"scope": previous},
				))
				await db.commit()
			except Exception:
				await db.rollback()
				raise

		audit.info(f"delegation.updated id={delegation_id} by={updated_by} fields={sorted(changes)}")
		return delegation

	async def expire_old_delegations(self, at: Optional[datetime] = None) -> int:
		"""Move active delegations past valid_until to expired. Idempotent."""
		at = at or self._clock()
		expired = 0
		async with self.db.connect() as db:
			await db.execute("BEGIN IMMEDIATE")
			try:
				async with db.execute(
					"""
					SELECT data FROM delegations
					WHERE status = 'active' AND valid_until IS NOT NULL AND valid_until < ?
					""",
					(to_iso(at),),
				) as cursor:
					rows = await cursor.fetchall()

				for row in rows:
					delegation = Delegation.model_validate_json(row["data"])
					delegation.status = DelegationStatus.EXPIRED
					delegation.updated_at = at
					await self._write(db, delegation)
					await self._append_history(db, HistoryEntry(
						delegation_id=delegation.id,
						change_type=ChangeType.EXPIRED,
						description="Delegation expired automatically",
						changed_at=at,
						previous_state={"status": DelegationStatus.ACTIVE.value},
					))
					expired += 1
				await db.commit()
			except Exception:
				await db.rollback()
				raise

		if expired:
			audit.info(f"delegation.expired count={expired}")
		return expired

	async def record_usage(self, delegation_id: str, success: bool, cost: float = 0.0) -> None:
		at = self._clock()
		async with self.db.connect() as db:
			await db.execute("BEGIN IMMEDIATE")
			try:
				delegation = await self._fetch(db, delegation_id)
				usage = delegation.usage
				usage.total_actions += 1
				usage.last_used_at = at
				if success:
					usage.successful_actions += 1
				else:
					usage.failed_actions += 1
				if cost > 0:
					usage.total_cost += cost
				await self._write(db, delegation)
				await db.commit()
			except Exception:
				await db.rollback()
				raise
