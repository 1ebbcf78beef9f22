"""Exception hierarchy shared by the orchestration services."""

from typing import Optional


class OrchestratorError(Exception):
	"""Base class for every error raised by this package."""

	code = "orchestrator_error"

	def __init__(self, message: str = "", code: Optional[str] = None):
		super().__init__(message)
		self.message = message
		if code:
			self.code = code

	def to_dict(self) -> dict:
		return {"success": False, "error": self.message, "code": self.code}


class ValidationError(OrchestratorError):
	"""Malformed or missing input, rejected before any side effect."""
	code = "validation_error"


class AuthorizationError(OrchestratorError):
	"""A request was refused; `code` holds the machine-readable reason."""
	code = "forbidden"


class ForbiddenError(AuthorizationError):
	"""The principal does not own the resource it tried to change."""
	code = "forbidden"


class DelegationError(OrchestratorError):
	code = "delegation_error"


class DelegationNotFoundError(DelegationError):
	code = "delegation_not_found"


class DuplicateDelegationError(DelegationError):
	"""An active delegation already exists for the (principal, worker) pair."""
	code = "duplicate_active_delegation"


class InvalidTransitionError(DelegationError):
	code = "invalid_transition"


class WorkerNotFoundError(DelegationError):
	code = "worker_not_found"


class WorkerUnavailableError(DelegationError):
	code = "worker_unavailable"


class ExecutionError(OrchestratorError):
	"""The worker or its language-model provider failed."""
	code = "execution_error"


class InfrastructureError(OrchestratorError):
	"""The durable store or queue could not be reached."""
	code = "infrastructure_error"


class ActionNotFoundError(OrchestratorError):
	code = "action_not_found"


class ActionStateError(OrchestratorError):
	code = "action_state_error"


class SessionNotFoundError(OrchestratorError):
	code = "session_not_found"


class SessionOwnershipError(ForbiddenError):
	code = "session_forbidden"


class SessionExpiredError(OrchestratorError):
	code = "session_expired"


class SessionStateError(OrchestratorError):
	code = "session_not_active"


class JobNotFoundError(OrchestratorError):
	code = "not_found"


class JobStateError(OrchestratorError):
	code = "job_not_cancellable"
