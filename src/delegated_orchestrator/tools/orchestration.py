"""Request tools: synchronous execution, chat turns and the background queue."""

from mcp.server.fastmcp import FastMCP

from ..runtime import Runtime
from .common import dumps, guarded, parse_json_object, principal_from


def register_orchestration_tools(mcp: FastMCP, runtime: Runtime) -> None:
	"""Register orchestration and queue tools."""

	@mcp.tool()
	@guarded
	async def orchestrate(
		principal_id: str,
		request: str,
		role: str = "user",
		product_id: str = "",
		sprint_id: str = "",
	) -> str:
		"""
		Run a natural-language request through a delegated worker.

		The result carries a `status`: success, needs_clarification,
		conversational, no_agent_available (with delegation steps), denied
		(with a reason code) or error.

		Args:
			principal_id: Who is asking
			request: The request text (e.g., "crea una historia para el login")
			role: The principal's role
			product_id: Optional product the request is about
			sprint_id: Optional sprint the request is about
		"""
		rt = await runtime.ready()
		context = {k: v for k, v in {"product_id": product_id, "sprint_id": sprint_id}.items() if v}
		result = await rt.orchestrator.execute(principal_from(principal_id, role), request, context)
		return dumps(result.to_dict())

	@mcp.tool()
	@guarded
	async def chat(
		principal_id: str,
		message: str,
		session_id: str = "",
		role: str = "user",
		product_id: str = "",
		sprint_id: str = "",
	) -> str:
		"""
		Send one turn of a conversation. Omit session_id to start a new session.

		Args:
			principal_id: Who is asking
			message: The turn text
			session_id: Session to continue (from a previous chat result)
			role: The principal's role
			product_id: Product for a new session
			sprint_id: Sprint for a new session
		"""
		rt = await runtime.ready()
		context = {k: v for k, v in {"product_id": product_id, "sprint_id": sprint_id}.items() if v}
		result = await rt.orchestrator.chat(
			principal_from(principal_id, role), message, session_id or None, context
		)
		return dumps(result.to_dict())

	@mcp.tool()
	@guarded
	async def enqueue_request(
		principal_id: str,
		request: str,
		role: str = "user",
		priority: str = "normal",
		context_json: str = "",
	) -> str:
		"""
		Queue a request for background execution.

		Args:
			principal_id: Who is asking
			request: The request text
			role: The principal's role
			priority: high, normal or low
			context_json: Optional JSON object (e.g., {"product_id": "p1"})
		"""
		rt = await runtime.ready()
		ticket = await rt.queue.enqueue(
			principal_from(principal_id, role),
			request,
			parse_json_object(context_json, "context_json"),
			priority,
		)
		return dumps({"success": True, **ticket})

	@mcp.tool()
	@guarded
	async def request_status(job_id: str) -> str:
		"""
		Get the state, attempts, progress and result of a queued request.

		Args:
			job_id: The job id returned by enqueue_request
		"""
		rt = await runtime.ready()
		return dumps({"success": True, **(await rt.queue.status(job_id))})

	@mcp.tool()
	@guarded
	async def cancel_request(job_id: str, principal_id: str) -> str:
		"""
		Cancel a queued request that has not started yet.

		Args:
			job_id: The job id returned by enqueue_request
			principal_id: Must be the principal who queued it
		"""
		rt = await runtime.ready()
		return dumps({"success": True, **(await rt.queue.cancel(job_id, principal_id))})

	@mcp.tool()
	@guarded
	async def queue_stats() -> str:
		"""Get job counts per state."""
		rt = await runtime.ready()
		return dumps({"success": True, "jobs": await rt.queue.stats()})

	@mcp.tool()
	@guarded
	async def suggest_actions(
		principal_id: str,
		role: str = "user",
		product_id: str = "",
		sprint_id: str = "",
	) -> str:
		"""
		List the workers available to a principal and actions that fit the context.

		Args:
			principal_id: Who is asking
			role: The principal's role
			product_id: Current product, if any
			sprint_id: Current sprint, if any
		"""
		rt = await runtime.ready()
		context = {k: v for k, v in {"product_id": product_id, "sprint_id": sprint_id}.items() if v}
		return dumps(await rt.orchestrator.suggestions(principal_from(principal_id, role), context))
