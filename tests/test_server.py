"""Tests for server startup and tool registration."""


def test_server_imports():
	"""Server module should import without errors."""
	from delegated_orchestrator.server import mcp
	assert mcp is not None


def test_server_tool_names():
	"""Server should register every tool."""
	from delegated_orchestrator.server import mcp
	tool_names = set(mcp._tool_manager._tools.keys())

	expected = {
		"orchestrate", "chat", "enqueue_request", "request_status", "cancel_request",
		"queue_stats", "suggest_actions",
		"create_delegation", "suspend_delegation", "reactivate_delegation", "revoke_delegation",
		"update_delegation_scope", "list_delegations", "delegation_history", "list_workers",
		"cache_stats", "invalidate_cache", "action_feedback", "approve_action", "rollback_action",
	}

	missing = expected - tool_names
	assert not missing, f"Missing tools: {missing}"
