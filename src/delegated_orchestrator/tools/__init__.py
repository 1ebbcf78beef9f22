"""MCP tool registration - modular tool definitions."""

from mcp.server.fastmcp import FastMCP

from ..runtime import Runtime
from .admin import register_admin_tools
from .delegations import register_delegation_tools
from .orchestration import register_orchestration_tools


def register_all_tools(mcp: FastMCP, runtime: Runtime) -> None:
	"""Register all MCP tools."""
	register_orchestration_tools(mcp, runtime)
	register_delegation_tools(mcp, runtime)
	register_admin_tools(mcp, runtime)
