"""delegated-orchestrator MCP server."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from mcp.server.fastmcp import FastMCP

from .runtime import get_runtime
from .tools import register_all_tools

runtime = get_runtime()


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
	"""Run the queue workers and maintenance loop for the life of the server."""
	await runtime.start()
	try:
		yield
	finally:
		await runtime.stop()


mcp = FastMCP("delegated-orchestrator", lifespan=lifespan)
register_all_tools(mcp, runtime)
