"""CLI for delegated-orchestrator: serve, seed, maintenance, inspection and doctor commands."""

import argparse
import asyncio
import sys
from importlib.metadata import version as pkg_version

from rich.console import Console
from rich.table import Table

from .config import get_config
from .logging_config import setup_logging
from .models import DelegationStatus
from .runtime import Runtime

console = Console()


def _runtime() -> Runtime:
	return Runtime(get_config())


def cmd_serve(args: argparse.Namespace) -> None:
	"""Run the MCP server (stdio transport)."""
	config = get_config()
	setup_logging(config.log_level, config.log_dir)
	from .server import mcp
	mcp.run()


def cmd_seed(args: argparse.Namespace) -> None:
	"""Create the schema and register the default workers."""

	async def run() -> None:
		runtime = _runtime()
		await runtime.ready(seed=False)
		from .seed import seed_workers
		created = await seed_workers(runtime.workers)
		if created:
			for worker in created:
				console.print(f"[green]+[/green] {worker.name} ({worker.category.value}) [dim]{worker.id}[/dim]")
		else:
			console.print("[dim]All default workers already registered.[/dim]")

	asyncio.run(run())


def cmd_expire(args: argparse.Namespace) -> None:
	"""Run one maintenance pass."""

	async def run() -> None:
		runtime = await _runtime().ready()
		report = await runtime.maintenance.run_once()
		for key, value in report.items():
			console.print(f"  {key.replace('_', ' '):22s} {value}")

	asyncio.run(run())


def cmd_queue_stats(args: argparse.Namespace) -> None:
	"""Show job counts per state."""

	async def run() -> None:
		runtime = await _runtime().ready()
		stats = await runtime.queue.stats()
		table = Table(title="Task Queue")
		table.add_column("State", style="cyan")
		table.add_column("Jobs", justify="right")
		for state, count in stats.items():
			table.add_row(state, str(count))
		console.print(table)

	asyncio.run(run())


def cmd_workers(args: argparse.Namespace) -> None:
	"""List registered workers."""

	async def run() -> None:
		runtime = await _runtime().ready()
		workers = await runtime.workers.list_workers()
		if not workers:
			console.print("[dim]No workers registered. Run `delegated-orchestrator seed`.[/dim]")
			return
		table = Table(title="Workers")
		table.add_column("ID", style="dim")
		table.add_column("Name", style="cyan")
		table.add_column("Category")
		table.add_column("Status")
		table.add_column("Interactions", justify="right")
		table.add_column("Cost", justify="right")
		for w in workers:
			style = "green" if w.status.value == "active" else "yellow"
			name = f"{w.name} [magenta](universal)[/magenta]" if w.is_universal else w.name
			table.add_row(
				w.id,
				name,
				w.category.value,
				f"[{style}]{w.status.value}[/{style}]",
				str(w.metrics.total_interactions),
				f"${w.metrics.total_cost:.4f}",
			)
		console.print(table)

	asyncio.run(run())


def cmd_delegations(args: argparse.Namespace) -> None:
	"""List a principal's delegations."""

	async def run() -> None:
		runtime = await _runtime().ready()
		status = None if args.all else DelegationStatus.ACTIVE
		delegations = await runtime.delegations.list_for_principal(args.principal_id, status)
		if not delegations:
			console.print(f"[dim]No delegations for {args.principal_id}.[/dim]")
			return
		table = Table(title=f"Delegations of {args.principal_id}")
		table.add_column("ID", style="dim")
		table.add_column("Worker", style="cyan")
		table.add_column("Status")
		table.add_column("Permissions")
		table.add_column("Actions", justify="right")
		table.add_column("Valid Until")
		for d in delegations:
			table.add_row(
				d.id,
				d.worker_id,
				d.status.value,
				", ".join(sorted(d.permission_keys())),
				str(d.usage.total_actions),
				d.valid_until.strftime("%Y-%m-%d %H:%M") if d.valid_until else "-",
			)
		console.print(table)

	asyncio.run(run())


def _check_server_startup() -> tuple[str, str | None]:
	"""Try importing and counting registered tools. Returns (status, issue_or_none)."""
	try:
		from .server import mcp as server_instance
		tools = server_instance._tool_manager._tools
		return f"OK ({len(tools)} tools registered)", None
	except Exception as e:
		return f"FAILED ({e})", f"Server startup failed: {e}"


def cmd_doctor(args: argparse.Namespace) -> None:
	"""Health check - verify installation, configuration and database."""
	console.print("[bold]delegated-orchestrator doctor[/bold]")
	console.print("=" * 40)

	config = get_config()
	issues: list[str] = []

	py_ver = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
	console.print(f"  Python:       {py_ver}")
	console.print(f"  Environment:  {config.environment}")
	console.print(f"  Data dir:     {config.data_dir}")
	console.print()

	console.print("  Core deps:")
	for dep in ["mcp", "aiosqlite", "pydantic", "platformdirs", "python-dotenv", "rich"]:
		try:
			console.print(f"    {dep:22s} {pkg_version(dep)}")
		except Exception:
			console.print(f"    {dep:22s} [red]NOT INSTALLED[/red]")
			issues.append(f"{dep} package not installed")
	console.print()

	async def check_db() -> tuple[bool, int]:
		runtime = _runtime()
		await runtime.ready(seed=False)
		ok = await runtime.db.ping()
		return ok, len(await runtime.workers.list_workers())

	try:
		ok, worker_count = asyncio.run(check_db())
	except Exception as e:
		ok, worker_count = False, 0
		issues.append(f"Database unavailable: {e}")
	console.print(f"  Database:     {'OK' if ok else '[red]FAILED[/red]'} ({config.db_path})")
	console.print(f"  Workers:      {worker_count}")
	if ok and not worker_count:
		issues.append("No workers registered (run `delegated-orchestrator seed`)")
	console.print()

	server_status, server_issue = _check_server_startup()
	console.print(f"  Server:       {server_status}")
	if server_issue:
		issues.append(server_issue)
	console.print()

	if issues:
		console.print(f"  {len(issues)} issue(s) found:")
		for issue in issues:
			console.print(f"    - {issue}")
		sys.exit(1)
	console.print("  All checks passed.")


def main() -> None:
	"""CLI entry point."""
	parser = argparse.ArgumentParser(
		prog="delegated-orchestrator",
		description="MCP server routing requests to AI workers under user delegations",
	)
	subparsers = parser.add_subparsers(dest="command")

	serve_parser = subparsers.add_parser("serve", help="Run MCP server (stdio)")
	serve_parser.set_defaults(func=cmd_serve)

	seed_parser = subparsers.add_parser("seed", help="Register the default workers")
	seed_parser.set_defaults(func=cmd_seed)

	expire_parser = subparsers.add_parser(
		"expire", help="Expire delegations and sessions, clean finished jobs"
	)
	expire_parser.set_defaults(func=cmd_expire)

	queue_parser = subparsers.add_parser("queue-stats", help="Show task queue counts")
	queue_parser.set_defaults(func=cmd_queue_stats)

	workers_parser = subparsers.add_parser("workers", help="List registered workers")
	workers_parser.set_defaults(func=cmd_workers)

	delegations_parser = subparsers.add_parser("delegations", help="List a principal's delegations")
	delegations_parser.add_argument("principal_id", help="Principal to list")
	delegations_parser.add_argument("--all", action="store_true", help="Include inactive delegations")
	delegations_parser.set_defaults(func=cmd_delegations)

	doctor_parser = subparsers.add_parser("doctor", help="Health check")
	doctor_parser.set_defaults(func=cmd_doctor)

	args = parser.parse_args()

	if not args.command:
		parser.print_help()
		sys.exit(1)

	args.func(args)
