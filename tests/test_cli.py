"""Tests for the CLI module."""

import asyncio
import io
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
from rich.console import Console

from delegated_orchestrator import cli
from delegated_orchestrator.runtime import Runtime

from .helpers import make_config


def run_cli(tmp_path: Path, *argv: str) -> str:
	"""Run the CLI against a temporary config and return what it printed."""
	buffer = io.StringIO()
	config = make_config(tmp_path)
	with patch.object(cli, "get_config", return_value=config), \
		patch.object(cli, "console", Console(file=buffer, width=200)), \
		patch.object(sys, "argv", ["delegated-orchestrator", *argv]):
		cli.main()
	return buffer.getvalue()


def test_no_command_prints_help(tmp_path: Path):
	"""Running without a subcommand should exit non-zero."""
	with pytest.raises(SystemExit) as exc:
		run_cli(tmp_path)
	assert exc.value.code == 1


def test_seed_is_idempotent(tmp_path: Path):
	"""seed registers the default workers once."""
	first = run_cli(tmp_path, "seed")
	second = run_cli(tmp_path, "seed")

	assert "scrum-ai" in first
	assert "already registered" in second

	async def count() -> int:
		runtime = await Runtime(make_config(tmp_path)).ready(seed=False)
		return len(await runtime.workers.list_workers())

	assert asyncio.run(count()) == 4


def test_workers_table(tmp_path: Path):
	output = run_cli(tmp_path, "workers")
	assert "product-owner-assistant" in output
	assert "universal" in output


def test_expire_reports_counts(tmp_path: Path):
	output = run_cli(tmp_path, "expire")
	assert "expired delegations" in output
	assert "cleaned jobs" in output


def test_queue_stats(tmp_path: Path):
	output = run_cli(tmp_path, "queue-stats")
	assert "waiting" in output
	assert "total" in output


def test_delegations_empty(tmp_path: Path):
	output = run_cli(tmp_path, "delegations", "u1", "--all")
	assert "No delegations for u1" in output
