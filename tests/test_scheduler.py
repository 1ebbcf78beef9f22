"""Tests for the recurring maintenance loop."""

import asyncio
from datetime import timedelta

import pytest

from delegated_orchestrator.models import DelegationStatus, Principal, SessionStatus
from delegated_orchestrator.scheduler import MaintenanceLoop

from .helpers import FakeClock, make_runtime, make_worker


@pytest.mark.asyncio
async def test_run_once_sweeps_everything(tmp_path):
	clock = FakeClock()
	runtime = await make_runtime(tmp_path, clock=clock, seed=False)
	worker = await runtime.workers.create(make_worker())
	delegation = await runtime.delegations.create(
		"u1", worker.id, ["canViewBacklog"], valid_until=clock() + timedelta(hours=1)
	)
	session = await runtime.sessions.create("u1")
	await runtime.queue.enqueue(Principal(id="u1"), "hola")
	await runtime.queue.process_next()

	clock.advance(days=2)
	report = await runtime.maintenance.run_once()

	assert report == {"expired_delegations": 1, "expired_sessions": 1, "cleaned_jobs": 1}
	assert (await runtime.delegations.get(delegation.id)).status == DelegationStatus.EXPIRED
	assert (await runtime.sessions.get(session.id)).status == SessionStatus.EXPIRED

	again = await runtime.maintenance.run_once()
	assert again == {"expired_delegations": 0, "expired_sessions": 0, "cleaned_jobs": 0}


@pytest.mark.asyncio
async def test_without_queue(tmp_path):
	runtime = await make_runtime(tmp_path, seed=False)
	loop = MaintenanceLoop(runtime.delegations, runtime.sessions)
	assert (await loop.run_once())["cleaned_jobs"] == 0


@pytest.mark.asyncio
async def test_start_runs_immediately_and_stops(tmp_path):
	runtime = await make_runtime(tmp_path, seed=False)
	runs = []

	class CountingLoop(MaintenanceLoop):
		async def run_once(self) -> dict:
			runs.append(1)
			return await super().run_once()

	loop = CountingLoop(runtime.delegations, runtime.sessions, runtime.queue, interval=3600)
	await loop.start()
	for _ in range(100):
		if runs:
			break
		await asyncio.sleep(0.01)
	await loop.stop()

	assert runs == [1]
	assert loop._task is None
