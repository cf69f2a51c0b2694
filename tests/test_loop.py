from __future__ import annotations

import asyncio
import json
import time

import pytest

from batchnet.common.constants import BatchShape, OperationKind
from batchnet.common.errors import InsufficientCapacity
from batchnet.integrations.targets import ShadowTarget
from batchnet.scheduler.loop import SchedulingLoop
from batchnet.scheduler.runner import BatchRunner
from fakes import FakeSupervisor, FixedFormulas, client_for, settled_state, start_allocator, worker_durations


def _loop(service, formulas, state, **kwargs) -> SchedulingLoop:
    supervisor = FakeSupervisor(worker_durations(formulas))
    client = client_for(service, supervisor=supervisor)
    shadow = ShadowTarget(state)
    runner = BatchRunner(client, supervisor, formulas, shadow, skew=0.2, guard=0.04, poll_interval=0.005)
    kwargs.setdefault("oom_delay", 0.01)
    kwargs.setdefault("error_delay", 0.01)
    return SchedulingLoop(client, runner, shadow, formulas, **kwargs)


def test_once_mode_settles_target():
    formulas = FixedFormulas({kind: 0.2 for kind in OperationKind}, growth=1000.0)
    state = settled_state(difficulty=3.0, yield_level=10.0)

    async def scenario():
        service = await start_allocator({"A": 100})
        loop = _loop(service, formulas, state, once=True)
        try:
            lines = await loop.run()
            return lines, loop, service.ledger
        finally:
            await service.stop()

    lines, loop, ledger = asyncio.run(scenario())

    assert loop.settled
    assert loop.shadow.observe().difficulty == pytest.approx(2.0)
    assert loop.shadow.observe().yield_level == 1000.0
    assert [r.shape for r in loop.metrics.reports] == [BatchShape.SINGLE, BatchShape.PAIRED]
    assert loop.metrics.batches["success"] == 2
    assert ledger.allocations == {}
    assert "Results for n00dles" in lines
    assert "    2 successful, 0 partial, 0 out of order" in lines


def test_single_batch_lowers_shadow_difficulty_partially():
    formulas = FixedFormulas({kind: 0.2 for kind in OperationKind})
    state = settled_state(difficulty=10.0)

    async def scenario():
        service = await start_allocator({"A": 50})
        loop = _loop(service, formulas, state)
        loop.last_exec_time = time.monotonic()
        try:
            scheduled = await loop.step()
            await scheduled.wait()
            return scheduled, loop
        finally:
            await service.stop()

    scheduled, loop = asyncio.run(scenario())

    assert scheduled.batch.threads(OperationKind.CORRECTIVE_A) == 50
    assert loop.shadow.observe().difficulty == pytest.approx(7.5)
    assert loop.last_exec_time == scheduled.anchor


def test_out_of_capacity_backs_off():
    formulas = FixedFormulas({kind: 0.2 for kind in OperationKind})

    async def scenario():
        service = await start_allocator({"A": 0})
        loop = _loop(service, formulas, settled_state())
        loop.last_exec_time = time.monotonic()
        try:
            results = [await loop.step() for _ in range(3)]
            return results, loop.metrics
        finally:
            await service.stop()

    results, metrics = asyncio.run(scenario())

    assert results == [None, None, None]
    assert metrics.oom == 3
    assert metrics.batches["queued"] == 0


def test_unexpected_error_only_aborts_the_attempt():
    class _Broken(FixedFormulas):
        def duration(self, kind, state):
            raise RuntimeError("formula failure")

    formulas = _Broken({kind: 0.2 for kind in OperationKind})

    async def scenario():
        service = await start_allocator({"A": 50})
        loop = _loop(service, formulas, settled_state())
        loop.last_exec_time = time.monotonic()
        try:
            first = await loop.step()
            second = await loop.step()
            return first, second, loop.metrics
        finally:
            await service.stop()

    first, second, metrics = asyncio.run(scenario())

    assert first is None and second is None
    assert metrics.errors == 2


def test_preflight_requires_a_full_batch():
    formulas = FixedFormulas({kind: 0.2 for kind in OperationKind})

    async def scenario(force):
        service = await start_allocator({"A": 100})
        loop = _loop(service, formulas, settled_state())
        try:
            return await loop.preflight(force=force)
        finally:
            await service.stop()

    with pytest.raises(InsufficientCapacity):
        asyncio.run(scenario(False))
    assert asyncio.run(scenario(True)) == 152


def test_metrics_snapshot_is_written(tmp_path):
    formulas = FixedFormulas({kind: 0.2 for kind in OperationKind})

    async def scenario():
        service = await start_allocator({"A": 0})
        loop = _loop(service, formulas, settled_state())
        loop.last_exec_time = time.monotonic()
        try:
            await loop.step()
            return loop.metrics
        finally:
            await service.stop()

    metrics = asyncio.run(scenario())
    out = tmp_path / "runs" / "metrics.json"
    metrics.write(out)

    data = json.loads(out.read_text(encoding="utf-8"))
    assert data["oom"] == 1
    assert data["deferred"]["secondary"] == {"ok": 0, "late": 0, "preempted": 0}
