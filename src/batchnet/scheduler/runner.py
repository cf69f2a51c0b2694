"""
Batch Runner

This module turns a planned batch into running workers. Corrective stages are
anchored: they start at a computed instant so that they complete `skew`
seconds apart, after the previous batch's anchor. Primary and secondary
stages are deferred: each must start inside a window derived from the
anchored completions, and is launched only once a fresh duration reading puts
its completion inside that window. A deferred stage whose window has already
passed is aborted instead of launched late.

Stages run as cooperative asyncio tasks; each records its ordinal when its
workers exit, and the concatenated ordinals are compared against the
canonical order to classify the batch.
"""

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

import structlog

from batchnet.allocator.client import AllocatorClient, Reservation
from batchnet.common.constants import (
    BatchOutcome, BatchShape, CANONICAL_ORDER, OperationKind, SCHEDULING, STAGE_ORDINALS,
    StageState, TIMEOUTS
)
from batchnet.common.errors import BatchRejected
from batchnet.common.schemas import Batch, BatchReport, Operation
from batchnet.integrations.formulas import FormulaProvider
from batchnet.integrations.processes import ProcessHandle, ProcessSupervisor, wait_for_exit
from batchnet.integrations.targets import TargetProbe
from .metrics import RunMetrics


logger = structlog.get_logger(__name__)

Window = Tuple[float, float]


@dataclass(eq=False)
class Stage:
    """One operation of a batch while it is being run"""
    operation: Operation
    ordinal: int
    deferred: bool = False
    planned_end: float = 0.0
    planned_start: float = 0.0
    exec_time: Optional[float] = None
    state: StageState = StageState.PLANNED
    reservation: Optional[Reservation] = None
    handles: List[ProcessHandle] = field(default_factory=list)
    resolved: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def kind(self) -> OperationKind:
        return self.operation.kind

    @property
    def end(self) -> float:
        """Expected completion: actual once launched, planned before"""
        return self.exec_time if self.exec_time is not None else self.planned_end


@dataclass
class ScheduledBatch:
    """Handle returned once a batch's capacity is reserved and its timeline fixed"""
    batch: Batch
    anchor: float
    task: "asyncio.Task[BatchReport]"

    async def wait(self) -> BatchReport:
        return await self.task


class BatchRunner:
    """Schedules, launches and classifies batches"""

    def __init__(
        self,
        client: AllocatorClient,
        supervisor: ProcessSupervisor,
        formulas: FormulaProvider,
        probe: TargetProbe,
        skew: float = SCHEDULING["SKEW"],
        guard: float = SCHEDULING["GUARD"],
        poll_interval: float = TIMEOUTS["PROCESS_POLL"],
        backoff_fraction: float = SCHEDULING["BACKOFF_FRACTION"],
        min_sleep: float = SCHEDULING["MIN_SLEEP"],
        unit_size: int = 1,
        hold_placeholders: bool = False,
        include_privileged: bool = True,
        metrics: Optional[RunMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if skew <= 2 * guard:
            raise ValueError("skew must exceed twice the guard interval")
        self.client = client
        self.supervisor = supervisor
        self.formulas = formulas
        self.probe = probe
        self.skew = skew
        self.guard = guard
        self.poll_interval = poll_interval
        self.backoff_fraction = backoff_fraction
        self.min_sleep = min_sleep
        self.unit_size = unit_size
        self.hold_placeholders = hold_placeholders
        self.include_privileged = include_privileged
        self.metrics = metrics or RunMetrics()
        self.clock = clock

        self.max_volatility_increase = 0.0
        self._batch_ids = itertools.count(1)
        self._tasks: Set[asyncio.Task] = set()
        self._holding: Set[Stage] = set()

    # ------------------------------------------------------------------
    # Duration readings
    # ------------------------------------------------------------------

    def current_duration(self, kind: OperationKind) -> float:
        return self.formulas.duration(kind, self.probe.observe())

    def worst_case_duration(self, kind: OperationKind) -> float:
        """Duration if every batch in flight has raised difficulty as far as it can"""
        state = self.probe.observe()
        raised = state.model_copy(update={"difficulty": state.difficulty + self.max_volatility_increase})
        return self.formulas.duration(kind, raised)

    def _track_volatility(self, batch: Batch) -> None:
        for operation in batch.operations:
            increase = operation.threads * self.formulas.volatility_increase(operation.kind)
            self.max_volatility_increase = max(self.max_volatility_increase, increase)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def start(self, batch: Batch, last_exec_time: float) -> ScheduledBatch:
        """Reserve capacity for every stage, fix the timeline and start running.

        Raises BatchRejected when any stage cannot be placed. Whatever it
        raises, nothing stays reserved.
        """
        batch_id = next(self._batch_ids)
        batch.batch_id = batch_id
        target_id = self.probe.observe().target_id
        ordinals = STAGE_ORDINALS[batch.shape]

        stages = [Stage(operation=op, ordinal=ordinals[op.kind]) for op in batch.operations]
        try:
            for stage in stages:
                stage.state = StageState.ALLOCATION_REQUESTED
                reservation = await self.client.reserve(
                    stage.operation.threads,
                    target_id,
                    unit_size=self.unit_size,
                    placeholder_args=[batch_id, stage.kind.value],
                    hold_placeholders=self.hold_placeholders,
                    include_privileged=self.include_privileged,
                )
                if reservation is None:
                    stage.state = StageState.REJECTED
                    self.metrics.rejected += 1
                    raise BatchRejected(batch_id, stage.kind.value, stage.operation.threads)
                stage.reservation = reservation
                stage.operation.allocations = [reservation.allocation]
                stage.state = StageState.ALLOCATED
                self._holding.add(stage)
        except BaseException:
            # Give back every stage reserved so far
            await self._release_reservations(batch_id, stages)
            raise

        self._track_volatility(batch)
        anchor = self._plan_timeline(batch.shape, stages, last_exec_time)

        log = logger.bind(batch_id=batch_id)
        for stage in stages:
            log.debug("Stage planned",
                      kind=stage.kind.value,
                      threads=stage.operation.threads,
                      deferred=stage.deferred,
                      planned_start=round(stage.planned_start, 4),
                      planned_end=round(stage.planned_end, 4))

        task = asyncio.create_task(self._execute(batch, stages, last_exec_time))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        self.metrics.record_queued()
        logger.info("Scheduling batch",
                    batch_id=batch_id,
                    shape=batch.shape.value,
                    threads={op.kind.value: op.threads for op in batch.operations})
        return ScheduledBatch(batch=batch, anchor=anchor, task=task)

    async def _release_reservations(self, batch_id: int, stages: List[Stage]) -> None:
        for stage in stages:
            if stage.reservation is None:
                continue
            try:
                await self.client.release(stage.reservation)
            except Exception as e:
                logger.warning("Failed to release reservation",
                               batch_id=batch_id,
                               kind=stage.kind.value,
                               allocation_id=stage.reservation.allocation.allocation_id,
                               error=str(e))
                # Left in _holding so shutdown() retries it
                continue
            stage.reservation = None
            self._holding.discard(stage)

    def _plan_timeline(self, shape: BatchShape, stages: List[Stage], last_exec_time: float) -> float:
        """Set planned completion/start instants; returns the batch's final anchor"""
        S, G = self.skew, self.guard
        now = self.clock()
        by_kind = {stage.kind: stage for stage in stages}
        d = {kind: self.current_duration(kind) for kind in by_kind}

        if shape == BatchShape.SINGLE:
            stage = by_kind[OperationKind.CORRECTIVE_A]
            stage.planned_end = max(last_exec_time + S, now + d[stage.kind])
            stage.planned_start = stage.planned_end - d[stage.kind]
            return stage.planned_end

        if shape == BatchShape.PAIRED:
            corrective = by_kind[OperationKind.CORRECTIVE_B]
            secondary = by_kind[OperationKind.SECONDARY]
            corrective.planned_end = max(
                last_exec_time + S,
                now + d[corrective.kind],
                now + d[secondary.kind] + 2 * G,
            )
            corrective.planned_start = corrective.planned_end - d[corrective.kind]
            secondary.deferred = True
            secondary.planned_end = last_exec_time + G
            secondary.planned_start = secondary.planned_end - d[secondary.kind]
            return corrective.planned_end

        corrective_a = by_kind[OperationKind.CORRECTIVE_A]
        corrective_b = by_kind[OperationKind.CORRECTIVE_B]
        primary = by_kind[OperationKind.PRIMARY]
        secondary = by_kind[OperationKind.SECONDARY]

        # Latest-start of every deferred stage must not already be in the past
        end_a = max(
            last_exec_time + S,
            now + d[OperationKind.CORRECTIVE_A],
            now + d[OperationKind.CORRECTIVE_B] - S,
            now + d[OperationKind.PRIMARY] + 2 * G,
            now + d[OperationKind.SECONDARY] + 2 * G - S,
        )
        corrective_a.planned_end = end_a
        corrective_b.planned_end = end_a + S
        for stage in (corrective_a, corrective_b):
            stage.planned_start = stage.planned_end - d[stage.kind]

        primary.deferred = True
        primary.planned_end = last_exec_time + G
        primary.planned_start = primary.planned_end - d[primary.kind]
        secondary.deferred = True
        secondary.planned_end = end_a + G
        secondary.planned_start = secondary.planned_end - d[secondary.kind]
        return corrective_b.planned_end

    def _window(self, shape: BatchShape, stage: Stage, by_kind: Dict[OperationKind, Stage],
                last_exec_time: float) -> Window:
        """Completion window of a deferred stage from the current anchors"""
        G = self.guard
        if shape == BatchShape.PAIRED:
            return last_exec_time + G, by_kind[OperationKind.CORRECTIVE_B].end - G
        if stage.kind == OperationKind.SECONDARY:
            return by_kind[OperationKind.CORRECTIVE_A].end + G, by_kind[OperationKind.CORRECTIVE_B].end - G
        return last_exec_time + G, by_kind[OperationKind.CORRECTIVE_A].end - G

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, batch: Batch, stages: List[Stage], last_exec_time: float) -> BatchReport:
        order: List[str] = []
        by_kind = {stage.kind: stage for stage in stages}

        results = await asyncio.gather(
            *(self._run_stage(batch, stage, by_kind, last_exec_time, order) for stage in stages),
            return_exceptions=True,
        )
        for stage, result in zip(stages, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.error("Stage failed",
                             batch_id=batch.batch_id,
                             kind=stage.kind.value,
                             error=str(result))
                if stage.state != StageState.COMPLETED:
                    stage.state = StageState.ABORTED

        return self._classify(batch, stages, "".join(order))

    async def _run_stage(self, batch: Batch, stage: Stage, by_kind: Dict[OperationKind, Stage],
                         last_exec_time: float, order: List[str]) -> None:
        try:
            if stage.deferred:
                gate = by_kind.get(OperationKind.SECONDARY) if stage.kind == OperationKind.PRIMARY else None
                if gate is not None and gate.planned_start <= stage.planned_start:
                    await gate.resolved.wait()
                launched = await self._await_window(
                    batch.batch_id, stage, gate,
                    lambda: self._window(batch.shape, stage, by_kind, last_exec_time),
                )
                if not launched:
                    return
            elif not await self._await_anchor(batch.batch_id, stage):
                return

            await self._wait_stage(batch.batch_id, stage)
            order.append(str(stage.ordinal))
        finally:
            stage.resolved.set()

    async def _sleep_until(self, instant: float) -> None:
        delay = instant - self.clock()
        if delay > 0:
            await asyncio.sleep(delay)

    async def _await_anchor(self, batch_id: int, stage: Stage) -> bool:
        """Start an anchored stage at planned_end - duration"""
        while True:
            duration = self.current_duration(stage.kind)
            start = stage.planned_end - duration
            if self.clock() < start - self.min_sleep:
                await self._sleep_until(start)
                continue
            return await self._launch(batch_id, stage, duration)

    async def _await_window(self, batch_id: int, stage: Stage, gate: Optional[Stage],
                            window: Callable[[], Window]) -> bool:
        """Poll until the stage can start inside its window; False if aborted"""
        log = logger.bind(batch_id=batch_id, kind=stage.kind.value)
        while True:
            if gate is not None and gate.state == StageState.ABORTED:
                await self._abort(batch_id, stage, "preempted")
                return False

            earliest, latest = window()
            now = self.clock()
            worst = self.worst_case_duration(stage.kind)
            potential_start = earliest - worst
            if now < potential_start:
                # Sleep part of the gap: the duration estimate drifts while idle
                gap = potential_start - now
                delay = gap if gap <= 2 * self.min_sleep else gap * self.backoff_fraction
                log.debug("Waiting for window", gap=round(gap, 4), worst_case=round(worst, 4))
                await asyncio.sleep(delay)
                continue

            duration = self.current_duration(stage.kind)
            min_start, max_start = earliest - duration, latest - duration
            if now < min_start:
                log.debug("Waiting to start", delay=round(min_start - now, 4), duration=round(duration, 4))
                await self._sleep_until(min_start)
                continue
            if now > max_start:
                logger.warning("Stage aborted due to late start",
                               batch_id=batch_id,
                               kind=stage.kind.value,
                               late=round(now - max_start, 4),
                               duration=round(duration, 4))
                await self._abort(batch_id, stage, "late")
                return False

            launched = await self._launch(batch_id, stage, duration)
            if launched:
                self.metrics.record_deferred(stage.kind, "ok")
            return launched

    async def _launch(self, batch_id: int, stage: Stage, duration: float) -> bool:
        """Start the stage's workers; a stage where none started is aborted"""
        reservation = stage.reservation
        launched_at = self.clock()
        stage.exec_time = launched_at + duration
        stage.operation.target_exec_time = stage.exec_time

        await self.client.drop_placeholders(reservation)
        target_id = self.probe.observe().target_id
        for grant in reservation.allocation.grants:
            handle = await self.supervisor.launch(
                stage.kind.value, grant.host_id, grant.threads, target_id, [batch_id]
            )
            if handle is None:
                logger.warning("Worker launch failed",
                               batch_id=batch_id,
                               kind=stage.kind.value,
                               host_id=grant.host_id,
                               threads=grant.threads)
                continue
            stage.handles.append(handle)

        if not stage.handles:
            logger.warning("No workers started, aborting stage", batch_id=batch_id, kind=stage.kind.value)
            stage.state = StageState.ABORTED
            stage.resolved.set()
            await self.client.free(reservation.allocation.allocation_id)
            self._holding.discard(stage)
            self.metrics.launch_failures += 1
            return False

        stage.state = StageState.LAUNCHED
        stage.resolved.set()
        logger.debug("Stage launched",
                     batch_id=batch_id,
                     kind=stage.kind.value,
                     start=round(launched_at, 4),
                     exec_time=round(stage.exec_time, 4),
                     duration=round(duration, 4))
        return True

    async def _wait_stage(self, batch_id: int, stage: Stage) -> None:
        stage.state = StageState.RUNNING
        for handle in stage.handles:
            await wait_for_exit(self.supervisor, handle, self.poll_interval)
        await self.client.free(stage.reservation.allocation.allocation_id)
        self._holding.discard(stage)
        stage.state = StageState.COMPLETED
        logger.debug("Stage finished", batch_id=batch_id, kind=stage.kind.value, at=round(self.clock(), 4))

    async def _abort(self, batch_id: int, stage: Stage, reason: str) -> None:
        stage.state = StageState.ABORTED
        stage.resolved.set()
        if stage.reservation is not None:
            await self.client.release(stage.reservation)
        self._holding.discard(stage)
        self.metrics.record_deferred(stage.kind, reason)
        logger.debug("Stage aborted", batch_id=batch_id, kind=stage.kind.value, reason=reason)

    def _classify(self, batch: Batch, stages: List[Stage], order: str) -> BatchReport:
        expected = CANONICAL_ORDER[batch.shape]
        aborted = [s.kind for s in stages if s.state == StageState.ABORTED]
        if aborted:
            outcome = BatchOutcome.PARTIAL
        elif order == expected:
            outcome = BatchOutcome.SUCCESS
        else:
            outcome = BatchOutcome.OUT_OF_ORDER

        report = BatchReport(
            batch_id=batch.batch_id,
            shape=batch.shape,
            outcome=outcome,
            order=order,
            expected_order=expected,
            aborted=aborted,
            launched=[s.kind for s in stages if s.state == StageState.COMPLETED],
            finished_at=self.clock(),
        )
        self.metrics.record_report(report)

        log = logger.info if outcome == BatchOutcome.SUCCESS else logger.warning
        log("Batch finished",
            batch_id=batch.batch_id,
            shape=batch.shape.value,
            outcome=outcome.value,
            order=order,
            expected=expected)
        return report

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def drain(self) -> List[BatchReport]:
        """Wait for every batch in flight"""
        if not self._tasks:
            return []
        results = await asyncio.gather(*list(self._tasks), return_exceptions=True)
        return [r for r in results if isinstance(r, BatchReport)]

    async def shutdown(self) -> None:
        """Cancel batches in flight, kill their workers and release capacity"""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for stage in list(self._holding):
            for handle in stage.handles:
                await self.supervisor.kill(handle)
            if stage.reservation is not None:
                try:
                    await self.client.release(stage.reservation)
                except Exception as e:
                    # The allocator reclaims it once this owner is gone
                    logger.warning("Failed to release reservation on shutdown",
                                   allocation_id=stage.reservation.allocation.allocation_id,
                                   error=str(e))
            self._holding.discard(stage)
        logger.info("Runner shut down")
