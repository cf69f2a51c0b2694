"""
Scheduling Loop

Drives the planner and the runner for one target. Each iteration waits until
the next batch may start, asks the allocator how much capacity is free,
plans a batch and hands it to the runner. The loop keeps an optimistic shadow
of the target state, advanced as soon as a batch is queued, so consecutive
batches are planned against the state the target will reach.
"""

import asyncio
import time
from typing import Callable, List, Optional

import structlog

from batchnet.allocator.client import AllocatorClient
from batchnet.common.constants import BatchShape, OperationKind, SCHEDULING
from batchnet.common.errors import BatchRejected, InsufficientCapacity
from batchnet.common.schemas import Batch
from batchnet.common.utils import RateLimiter, format_duration
from batchnet.integrations.formulas import FormulaProvider
from batchnet.integrations.targets import ShadowTarget
from .planner import check_capacity, plan
from .runner import BatchRunner, ScheduledBatch


logger = structlog.get_logger(__name__)


class SchedulingLoop:
    """Plans and queues batches until stopped"""

    def __init__(
        self,
        client: AllocatorClient,
        runner: BatchRunner,
        shadow: ShadowTarget,
        formulas: FormulaProvider,
        unit_size: int = 1,
        include_privileged: bool = True,
        oom_delay: float = SCHEDULING["OOM_DELAY"],
        error_delay: float = SCHEDULING["ERROR_DELAY"],
        oom_warn_interval: float = SCHEDULING["OOM_WARN_INTERVAL"],
        status_interval: float = SCHEDULING["STATUS_INTERVAL"],
        once: bool = False,
        wait_on_stop: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.runner = runner
        self.shadow = shadow
        self.formulas = formulas
        self.metrics = runner.metrics
        self.unit_size = unit_size
        self.include_privileged = include_privileged
        self.oom_delay = oom_delay
        self.error_delay = error_delay
        self.once = once
        self.wait_on_stop = wait_on_stop
        self.clock = clock

        self.running = False
        self.last_exec_time: Optional[float] = None
        self._oom_warning = RateLimiter(oom_warn_interval, clock=clock)
        self._status = RateLimiter(status_interval, clock=clock)
        self._started_at = clock()

    @property
    def target_id(self) -> str:
        return self.shadow.observe().target_id

    @property
    def settled(self) -> bool:
        state = self.shadow.observe()
        return state.at_floor and state.at_ceiling

    # ------------------------------------------------------------------
    # Pre-flight
    # ------------------------------------------------------------------

    async def preflight(self, force: bool = False) -> int:
        """Check that a full batch fits in the free capacity.

        Returns the size of a full batch. With `force` a shortfall is only
        logged.
        """
        available = await self.client.available_units(self.unit_size, self.include_privileged)
        try:
            return check_capacity(self.shadow.observe(), self.formulas, available)
        except InsufficientCapacity as e:
            if not force:
                raise
            logger.warning("Running with less than a full batch of capacity",
                           requested=e.requested,
                           available=e.available)
            return e.requested

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> List[str]:
        """Schedule until stopped; returns the summary lines"""
        self.running = True
        if self.last_exec_time is None:
            # The first corrective stage can start right away
            self.last_exec_time = (
                self.clock() + self.runner.current_duration(OperationKind.CORRECTIVE_A) - self.runner.skew
            )
        logger.info("Scheduling loop started", target_id=self.target_id, once=self.once)

        cancelled = False
        try:
            while self.running:
                if self.once and self.settled:
                    logger.info("Target settled, waiting for outstanding batches", target_id=self.target_id)
                    break
                await self.step()
        except asyncio.CancelledError:
            cancelled = True
            raise
        finally:
            await self._finish(drain=self.wait_on_stop and not cancelled)
        return self.metrics.summary_lines(self.target_id)

    def stop(self) -> None:
        self.running = False

    async def step(self) -> Optional[ScheduledBatch]:
        """One scheduling attempt; None when nothing was queued"""
        try:
            await self._wait_for_slot()
            budget = await self.client.available_units(self.unit_size, self.include_privileged)
            batch = plan(self.shadow.observe(), self.formulas, budget)
            if batch is None:
                await self._out_of_capacity(budget)
                return None

            try:
                scheduled = await self.runner.start(batch, self.last_exec_time)
            except BatchRejected as e:
                await self._out_of_capacity(budget, e)
                return None

            self.last_exec_time = scheduled.anchor
            self._advance_shadow(batch)
            self._report_status()
            return scheduled

        except Exception:
            self.metrics.errors += 1
            logger.exception("Scheduling attempt failed", target_id=self.target_id)
            await asyncio.sleep(self.error_delay)
            return None

    async def _wait_for_slot(self) -> None:
        start = self.last_exec_time + self.runner.skew - self.runner.current_duration(OperationKind.CORRECTIVE_A)
        delay = start - self.clock()
        if delay > 0:
            await asyncio.sleep(delay)

    async def _out_of_capacity(self, budget: int, error: Optional[BatchRejected] = None) -> None:
        self.metrics.oom += 1
        if self._oom_warning.ready():
            logger.warning("Not enough capacity to schedule a batch",
                           target_id=self.target_id,
                           budget=budget,
                           rejected_kind=error.kind if error else None,
                           retry_in=self.oom_delay)
        await asyncio.sleep(self.oom_delay)

    def _advance_shadow(self, batch: Batch) -> None:
        state = self.shadow.observe()
        if batch.shape == BatchShape.SINGLE:
            threads = batch.threads(OperationKind.CORRECTIVE_A)
            self.shadow.update(difficulty=max(state.floor, state.difficulty - threads * self.formulas.corrective_effect))
        elif batch.shape == BatchShape.PAIRED:
            threads = batch.threads(OperationKind.SECONDARY)
            grown = state.yield_level * self.formulas.secondary_growth(state, threads)
            self.shadow.update(yield_level=min(state.ceiling, grown))
        # Four-stage batches take and restore the same yield

    def _report_status(self) -> None:
        if not self._status.ready():
            return
        state = self.shadow.observe()
        logger.info("Scheduler status",
                    target_id=state.target_id,
                    difficulty=round(state.difficulty, 4),
                    yield_level=state.yield_level,
                    in_flight=self.runner.in_flight,
                    batches=dict(self.metrics.batches),
                    oom=self.metrics.oom,
                    uptime=format_duration(self.clock() - self._started_at))

    async def _finish(self, drain: bool) -> None:
        self.running = False
        if drain:
            await self.runner.drain()
        else:
            await self.runner.shutdown()
        logger.info("Scheduling loop stopped", target_id=self.target_id, **self.metrics.snapshot())

