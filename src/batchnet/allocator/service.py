"""
Allocator Service

This module implements the long-lived allocator. It owns the capacity ledger,
serves alloc/free/status requests from the channel one at a time, and runs a
housekeeping loop that re-scans hosts and garbage-collects allocations whose
owner has died.
"""

import asyncio
from collections import OrderedDict
from typing import Optional, Tuple

import structlog
from pydantic import ValidationError

from batchnet.common.constants import AllocatorOperation, LIMITS, TIMEOUTS
from batchnet.common.schemas import (
    AllocatorRequest, AllocatorResponse, AllocPayload, FreePayload
)
from batchnet.integrations.hosts import HostProvider
from batchnet.integrations.liveness import OwnerLiveness
from .channel import AllocatorChannel
from .ledger import CapacityLedger


logger = structlog.get_logger(__name__)


class AllocatorService:
    """Single-consumer allocator over a request/response channel"""

    def __init__(
        self,
        channel: AllocatorChannel,
        host_provider: HostProvider,
        liveness: OwnerLiveness,
        block_size: float = 1.0,
        housekeeping_period: float = TIMEOUTS["HOUSEKEEPING"],
        ledger: Optional[CapacityLedger] = None,
        replay_limit: int = LIMITS["REPLAY_CACHE"],
    ):
        self.channel = channel
        self.host_provider = host_provider
        self.liveness = liveness
        self.housekeeping_period = housekeeping_period
        self.ledger = ledger or CapacityLedger(block_size)
        self.replay_limit = replay_limit
        self._replies: "OrderedDict[Tuple[str, str], AllocatorResponse]" = OrderedDict()
        self.running = False
        self.serve_task: Optional[asyncio.Task] = None
        self.housekeeping_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the allocator"""
        await self.housekeep()
        self.running = True

        self.serve_task = asyncio.create_task(self._serve_loop())
        self.housekeeping_task = asyncio.create_task(self._housekeeping_loop())

        status = self.ledger.status()
        logger.info("Allocator started",
                    hosts=len(self.ledger.hosts),
                    total=status.total_capacity,
                    available=status.available_capacity)

    async def stop(self) -> None:
        """Stop the allocator"""
        self.running = False

        for task in (self.serve_task, self.housekeeping_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        await self.channel.close()
        logger.info("Allocator stopped")

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    def handle(self, request: AllocatorRequest) -> AllocatorResponse:
        """Apply one request to the ledger"""
        response = AllocatorResponse(owner_id=request.owner_id, request_id=request.request_id)

        if request.operation == AllocatorOperation.ALLOC:
            payload = AllocPayload.model_validate(request.payload)
            allocation = self.ledger.allocate(
                request.owner_id,
                payload.units,
                unit_size=payload.unit_size,
                host_filter=payload.host_filter,
                include_privileged=payload.include_privileged,
            )
            # None is the rejection marker
            response.payload = allocation.model_dump() if allocation else None

        elif request.operation == AllocatorOperation.FREE:
            payload = FreePayload.model_validate(request.payload)
            self.ledger.free(payload.allocation_id)

        elif request.operation == AllocatorOperation.STATUS:
            response.payload = self.ledger.status().model_dump()

        elif request.operation == AllocatorOperation.HOSTS:
            response.payload = [view.model_dump() for view in self.ledger.host_views()]

        return response

    def serve_request(self, request: AllocatorRequest) -> AllocatorResponse:
        """Answer a request, replaying the earlier response if it was redelivered"""
        key = (request.owner_id, request.request_id)
        cached = self._replies.get(key)
        if cached is not None:
            logger.debug("Replaying response to redelivered request",
                         owner_id=request.owner_id,
                         request_id=request.request_id)
            return cached

        try:
            response = self.handle(request)
        except ValidationError as e:
            logger.warning("Invalid allocator request",
                           owner_id=request.owner_id,
                           request_id=request.request_id,
                           error=str(e))
            response = AllocatorResponse(
                owner_id=request.owner_id,
                request_id=request.request_id,
                ok=False,
                error=str(e),
            )

        self._replies[key] = response
        while len(self._replies) > self.replay_limit:
            self._replies.popitem(last=False)
        return response

    async def _serve_loop(self) -> None:
        """Main request loop"""
        logger.info("Serving allocator requests")

        while self.running:
            try:
                request = await self.channel.next_request(timeout=1.0)
                if request is None:
                    continue
                await self.channel.respond(self.serve_request(request))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error in allocator loop", error=str(e))
                await asyncio.sleep(1)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def housekeep(self) -> int:
        """Re-scan hosts, then collect garbage; returns allocations freed"""
        self.ledger.refresh(self.host_provider.scan())
        return await self.collect_garbage()

    async def collect_garbage(self) -> int:
        freed = 0
        for owner_id in list(self.ledger.owners):
            if await self.liveness.is_alive(owner_id):
                continue
            count = self.ledger.free_owner(owner_id)
            freed += count
            logger.info("Collected allocations of dead owner", owner_id=owner_id, allocations=count)

        if freed:
            status = self.ledger.status()
            logger.debug("Capacity after garbage collection",
                         available=status.available_capacity,
                         total=status.total_capacity)
        return freed

    async def _housekeeping_loop(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(self.housekeeping_period)
                await self.housekeep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error in housekeeping", error=str(e))
