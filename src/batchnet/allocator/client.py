"""
Allocation Client Library

Schedulers use this client to request and release blocks from the allocator
service and to pin placeholder processes to granted capacity until the real
workers are launched.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

import structlog

from batchnet.common.constants import AllocatorOperation, TIMEOUTS
from batchnet.common.errors import ChannelError
from batchnet.common.schemas import (
    Allocation, AllocatorRequest, AllocatorResponse, CapacityStatus, HostView
)
from batchnet.common.utils import default_owner_id, generate_request_id
from batchnet.integrations.processes import PLACEHOLDER_KIND, ProcessHandle, ProcessSupervisor
from .channel import AllocatorChannel, call


logger = structlog.get_logger(__name__)


@dataclass
class Reservation:
    """Granted capacity plus the placeholders holding it"""
    allocation: Allocation
    placeholders: List[ProcessHandle] = field(default_factory=list)

    @property
    def threads(self) -> int:
        return sum(grant.threads for grant in self.allocation.grants)


class AllocatorClient:
    """Client side of the allocator protocol"""

    def __init__(
        self,
        channel: AllocatorChannel,
        owner_id: Optional[str] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        timeout: float = TIMEOUTS["REQUEST"],
        poll_interval: float = TIMEOUTS["REQUEST_POLL"],
    ):
        self.channel = channel
        self.owner_id = owner_id or default_owner_id()
        self.supervisor = supervisor
        self.timeout = timeout
        self.poll_interval = poll_interval

    async def _request(self, operation: AllocatorOperation, payload: Optional[dict] = None) -> AllocatorResponse:
        request = AllocatorRequest(
            owner_id=self.owner_id,
            request_id=generate_request_id(),
            operation=operation,
            payload=payload or {},
        )
        response = await call(self.channel, request, self.timeout, self.poll_interval)
        if not response.ok:
            raise ChannelError(f"{operation.value} failed: {response.error}")
        return response

    async def alloc(
        self,
        units: int,
        unit_size: int = 1,
        host_filter: Optional[List[str]] = None,
        include_privileged: bool = True,
    ) -> Optional[Allocation]:
        """Request `units` threads; None when the allocator rejected it"""
        response = await self._request(AllocatorOperation.ALLOC, {
            "units": units,
            "unit_size": unit_size,
            "host_filter": host_filter,
            "include_privileged": include_privileged,
        })
        if response.payload is None:
            return None
        return Allocation.model_validate(response.payload)

    async def free(self, allocation_id: str) -> None:
        await self._request(AllocatorOperation.FREE, {"allocation_id": allocation_id})

    async def status(self) -> CapacityStatus:
        response = await self._request(AllocatorOperation.STATUS)
        return CapacityStatus.model_validate(response.payload)

    async def hosts(self) -> List[HostView]:
        response = await self._request(AllocatorOperation.HOSTS)
        return [HostView.model_validate(item) for item in response.payload]

    async def available_units(self, unit_size: int = 1, include_privileged: bool = True) -> int:
        """Threads of `unit_size` blocks that would currently fit"""
        if unit_size == 1 and include_privileged:
            return (await self.status()).available_capacity
        return sum(
            host.available_capacity // unit_size
            for host in await self.hosts()
            if include_privileged or not host.privileged
        )

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    async def reserve(
        self,
        threads: int,
        target_id: str,
        unit_size: int = 1,
        placeholder_args: Sequence[Any] = (),
        hold_placeholders: bool = False,
        include_privileged: bool = True,
    ) -> Optional[Reservation]:
        """Allocate capacity and optionally pin it with placeholder processes.

        All-or-nothing: if any placeholder fails to start, everything is
        released and None is returned.
        """
        allocation = await self.alloc(threads, unit_size=unit_size, include_privileged=include_privileged)
        if allocation is None:
            return None

        reservation = Reservation(allocation=allocation)
        if not hold_placeholders or self.supervisor is None:
            return reservation

        for grant in allocation.grants:
            handle = await self.supervisor.launch(
                PLACEHOLDER_KIND, grant.host_id, grant.threads, target_id, placeholder_args
            )
            if handle is None:
                logger.warning("Placeholder launch failed, releasing reservation",
                               allocation_id=allocation.allocation_id,
                               host_id=grant.host_id)
                await self.release(reservation)
                return None
            reservation.placeholders.append(handle)
        return reservation

    async def drop_placeholders(self, reservation: Reservation) -> None:
        """Kill the placeholders so real workers can take their place"""
        if self.supervisor is not None:
            for handle in reservation.placeholders:
                await self.supervisor.kill(handle)
        reservation.placeholders.clear()

    async def release(self, reservation: Reservation) -> None:
        await self.drop_placeholders(reservation)
        await self.free(reservation.allocation.allocation_id)
