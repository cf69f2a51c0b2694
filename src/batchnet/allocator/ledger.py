"""
Capacity Ledger

In-memory bookkeeping of per-host block capacity and live allocations.
The ledger is owned by the allocator service and is never shared; every
mutation happens in response to a single channel request or housekeeping step.
"""

import math
from typing import Dict, Iterable, List, Optional

import structlog

from batchnet.common.constants import AllocationState
from batchnet.common.schemas import (
    Allocation, CapacityStatus, Grant, HostRecord, HostSpec, HostView
)
from batchnet.common.utils import generate_allocation_id


logger = structlog.get_logger(__name__)


class CapacityLedger:
    """Per-host capacity and allocation bookkeeping, in blocks"""

    def __init__(self, block_size: float = 1.0):
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        self.block_size = block_size
        self.hosts: Dict[str, HostRecord] = {}
        self.allocations: Dict[str, Allocation] = {}
        self.owners: Dict[str, List[str]] = {}
        self.history: Dict[str, AllocationState] = {}

    def to_blocks(self, capacity: float) -> int:
        return int(math.floor(capacity / self.block_size + 1e-9))

    # ------------------------------------------------------------------
    # Host re-scan
    # ------------------------------------------------------------------

    def refresh(self, specs: Iterable[HostSpec]) -> List[str]:
        """Apply a host scan; returns the ids of hosts whose capacity changed"""
        changed = []
        for spec in specs:
            total = self.to_blocks(spec.capacity)
            reserved = min(total, int(math.ceil(spec.reserved / self.block_size - 1e-9)))

            record = self.hosts.get(spec.host_id)
            if record is None:
                record = HostRecord(host_id=spec.host_id, privileged=spec.privileged)
                self.hosts[spec.host_id] = record
            record.privileged = spec.privileged

            if record.total_capacity == total and record.reserved_capacity == reserved:
                continue

            # Shrinking below what is already allocated leaves available at zero
            # until the allocations are released.
            record.total_capacity = total
            record.reserved_capacity = reserved
            record.available_capacity = self._recompute_available(spec.host_id)
            changed.append(spec.host_id)

            logger.info("Host capacity updated",
                        host_id=spec.host_id,
                        total=total,
                        reserved=reserved,
                        available=record.available_capacity)
        return changed

    def _allocated_on(self, host_id: str) -> int:
        return sum(
            grant.units
            for allocation in self.allocations.values()
            for grant in allocation.grants
            if grant.host_id == host_id
        )

    def _recompute_available(self, host_id: str) -> int:
        record = self.hosts[host_id]
        return max(0, record.total_capacity - record.reserved_capacity - self._allocated_on(host_id))

    # ------------------------------------------------------------------
    # alloc / free / status
    # ------------------------------------------------------------------

    def candidate_hosts(
        self,
        unit_size: int = 1,
        host_filter: Optional[Iterable[str]] = None,
        include_privileged: bool = True,
    ) -> List[HostRecord]:
        """Hosts eligible for a request, in placement order"""
        allowed = set(host_filter) if host_filter is not None else None
        hosts = [
            record for record in self.hosts.values()
            if record.available_capacity >= unit_size
            and (allowed is None or record.host_id in allowed)
            and (include_privileged or not record.privileged)
        ]
        # Privileged host last, then least fragmentation, then most room.
        hosts.sort(key=lambda r: (
            r.privileged,
            r.available_capacity % unit_size,
            -r.available_capacity,
        ))
        return hosts

    def allocate(
        self,
        owner_id: str,
        units: int,
        unit_size: int = 1,
        host_filter: Optional[Iterable[str]] = None,
        include_privileged: bool = True,
    ) -> Optional[Allocation]:
        """Place `units` threads of `unit_size` blocks each, or reject with None.

        Nothing is recorded unless every thread was placed.
        """
        if not isinstance(units, int) or isinstance(units, bool) or units <= 0 or unit_size <= 0:
            logger.warning("Rejected malformed alloc", owner_id=owner_id, units=units, unit_size=unit_size)
            return None

        hosts = self.candidate_hosts(unit_size, host_filter, include_privileged)
        if sum(r.available_capacity // unit_size for r in hosts) < units:
            logger.debug("Alloc rejected, insufficient capacity", owner_id=owner_id, units=units)
            return None

        remaining = units
        grants: List[Grant] = []
        for record in hosts:
            fit = min(remaining, record.available_capacity // unit_size)
            if fit == 0:
                continue
            grants.append(Grant(host_id=record.host_id, units=fit * unit_size, threads=fit))
            remaining -= fit
            if remaining == 0:
                break

        if remaining > 0:
            return None

        allocation = Allocation(
            allocation_id=generate_allocation_id(),
            owner_id=owner_id,
            units=units * unit_size,
            grants=grants,
        )
        for grant in grants:
            self.hosts[grant.host_id].available_capacity -= grant.units
        self.allocations[allocation.allocation_id] = allocation
        self.owners.setdefault(owner_id, []).append(allocation.allocation_id)
        self.history[allocation.allocation_id] = AllocationState.ALLOCATED

        logger.debug("Allocated",
                     allocation_id=allocation.allocation_id,
                     owner_id=owner_id,
                     grants=[(g.host_id, g.units) for g in grants],
                     available=self.total_available())
        return allocation

    def free(self, allocation_id: str, state: AllocationState = AllocationState.FREED) -> bool:
        """Release an allocation; unknown or already freed ids are a no-op"""
        allocation = self.allocations.pop(allocation_id, None)
        if allocation is None:
            return False

        for grant in allocation.grants:
            if grant.host_id in self.hosts:
                self.hosts[grant.host_id].available_capacity = self._recompute_available(grant.host_id)

        owned = self.owners.get(allocation.owner_id)
        if owned is not None:
            if allocation_id in owned:
                owned.remove(allocation_id)
            if not owned:
                del self.owners[allocation.owner_id]
        self.history[allocation_id] = state

        logger.debug("Freed",
                     allocation_id=allocation_id,
                     owner_id=allocation.owner_id,
                     units=allocation.units,
                     reason=state.value,
                     available=self.total_available())
        return True

    def free_owner(self, owner_id: str) -> int:
        """Garbage-collect every allocation held by an owner"""
        freed = 0
        for allocation_id in list(self.owners.get(owner_id, [])):
            if self.free(allocation_id, AllocationState.GARBAGE_COLLECTED):
                freed += 1
        self.owners.pop(owner_id, None)
        return freed

    def total_available(self) -> int:
        return sum(r.available_capacity for r in self.hosts.values())

    def status(self) -> CapacityStatus:
        return CapacityStatus(
            total_capacity=sum(r.total_capacity - r.reserved_capacity for r in self.hosts.values()),
            available_capacity=self.total_available(),
            allocations=len(self.allocations),
        )

    def host_views(self) -> List[HostView]:
        views = []
        for record in sorted(self.hosts.values(), key=lambda r: r.host_id):
            placed = [
                {
                    "allocation_id": allocation.allocation_id,
                    "owner_id": allocation.owner_id,
                    "units": grant.units,
                    "threads": grant.threads,
                }
                for allocation in self.allocations.values()
                for grant in allocation.grants
                if grant.host_id == record.host_id
            ]
            views.append(HostView(**record.model_dump(), allocations=placed))
        return views

    def check_invariants(self) -> None:
        """Raise AssertionError if any host is over-committed"""
        for record in self.hosts.values():
            allocated = self._allocated_on(record.host_id)
            assert allocated + record.reserved_capacity <= record.total_capacity, record.host_id
            assert record.available_capacity == \
                record.total_capacity - record.reserved_capacity - allocated, record.host_id
