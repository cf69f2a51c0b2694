"""
Pydantic schemas for batchnet.

These schemas define the data models exchanged between the allocator service,
its clients, the batch planner and the batch runner.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import AllocatorOperation, BatchOutcome, BatchShape, OperationKind


class BaseSchema(BaseModel):
    """Base schema with common configuration"""
    model_config = ConfigDict(
        validate_assignment=True,
        extra="forbid"
    )


# Host and allocation schemas
class HostSpec(BaseSchema):
    """Host as reported by the host provider (raw capacity, not blocks)"""
    host_id: str
    capacity: float = Field(ge=0.0)
    reserved: float = Field(default=0.0, ge=0.0)
    privileged: bool = False


class HostRecord(BaseSchema):
    """Ledger view of a host, in blocks"""
    host_id: str
    total_capacity: int = 0
    reserved_capacity: int = 0
    available_capacity: int = 0
    privileged: bool = False


class Grant(BaseSchema):
    """Share of an allocation placed on one host"""
    host_id: str
    units: int = Field(ge=1)
    threads: int = Field(ge=1)


class Allocation(BaseSchema):
    """Live allocation held by an owner"""
    allocation_id: str
    owner_id: str
    units: int
    grants: List[Grant]


class CapacityStatus(BaseSchema):
    """Aggregated capacity across hosts"""
    total_capacity: int
    available_capacity: int
    allocations: int = 0


class HostView(HostRecord):
    """Host record plus the allocations placed on it"""
    allocations: List[Dict[str, Any]] = Field(default_factory=list)


# Channel schemas
class AllocPayload(BaseSchema):
    """alloc request payload"""
    units: int
    unit_size: int = Field(default=1, ge=1)
    host_filter: Optional[List[str]] = None
    include_privileged: bool = True


class FreePayload(BaseSchema):
    """free request payload"""
    allocation_id: str


class AllocatorRequest(BaseSchema):
    """Request envelope, correlated by (owner_id, request_id)"""
    owner_id: str
    request_id: str
    operation: AllocatorOperation
    payload: Dict[str, Any] = Field(default_factory=dict)


class AllocatorResponse(BaseSchema):
    """Response envelope"""
    owner_id: str
    request_id: str
    ok: bool = True
    payload: Any = None
    error: Optional[str] = None


# Target and plan schemas
class TargetState(BaseSchema):
    """Numeric state of the scheduled target"""
    target_id: str
    difficulty: float
    floor: float
    yield_level: float = Field(ge=0.0)
    ceiling: float = Field(gt=0.0)

    @property
    def at_floor(self) -> bool:
        return self.difficulty <= self.floor

    @property
    def at_ceiling(self) -> bool:
        return self.yield_level >= self.ceiling


class Operation(BaseSchema):
    """One stage of a batch"""
    kind: OperationKind
    threads: int = Field(ge=1)
    target_exec_time: Optional[float] = None
    allocations: List[Allocation] = Field(default_factory=list)


class Batch(BaseSchema):
    """Planned group of 1, 2 or 4 operations"""
    shape: BatchShape
    operations: List[Operation]
    batch_id: Optional[int] = None
    iterations: int = 0

    def threads(self, kind: OperationKind) -> int:
        for operation in self.operations:
            if operation.kind == kind:
                return operation.threads
        return 0

    @property
    def total_threads(self) -> int:
        return sum(op.threads for op in self.operations)


class BatchReport(BaseSchema):
    """Result of running one batch"""
    batch_id: int
    shape: BatchShape
    outcome: BatchOutcome
    order: str
    expected_order: str
    aborted: List[OperationKind] = Field(default_factory=list)
    launched: List[OperationKind] = Field(default_factory=list)
    finished_at: float
