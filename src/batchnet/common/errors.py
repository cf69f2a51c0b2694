"""
Exceptions raised across batchnet.

Rejected allocations and late stages are ordinary outcomes and are returned,
not raised; these cover the cases a caller has to handle explicitly.
"""


class BatchnetError(Exception):
    """Base class for batchnet errors"""


class ChannelError(BatchnetError):
    """The allocator answered a request with an error"""


class AllocatorTimeout(BatchnetError):
    """No response arrived within the request timeout"""

    def __init__(self, operation: str, request_id: str, timeout: float):
        super().__init__(f"{operation} request {request_id} timed out after {timeout:.1f}s")
        self.operation = operation
        self.request_id = request_id
        self.timeout = timeout


class BatchRejected(BatchnetError):
    """Capacity for a batch could not be reserved"""

    def __init__(self, batch_id: int, kind: str, threads: int):
        super().__init__(f"batch {batch_id}: no capacity for {threads} {kind} threads")
        self.batch_id = batch_id
        self.kind = kind
        self.threads = threads


class InsufficientCapacity(BatchnetError):
    """A full batch cannot fit in the capacity currently available"""

    def __init__(self, requested: int, available: int):
        super().__init__(
            f"Not enough capacity to run a full batch ({requested} requested, {available} available)"
        )
        self.requested = requested
        self.available = available
