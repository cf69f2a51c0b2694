"""
Constants used throughout the batchnet system.
"""

from enum import Enum
from typing import Dict


class OperationKind(str, Enum):
    """Operation kind enumeration"""
    PRIMARY = "primary"            # Extraction
    CORRECTIVE_A = "corrective_a"  # Offsets the volatility added by PRIMARY
    SECONDARY = "secondary"        # Replenishment
    CORRECTIVE_B = "corrective_b"  # Offsets the volatility added by SECONDARY


class BatchShape(str, Enum):
    """Batch pipeline shape"""
    SINGLE = "single"
    PAIRED = "paired"
    FOUR_STAGE = "four_stage"


class BatchOutcome(str, Enum):
    """Batch classification after all stages resolved"""
    SUCCESS = "success"
    PARTIAL = "partial"
    OUT_OF_ORDER = "out_of_order"


class StageState(str, Enum):
    """Stage lifecycle"""
    PLANNED = "planned"
    ALLOCATION_REQUESTED = "allocation_requested"
    ALLOCATED = "allocated"
    LAUNCHED = "launched"
    RUNNING = "running"
    COMPLETED = "completed"
    REJECTED = "rejected"
    ABORTED = "aborted"


class AllocationState(str, Enum):
    """Allocation lifecycle"""
    ALLOCATED = "allocated"
    FREED = "freed"
    GARBAGE_COLLECTED = "garbage_collected"


class AllocatorOperation(str, Enum):
    """Operations served by the allocator channel"""
    ALLOC = "alloc"
    FREE = "free"
    STATUS = "status"
    HOSTS = "hosts"


class Transport(str, Enum):
    """Allocator channel transport"""
    MEMORY = "memory"
    REDIS = "redis"


# Canonical completion order per shape, as ordinal strings
CANONICAL_ORDER: Dict[BatchShape, str] = {
    BatchShape.SINGLE: "1",
    BatchShape.PAIRED: "12",
    BatchShape.FOUR_STAGE: "1234",
}

# Position of each kind in the canonical completion order
STAGE_ORDINALS: Dict[BatchShape, Dict[OperationKind, int]] = {
    BatchShape.SINGLE: {
        OperationKind.CORRECTIVE_A: 1,
    },
    BatchShape.PAIRED: {
        OperationKind.SECONDARY: 1,
        OperationKind.CORRECTIVE_B: 2,
    },
    BatchShape.FOUR_STAGE: {
        OperationKind.PRIMARY: 1,
        OperationKind.CORRECTIVE_A: 2,
        OperationKind.SECONDARY: 3,
        OperationKind.CORRECTIVE_B: 4,
    },
}

# Redis keys
REDIS_KEYS = {
    "REQUEST_QUEUE": "batchnet:alloc:requests",
    "RESPONSE_PREFIX": "batchnet:alloc:response",
    "HEARTBEAT_PREFIX": "batchnet:owners:heartbeat",
}

# API endpoints
API_ROUTES = {
    "STATUS": "/api/v1/status",
    "HOSTS": "/api/v1/hosts",
    "ALLOCATIONS": "/api/v1/allocations",
    "HEALTH": "/health",
}

# Default timeouts and intervals (in seconds)
TIMEOUTS = {
    "REQUEST": 10.0,             # allocator round trip
    "REQUEST_POLL": 0.1,         # response polling
    "RESPONSE_TTL": 60,          # unclaimed responses expire
    "HEARTBEAT": 2.0,            # owner heartbeat period
    "HEARTBEAT_TTL": 10,         # owner considered dead after this
    "HOUSEKEEPING": 5.0,         # host re-scan + garbage collection
    "PROCESS_POLL": 0.05,        # worker liveness polling
}

# Scheduling defaults (in seconds)
SCHEDULING = {
    "SKEW": 0.75,          # spacing between anchored stages
    "GUARD": 0.025,        # margin around deferred stage windows
    "OOM_DELAY": 5.0,      # backoff when a batch does not fit
    "ERROR_DELAY": 10.0,   # backoff after an unexpected failure
    "OOM_WARN_INTERVAL": 60.0,
    "STATUS_INTERVAL": 30.0,
    "BACKOFF_FRACTION": 0.5,
    "MIN_SLEEP": 0.005,
}

DEFAULT_BLOCK_SIZE = 1.75
PRIVILEGED_HOST = "home"

# Bounded bookkeeping
LIMITS = {
    "REPLAY_CACHE": 1024,   # responses kept to answer redelivered requests
    "DELIVERED_IDS": 4096,  # correlation ids remembered to drop duplicate responses
}
