"""
batchnet

Capacity allocator and time-skewed batch scheduler for worker processes
sharing a pool of execution blocks.
"""

__version__ = "0.1.0"
__author__ = "batchnet Team"

from batchnet.common.constants import BatchOutcome, BatchShape, OperationKind

__all__ = [
    "__version__",
    "__author__",
    "BatchOutcome",
    "BatchShape",
    "OperationKind",
]
