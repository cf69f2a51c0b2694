"""
Scheduler components: batch planning, the batch runner and the scheduling loop.
"""

from .loop import SchedulingLoop
from .metrics import RunMetrics
from .planner import plan
from .runner import BatchRunner, ScheduledBatch

__all__ = ["BatchRunner", "RunMetrics", "ScheduledBatch", "SchedulingLoop", "plan"]
