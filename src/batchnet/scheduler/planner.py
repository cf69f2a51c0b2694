"""
Batch Planner

Pure computation of thread counts for the next batch. The regime is chosen
from the target state:

- difficulty above floor: a single corrective stage;
- yield below ceiling: secondary + corrective;
- otherwise the four-stage pipeline, shrunk until it fits the budget.

Every function returns None when nothing useful fits; callers treat that as
an out-of-capacity condition.
"""

import math
from typing import Optional, Union

from batchnet.common.constants import BatchShape, OperationKind
from batchnet.common.errors import InsufficientCapacity
from batchnet.common.schemas import Batch, Operation, TargetState
from batchnet.integrations.formulas import FormulaProvider


Budget = Union[int, float]

# Float noise guard for ceil/floor on ratios like 8 / 0.05
EPSILON = 1e-9


def _ceil(value: float) -> int:
    return int(math.ceil(value - EPSILON))


def _floor(value: float) -> int:
    return int(math.floor(value + EPSILON))


def corrective_ratio(formulas: FormulaProvider, kind: OperationKind) -> float:
    """Corrective units needed per provoking unit of `kind`"""
    return formulas.volatility_increase(kind) / formulas.corrective_effect


def corrective_threads(formulas: FormulaProvider, kind: OperationKind, threads: int) -> int:
    return _ceil(threads * corrective_ratio(formulas, kind))


def plan_single(state: TargetState, formulas: FormulaProvider, budget: Budget) -> Optional[Batch]:
    """Corrective-only batch; partial correction when the budget is short"""
    threads = _ceil((state.difficulty - state.floor) / formulas.corrective_effect)
    if threads > budget:
        threads = int(budget)
    if threads <= 0:
        return None
    return Batch(
        shape=BatchShape.SINGLE,
        operations=[Operation(kind=OperationKind.CORRECTIVE_A, threads=threads)],
    )


def plan_paired(state: TargetState, formulas: FormulaProvider, budget: Budget) -> Optional[Batch]:
    """Secondary + corrective batch restoring yield toward the ceiling"""
    ratio = corrective_ratio(formulas, OperationKind.SECONDARY)
    secondary = formulas.secondary_threads(state)
    if secondary * (1 + ratio) > budget:
        secondary = _floor(budget / (1 + ratio))
    # Rounding the corrective up can still overshoot by one
    while secondary > 0 and secondary + max(1, _ceil(secondary * ratio)) > budget:
        secondary -= 1
    if secondary <= 0:
        return None
    return Batch(
        shape=BatchShape.PAIRED,
        operations=[
            Operation(kind=OperationKind.SECONDARY, threads=secondary),
            Operation(kind=OperationKind.CORRECTIVE_B, threads=max(1, _ceil(secondary * ratio))),
        ],
    )


def plan_four_stage(state: TargetState, formulas: FormulaProvider, budget: Budget) -> Optional[Batch]:
    """Extraction pipeline, shrinking primary until the whole batch fits.

    Fewer primary threads never need more of anything else, so the search is
    monotonic and stops after at most `primary_initial + 1` trials.
    """
    fraction = formulas.extraction_fraction_per_unit(state)
    if fraction <= 0:
        return None

    primary = _floor(formulas.target_fraction / fraction)
    iterations = 0
    while primary > 0:
        iterations += 1
        # Every stage runs at least one thread so the pipeline keeps its shape
        corrective_a = max(1, corrective_threads(formulas, OperationKind.PRIMARY, primary))
        depleted = state.model_copy(update={
            "yield_level": state.ceiling * max(0.0, 1.0 - fraction * primary),
        })
        secondary = max(1, formulas.secondary_threads(depleted))
        corrective_b = max(1, corrective_threads(formulas, OperationKind.SECONDARY, secondary))
        if primary + corrective_a + secondary + corrective_b <= budget:
            break
        primary -= 1

    if primary <= 0:
        return None

    operations = [
        Operation(kind=OperationKind.PRIMARY, threads=primary),
        Operation(kind=OperationKind.CORRECTIVE_A, threads=corrective_a),
        Operation(kind=OperationKind.SECONDARY, threads=secondary),
        Operation(kind=OperationKind.CORRECTIVE_B, threads=corrective_b),
    ]
    return Batch(shape=BatchShape.FOUR_STAGE, operations=operations, iterations=iterations)


def plan(state: TargetState, formulas: FormulaProvider, budget: Budget) -> Optional[Batch]:
    """Plan the next batch for `state` within `budget` units"""
    if state.difficulty > state.floor:
        return plan_single(state, formulas, budget)
    if state.yield_level < state.ceiling:
        return plan_paired(state, formulas, budget)
    return plan_four_stage(state, formulas, budget)


def full_batch_threads(state: TargetState, formulas: FormulaProvider) -> int:
    """Threads of an unconstrained four-stage batch at floor and ceiling"""
    settled = state.model_copy(update={"difficulty": state.floor, "yield_level": state.ceiling})
    batch = plan_four_stage(settled, formulas, math.inf)
    return batch.total_threads if batch else 0


def check_capacity(state: TargetState, formulas: FormulaProvider, available: int) -> int:
    """Raise InsufficientCapacity when a full batch cannot fit; returns its size"""
    requested = full_batch_threads(state, formulas)
    if requested > available:
        raise InsufficientCapacity(requested, available)
    return requested
