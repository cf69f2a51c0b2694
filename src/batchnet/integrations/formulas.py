"""
Formula providers.

The planner and runner never model the target themselves; they ask a formula
provider for durations, per-unit effects and thread requirements as functions
of the target's numeric state.
"""

import math
from typing import Dict, Protocol

from pydantic import Field

from batchnet.common.constants import OperationKind
from batchnet.common.schemas import BaseSchema, TargetState


class FormulaProvider(Protocol):
    """Pure functions of target state"""

    corrective_effect: float
    target_fraction: float

    def duration(self, kind: OperationKind, state: TargetState) -> float: ...

    def extraction_fraction_per_unit(self, state: TargetState) -> float: ...

    def secondary_threads(self, state: TargetState) -> int: ...

    def secondary_growth(self, state: TargetState, threads: int) -> float: ...

    def volatility_increase(self, kind: OperationKind) -> float: ...


class FormulaConfig(BaseSchema):
    """Parameters of ModelFormulas"""
    base_durations: Dict[OperationKind, float] = Field(default_factory=lambda: {
        OperationKind.PRIMARY: 1.0,
        OperationKind.CORRECTIVE_A: 4.0,
        OperationKind.SECONDARY: 3.2,
        OperationKind.CORRECTIVE_B: 4.0,
    })
    difficulty_scale: float = Field(default=0.02, ge=0.0)
    extraction_per_unit: float = Field(default=0.002, gt=0.0, le=1.0)
    growth_per_unit: float = Field(default=0.002, gt=0.0)
    primary_volatility: float = Field(default=0.002, ge=0.0)
    secondary_volatility: float = Field(default=0.004, ge=0.0)
    corrective_effect: float = Field(default=0.05, gt=0.0)
    target_fraction: float = Field(default=0.25, gt=0.0, le=1.0)
    max_difficulty: float = Field(default=100.0, gt=0.0)


class ModelFormulas:
    """Parametric target model.

    Durations grow linearly with difficulty. Extraction and growth per unit
    shrink as difficulty approaches `max_difficulty`. Growth compounds per
    unit, so restoring yield needs log(ceiling / yield) / log(1 + rate) units.
    """

    def __init__(self, config: FormulaConfig = None):
        self.config = config or FormulaConfig()
        self.corrective_effect = self.config.corrective_effect
        self.target_fraction = self.config.target_fraction

    def _efficiency(self, state: TargetState) -> float:
        return max(0.01, 1.0 - state.difficulty / self.config.max_difficulty)

    def duration(self, kind: OperationKind, state: TargetState) -> float:
        base = self.config.base_durations[kind]
        return base * (1.0 + self.config.difficulty_scale * max(0.0, state.difficulty))

    def extraction_fraction_per_unit(self, state: TargetState) -> float:
        return self.config.extraction_per_unit * self._efficiency(state)

    def _growth_rate(self, state: TargetState) -> float:
        return self.config.growth_per_unit * self._efficiency(state)

    def secondary_threads(self, state: TargetState) -> int:
        current = max(state.yield_level, 1.0)
        if current >= state.ceiling:
            return 0
        needed = math.log(state.ceiling / current) / math.log1p(self._growth_rate(state))
        return int(math.ceil(needed - 1e-9))

    def secondary_growth(self, state: TargetState, threads: int) -> float:
        return (1.0 + self._growth_rate(state)) ** threads

    def volatility_increase(self, kind: OperationKind) -> float:
        if kind == OperationKind.PRIMARY:
            return self.config.primary_volatility
        if kind == OperationKind.SECONDARY:
            return self.config.secondary_volatility
        return 0.0
