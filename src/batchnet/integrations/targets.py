"""
Target state probes.

The runner reads durations from the target's current state. `ShadowTarget`
is the scheduler's own optimistic copy of that state, advanced as batches are
planned; an external probe can replace it wherever the real state is
observable.
"""

from typing import Any, Dict, Protocol

from batchnet.common.schemas import TargetState


class TargetProbe(Protocol):
    def observe(self) -> TargetState: ...


class ShadowTarget:
    """Mutable shadow of the target state"""

    def __init__(self, state: TargetState):
        self.state = state

    def observe(self) -> TargetState:
        return self.state

    def update(self, **changes: Any) -> TargetState:
        self.state = self.state.model_copy(update=changes)
        return self.state


def target_from_config(data: Dict[str, Any]) -> TargetState:
    """Build the initial target state from a config mapping"""
    return TargetState(
        target_id=str(data["id"]),
        difficulty=float(data.get("difficulty", data.get("floor", 0.0))),
        floor=float(data.get("floor", 0.0)),
        yield_level=float(data.get("yield", data.get("ceiling", 1.0))),
        ceiling=float(data.get("ceiling", 1.0)),
    )
