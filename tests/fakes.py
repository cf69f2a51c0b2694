from __future__ import annotations

import math
import time
from typing import Dict, Iterable, List, Optional

from batchnet.allocator.channel import InProcessChannel
from batchnet.allocator.client import AllocatorClient
from batchnet.allocator.service import AllocatorService
from batchnet.common.constants import OperationKind
from batchnet.common.schemas import HostSpec, TargetState
from batchnet.integrations.hosts import StaticHostProvider
from batchnet.integrations.liveness import StaticLiveness
from batchnet.integrations.processes import PLACEHOLDER_KIND, ProcessHandle


class FakeSupervisor:
    """Workers finish `durations[kind]` seconds after launch; placeholders run until killed"""

    def __init__(self, durations: Dict[str, float], fail_kinds: Iterable[str] = ()):
        self.durations = durations
        self.fail_kinds = set(fail_kinds)
        self.launched: List[ProcessHandle] = []
        self.killed: List[ProcessHandle] = []
        self.exits: Dict[int, float] = {}

    async def launch(self, kind, host_id, threads, target_id, args=()) -> Optional[ProcessHandle]:
        if kind in self.fail_kinds:
            return None
        handle = ProcessHandle(kind=kind, host_id=host_id, threads=threads, target_id=target_id)
        duration = math.inf if kind == PLACEHOLDER_KIND else self.durations[kind]
        self.exits[handle.handle_id] = time.monotonic() + duration
        self.launched.append(handle)
        return handle

    async def is_alive(self, handle: ProcessHandle) -> bool:
        exit_at = self.exits.get(handle.handle_id)
        return exit_at is not None and time.monotonic() < exit_at

    async def kill(self, handle: ProcessHandle) -> None:
        self.exits.pop(handle.handle_id, None)
        self.killed.append(handle)

    def kinds(self) -> List[str]:
        return [handle.kind for handle in self.launched]


class FixedFormulas:
    """Formula provider with fixed durations"""

    def __init__(
        self,
        durations: Dict[OperationKind, float],
        corrective_effect: float = 0.05,
        target_fraction: float = 0.25,
        extraction: float = 0.002,
        secondary: int = 20,
        growth: float = 1.5,
        primary_volatility: float = 0.002,
        secondary_volatility: float = 0.004,
    ):
        self.durations = dict(durations)
        self.corrective_effect = corrective_effect
        self.target_fraction = target_fraction
        self.extraction = extraction
        self.secondary = secondary
        self.growth = growth
        self.volatility = {
            OperationKind.PRIMARY: primary_volatility,
            OperationKind.SECONDARY: secondary_volatility,
        }

    def duration(self, kind: OperationKind, state: TargetState) -> float:
        return self.durations[kind]

    def extraction_fraction_per_unit(self, state: TargetState) -> float:
        return self.extraction

    def secondary_threads(self, state: TargetState) -> int:
        return self.secondary if state.yield_level < state.ceiling else 0

    def secondary_growth(self, state: TargetState, threads: int) -> float:
        return self.growth

    def volatility_increase(self, kind: OperationKind) -> float:
        return self.volatility.get(kind, 0.0)


def worker_durations(formulas: FixedFormulas) -> Dict[str, float]:
    return {kind.value: duration for kind, duration in formulas.durations.items()}


def settled_state(**changes) -> TargetState:
    state = TargetState(target_id="n00dles", difficulty=2.0, floor=2.0, yield_level=1000.0, ceiling=1000.0)
    return state.model_copy(update=changes)


async def start_allocator(hosts: Dict[str, float], alive: Iterable[str] = ()) -> AllocatorService:
    """In-process allocator over StaticHostProvider; `alive` lists live owners"""
    channel = InProcessChannel()
    provider = StaticHostProvider([HostSpec(host_id=h, capacity=c) for h, c in hosts.items()])
    service = AllocatorService(channel, provider, StaticLiveness(alive), housekeeping_period=3600)
    await service.start()
    return service


def client_for(service: AllocatorService, owner_id: str = "scheduler:1", supervisor=None) -> AllocatorClient:
    if isinstance(service.liveness, StaticLiveness):
        service.liveness.alive.add(owner_id)
    return AllocatorClient(service.channel, owner_id=owner_id, supervisor=supervisor, timeout=2.0, poll_interval=0.01)
