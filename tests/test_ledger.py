from __future__ import annotations

from batchnet.allocator.ledger import CapacityLedger
from batchnet.common.constants import AllocationState
from batchnet.common.schemas import HostSpec


def _ledger(hosts, block_size: float = 1.0, **kwargs) -> CapacityLedger:
    ledger = CapacityLedger(block_size)
    ledger.refresh([HostSpec(host_id=h, capacity=c, **kwargs) for h, c in hosts.items()])
    return ledger


def _available(ledger: CapacityLedger):
    return {h: r.available_capacity for h, r in ledger.hosts.items()}


def test_alloc_spills_over_hosts():
    ledger = _ledger({"A": 100, "B": 50})

    allocation = ledger.allocate("1", 120)

    assert allocation is not None
    assert allocation.units == 120
    assert [(g.host_id, g.units) for g in allocation.grants] == [("A", 100), ("B", 20)]
    assert _available(ledger) == {"A": 0, "B": 30}
    ledger.check_invariants()


def test_alloc_is_all_or_nothing():
    ledger = _ledger({"A": 10, "B": 5})

    assert ledger.allocate("1", 16) is None
    assert _available(ledger) == {"A": 10, "B": 5}
    assert ledger.allocations == {}


def test_alloc_rejects_malformed_units():
    ledger = _ledger({"A": 10})

    assert ledger.allocate("1", 0) is None
    assert ledger.allocate("1", -3) is None
    assert ledger.allocate("1", True) is None
    assert ledger.allocate("1", 2.5) is None
    assert _available(ledger) == {"A": 10}


def test_unit_size_places_whole_threads():
    ledger = _ledger({"A": 7, "B": 4})

    allocation = ledger.allocate("1", 5, unit_size=2)

    # B fits exactly, so it is preferred over the fragmenting host
    assert [(g.host_id, g.units, g.threads) for g in allocation.grants] == [("B", 4, 2), ("A", 6, 3)]
    assert _available(ledger) == {"A": 1, "B": 0}


def test_privileged_host_is_used_last():
    ledger = CapacityLedger()
    ledger.refresh([
        HostSpec(host_id="home", capacity=500, privileged=True),
        HostSpec(host_id="n00dles", capacity=4),
    ])

    allocation = ledger.allocate("1", 6)
    assert [(g.host_id, g.units) for g in allocation.grants] == [("n00dles", 4), ("home", 2)]

    assert ledger.allocate("1", 1, include_privileged=False) is None


def test_free_is_idempotent():
    ledger = _ledger({"A": 10})
    allocation = ledger.allocate("1", 4)

    assert ledger.free(allocation.allocation_id) is True
    assert ledger.free(allocation.allocation_id) is False
    assert ledger.free("alloc-unknown") is False
    assert _available(ledger) == {"A": 10}
    assert ledger.history[allocation.allocation_id] == AllocationState.FREED
    assert ledger.owners == {}


def test_free_owner_collects_everything():
    ledger = _ledger({"A": 50})
    ledger.allocate("dead", 10)
    ledger.allocate("dead", 5)
    kept = ledger.allocate("alive", 5)

    assert ledger.free_owner("dead") == 2
    assert _available(ledger) == {"A": 45}
    assert list(ledger.allocations) == [kept.allocation_id]


def test_block_size_and_reserved_capacity():
    ledger = CapacityLedger(block_size=1.75)
    ledger.refresh([HostSpec(host_id="home", capacity=64, reserved=8, privileged=True)])

    record = ledger.hosts["home"]
    assert record.total_capacity == 36
    assert record.reserved_capacity == 5
    assert record.available_capacity == 31
    assert ledger.status().total_capacity == 31


def test_refresh_grows_and_shrinks_hosts():
    ledger = _ledger({"A": 10})
    ledger.allocate("1", 8)

    assert ledger.refresh([HostSpec(host_id="A", capacity=20)]) == ["A"]
    assert _available(ledger) == {"A": 12}

    ledger.refresh([HostSpec(host_id="A", capacity=5)])
    assert _available(ledger) == {"A": 0}
    assert ledger.refresh([HostSpec(host_id="A", capacity=5)]) == []


def test_invariants_hold_through_mixed_operations():
    ledger = _ledger({"A": 30, "B": 20, "C": 9})
    live = []
    for units in (5, 12, 7, 30, 3, 9, 1):
        allocation = ledger.allocate("1", units)
        if allocation is not None:
            live.append(allocation)
        ledger.check_invariants()

    for allocation in live[::2]:
        ledger.free(allocation.allocation_id)
        ledger.check_invariants()

    expected = 59 - sum(a.units for a in live[1::2])
    assert ledger.total_available() == expected


def test_host_views_list_placed_allocations():
    ledger = _ledger({"A": 10, "B": 10})
    allocation = ledger.allocate("owner", 15)

    views = {view.host_id: view for view in ledger.host_views()}
    assert [entry["allocation_id"] for entry in views["A"].allocations] == [allocation.allocation_id]
    assert sum(entry["units"] for view in views.values() for entry in view.allocations) == 15
