from __future__ import annotations

import asyncio

import pytest

from batchnet.allocator.channel import InProcessChannel, RedisChannel, call
from batchnet.allocator.client import AllocatorClient
from batchnet.common.constants import AllocationState, AllocatorOperation
from batchnet.common.errors import AllocatorTimeout, ChannelError
from batchnet.common.schemas import AllocatorRequest, AllocatorResponse, HostSpec
from fakes import FakeSupervisor, client_for, start_allocator


def test_client_round_trip():
    async def scenario():
        service = await start_allocator({"A": 100, "B": 50})
        client = client_for(service)
        try:
            allocation = await client.alloc(120)
            status = await client.status()
            hosts = {h.host_id: h for h in await client.hosts()}
            await client.free(allocation.allocation_id)
            # A second free of the same id is a no-op
            await client.free(allocation.allocation_id)
            after = await client.status()
            return allocation, status, hosts, after
        finally:
            await service.stop()

    allocation, status, hosts, after = asyncio.run(scenario())

    assert allocation.owner_id == "scheduler:1"
    assert {g.host_id: g.units for g in allocation.grants} == {"A": 100, "B": 20}
    assert status.available_capacity == 30
    assert status.allocations == 1
    assert hosts["B"].available_capacity == 30
    assert after.available_capacity == 150


def test_rejected_alloc_returns_none():
    async def scenario():
        service = await start_allocator({"A": 10})
        client = client_for(service)
        try:
            return await client.alloc(11), await client.available_units()
        finally:
            await service.stop()

    rejected, available = asyncio.run(scenario())
    assert rejected is None
    assert available == 10


def test_garbage_collection_of_dead_owner():
    async def scenario():
        service = await start_allocator({"A": 50})
        dead = client_for(service, owner_id="worker-host:4242")
        await dead.alloc(10)
        before = service.ledger.hosts["A"].available_capacity

        service.liveness.alive.discard("worker-host:4242")
        freed = await service.housekeep()
        await service.stop()
        return before, freed, service.ledger

    before, freed, ledger = asyncio.run(scenario())
    assert before == 40
    assert freed == 1
    assert ledger.hosts["A"].available_capacity == 50
    assert list(ledger.history.values()) == [AllocationState.GARBAGE_COLLECTED]


def test_housekeeping_applies_host_changes():
    async def scenario():
        service = await start_allocator({"A": 10})
        service.host_provider.update(HostSpec(host_id="B", capacity=6))
        await service.housekeep()
        status = service.ledger.status()
        await service.stop()
        return status

    status = asyncio.run(scenario())
    assert status.total_capacity == 16


def test_malformed_request_gets_error_response():
    async def scenario():
        service = await start_allocator({"A": 10})
        request = AllocatorRequest(
            owner_id="scheduler:1",
            request_id="r1",
            operation=AllocatorOperation.ALLOC,
            payload={"units": "lots"},
        )
        try:
            return await call(service.channel, request, timeout=2.0, poll_interval=0.01)
        finally:
            await service.stop()

    response = asyncio.run(scenario())
    assert response.ok is False
    assert response.error


def test_client_raises_on_error_response():
    async def scenario():
        service = await start_allocator({"A": 10})
        client = client_for(service)
        try:
            await client.free(None)
        finally:
            await service.stop()

    with pytest.raises(ChannelError):
        asyncio.run(scenario())


def test_request_timeout_without_service():
    async def scenario():
        client = AllocatorClient(InProcessChannel(), owner_id="lonely:1", timeout=0.2, poll_interval=0.01)
        await client.status()

    with pytest.raises(AllocatorTimeout):
        asyncio.run(scenario())


def test_duplicate_responses_are_dropped():
    async def scenario():
        channel = InProcessChannel()
        first = AllocatorResponse(owner_id="o", request_id="r", payload=1)
        second = AllocatorResponse(owner_id="o", request_id="r", payload=2)
        await channel.respond(first)
        await channel.respond(second)
        received = await channel.poll_response("o", "r")
        again = await channel.poll_response("o", "r")
        return received, again

    received, again = asyncio.run(scenario())
    assert received.payload == 1
    assert again is None


def test_reserve_holds_placeholders_until_release():
    async def scenario():
        service = await start_allocator({"A": 4, "B": 4})
        supervisor = FakeSupervisor({})
        client = client_for(service, supervisor=supervisor)
        try:
            reservation = await client.reserve(6, "n00dles", hold_placeholders=True)
            alive = [await supervisor.is_alive(h) for h in reservation.placeholders]
            await client.release(reservation)
            return reservation, alive, service.ledger.total_available(), supervisor
        finally:
            await service.stop()

    reservation, alive, available, supervisor = asyncio.run(scenario())
    assert reservation.threads == 6
    assert alive == [True, True]
    assert len(supervisor.killed) == 2
    assert available == 8


def test_reserve_releases_when_placeholder_fails():
    async def scenario():
        service = await start_allocator({"A": 4})
        supervisor = FakeSupervisor({}, fail_kinds={"placeholder"})
        client = client_for(service, supervisor=supervisor)
        try:
            reservation = await client.reserve(2, "n00dles", hold_placeholders=True)
            return reservation, service.ledger.total_available()
        finally:
            await service.stop()

    reservation, available = asyncio.run(scenario())
    assert reservation is None
    assert available == 4


def test_redis_response_keys_are_scoped_by_owner_and_request():
    assert RedisChannel.response_key("host:12", "abc") == "batchnet:alloc:response:host:12:abc"


def test_redelivered_alloc_is_applied_once():
    async def scenario():
        service = await start_allocator({"A": 100})
        client = client_for(service)
        request = AllocatorRequest(
            owner_id="scheduler:1",
            request_id="r-dup",
            operation=AllocatorOperation.ALLOC,
            payload={"units": 30},
        )
        try:
            # Same correlation id delivered twice
            await service.channel.submit(request)
            response = await call(service.channel, request, timeout=2.0, poll_interval=0.01)
            status = await client.status()
            return response, status, service.ledger
        finally:
            await service.stop()

    response, status, ledger = asyncio.run(scenario())

    assert response.ok
    assert response.payload["grants"][0]["units"] == 30
    assert status.allocations == 1
    assert status.available_capacity == 70
    assert ledger.total_available() == 70


def test_replay_cache_is_bounded():
    async def scenario():
        service = await start_allocator({"A": 100})
        service.replay_limit = 2
        await service.stop()
        for i in range(3):
            service.serve_request(AllocatorRequest(
                owner_id="scheduler:1",
                request_id=f"r{i}",
                operation=AllocatorOperation.ALLOC,
                payload={"units": 10},
            ))
        return service

    service = asyncio.run(scenario())

    assert list(service._replies) == [("scheduler:1", "r1"), ("scheduler:1", "r2")]
    assert service.ledger.total_available() == 70


def test_delivered_ids_are_bounded():
    async def scenario():
        channel = InProcessChannel(delivered_limit=2)
        for i in range(3):
            await channel.respond(AllocatorResponse(owner_id="o", request_id=f"r{i}", payload=i))
        oldest = await channel.poll_response("o", "r0")
        newest = await channel.poll_response("o", "r2")
        return channel, oldest, newest

    channel, oldest, newest = asyncio.run(scenario())

    assert list(channel._delivered) == [("o", "r1"), ("o", "r2")]
    assert oldest is None
    assert newest.payload == 2
