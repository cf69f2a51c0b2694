from __future__ import annotations

from fastapi.testclient import TestClient

from batchnet.allocator.api import create_app
from batchnet.allocator.channel import InProcessChannel
from batchnet.allocator.service import AllocatorService
from batchnet.common.schemas import HostSpec
from batchnet.integrations.hosts import StaticHostProvider
from batchnet.integrations.liveness import StaticLiveness


def _service() -> AllocatorService:
    provider = StaticHostProvider([
        HostSpec(host_id="home", capacity=32, reserved=4, privileged=True),
        HostSpec(host_id="n00dles", capacity=8),
    ])
    return AllocatorService(InProcessChannel(), provider, StaticLiveness({"owner:1"}), housekeeping_period=3600)


def test_status_and_host_views():
    service = _service()
    with TestClient(create_app(service)) as client:
        service.ledger.allocate("owner:1", 10)

        health = client.get("/health").json()
        status = client.get("/api/v1/status").json()
        hosts = {h["host_id"]: h for h in client.get("/api/v1/hosts").json()}
        allocations = client.get("/api/v1/allocations").json()
        home = client.get("/api/v1/hosts/home")
        missing = client.get("/api/v1/hosts/nowhere")

    assert health["status"] == "healthy"
    assert status == {"total_capacity": 36, "available_capacity": 26, "allocations": 1}
    assert hosts["n00dles"]["available_capacity"] == 0
    assert hosts["home"]["privileged"] is True
    assert hosts["home"]["available_capacity"] == 26
    assert [a["owner_id"] for a in allocations] == ["owner:1"]
    assert home.status_code == 200
    assert home.json()["allocations"][0]["units"] == 2
    assert missing.status_code == 404
