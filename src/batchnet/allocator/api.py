"""
Allocator API Server

FastAPI application exposing read-only views of the allocator: health,
aggregate capacity, and per-host ledger state with the allocations placed on
each host. Allocation itself goes through the request channel.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List

import structlog
from fastapi import FastAPI, HTTPException

from batchnet import __version__
from batchnet.common.constants import API_ROUTES
from batchnet.common.schemas import Allocation, CapacityStatus, HostView
from .service import AllocatorService


logger = structlog.get_logger(__name__)


def create_app(service: AllocatorService) -> FastAPI:
    """Create the FastAPI application around an allocator service"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting allocator API")
        await service.start()
        try:
            yield
        finally:
            logger.info("Shutting down allocator API")
            await service.stop()

    app = FastAPI(
        title="batchnet allocator",
        description="Block capacity allocator",
        version=__version__,
        lifespan=lifespan,
    )

    @app.get(API_ROUTES["HEALTH"])
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy" if service.running else "starting",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
        }

    @app.get(API_ROUTES["STATUS"], response_model=CapacityStatus)
    async def get_status():
        """Aggregate capacity across hosts"""
        return service.ledger.status()

    @app.get(API_ROUTES["HOSTS"], response_model=List[HostView])
    async def list_hosts():
        """Per-host capacity with placed allocations"""
        return service.ledger.host_views()

    @app.get(f"{API_ROUTES['HOSTS']}/{{host_id}}", response_model=HostView)
    async def get_host(host_id: str):
        for view in service.ledger.host_views():
            if view.host_id == host_id:
                return view
        raise HTTPException(status_code=404, detail="Host not found")

    @app.get(API_ROUTES["ALLOCATIONS"], response_model=List[Allocation])
    async def list_allocations():
        """Live allocations"""
        return list(service.ledger.allocations.values())

    return app
