"""
Owner liveness probes and heartbeats.

The allocator garbage-collects allocations whose owner is gone. Owners on the
allocator's own machine are checked by pid; owners talking to a shared Redis
keep a heartbeat key alive instead, and disappear when the key expires.
"""

import asyncio
import socket
from typing import Iterable, Optional, Protocol, Set

import psutil
import structlog

from batchnet.common.constants import REDIS_KEYS, TIMEOUTS
from batchnet.common.utils import parse_owner_pid


logger = structlog.get_logger(__name__)


class OwnerLiveness(Protocol):
    async def is_alive(self, owner_id: str) -> bool: ...


def heartbeat_key(owner_id: str) -> str:
    return f"{REDIS_KEYS['HEARTBEAT_PREFIX']}:{owner_id}"


class PidLiveness:
    """Owner ids are 'hostname:pid'; owners on other machines count as alive"""

    def __init__(self, hostname: Optional[str] = None):
        self.hostname = hostname or socket.gethostname()

    async def is_alive(self, owner_id: str) -> bool:
        host, sep, _ = owner_id.rpartition(":")
        if sep and host != self.hostname:
            return True
        pid = parse_owner_pid(owner_id)
        if pid is None:
            return True
        return psutil.pid_exists(pid)


class StaticLiveness:
    """Explicit set of live owners"""

    def __init__(self, alive: Iterable[str] = ()):
        self.alive: Set[str] = set(alive)

    async def is_alive(self, owner_id: str) -> bool:
        return owner_id in self.alive


class HeartbeatLiveness:
    """An owner is alive while its heartbeat key exists"""

    def __init__(self, redis):
        self.redis = redis

    async def is_alive(self, owner_id: str) -> bool:
        return bool(await self.redis.exists(heartbeat_key(owner_id)))


class OwnerHeartbeat:
    """Periodically refreshes this owner's heartbeat key"""

    def __init__(
        self,
        redis,
        owner_id: str,
        interval: float = TIMEOUTS["HEARTBEAT"],
        ttl: int = TIMEOUTS["HEARTBEAT_TTL"],
    ):
        self.redis = redis
        self.owner_id = owner_id
        self.interval = interval
        self.ttl = ttl
        self.running = False
        self.heartbeat_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self.running = True
        await self._beat()
        self.heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self) -> None:
        self.running = False
        if self.heartbeat_task:
            self.heartbeat_task.cancel()
            try:
                await self.heartbeat_task
            except asyncio.CancelledError:
                pass
        await self.redis.delete(heartbeat_key(self.owner_id))

    async def _beat(self) -> None:
        await self.redis.set(heartbeat_key(self.owner_id), "1", ex=self.ttl)

    async def _heartbeat_loop(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(self.interval)
                await self._beat()
                logger.debug("Heartbeat sent", owner_id=self.owner_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Failed to send heartbeat", owner_id=self.owner_id, error=str(e))
