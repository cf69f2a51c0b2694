"""
Allocator request/response channel

Requests carry a structured correlation id `(owner_id, request_id)`. The
service consumes requests one at a time and delivers each response to a slot
keyed by that id; the requester polls its slot until the response arrives or
the request times out. A response is consumed once; a second delivery for the
same id is dropped.
"""

import asyncio
import time
from collections import OrderedDict
from typing import Dict, Optional, Protocol, Tuple

import structlog
from redis import asyncio as aioredis

from batchnet.common.constants import LIMITS, REDIS_KEYS, TIMEOUTS
from batchnet.common.errors import AllocatorTimeout
from batchnet.common.schemas import AllocatorRequest, AllocatorResponse


logger = structlog.get_logger(__name__)


class AllocatorChannel(Protocol):
    """Transport between allocator clients and the allocator service"""

    async def submit(self, request: AllocatorRequest) -> None: ...

    async def next_request(self, timeout: float) -> Optional[AllocatorRequest]: ...

    async def respond(self, response: AllocatorResponse) -> None: ...

    async def poll_response(self, owner_id: str, request_id: str) -> Optional[AllocatorResponse]: ...

    async def close(self) -> None: ...


async def call(
    channel: AllocatorChannel,
    request: AllocatorRequest,
    timeout: float = TIMEOUTS["REQUEST"],
    poll_interval: float = TIMEOUTS["REQUEST_POLL"],
) -> AllocatorResponse:
    """Submit a request and poll for its response"""
    await channel.submit(request)
    deadline = time.monotonic() + timeout
    while True:
        response = await channel.poll_response(request.owner_id, request.request_id)
        if response is not None:
            return response
        if time.monotonic() >= deadline:
            raise AllocatorTimeout(request.operation.value, request.request_id, timeout)
        await asyncio.sleep(poll_interval)


class InProcessChannel:
    """Multiplexed asyncio queue for allocator and clients sharing one event loop"""

    def __init__(self, delivered_limit: int = LIMITS["DELIVERED_IDS"]) -> None:
        self._requests: "asyncio.Queue[AllocatorRequest]" = asyncio.Queue()
        self._responses: Dict[Tuple[str, str], AllocatorResponse] = {}
        self._delivered: "OrderedDict[Tuple[str, str], bool]" = OrderedDict()
        self.delivered_limit = delivered_limit
        self._arrived = asyncio.Event()

    async def submit(self, request: AllocatorRequest) -> None:
        await self._requests.put(request)

    async def next_request(self, timeout: float) -> Optional[AllocatorRequest]:
        try:
            return await asyncio.wait_for(self._requests.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def respond(self, response: AllocatorResponse) -> None:
        key = (response.owner_id, response.request_id)
        if key in self._delivered:
            logger.debug("Dropping duplicate response", owner_id=key[0], request_id=key[1])
            return
        self._delivered[key] = True
        while len(self._delivered) > self.delivered_limit:
            # Unclaimed responses expire with their id
            expired, _ = self._delivered.popitem(last=False)
            self._responses.pop(expired, None)
        self._responses[key] = response
        self._arrived.set()

    async def poll_response(self, owner_id: str, request_id: str) -> Optional[AllocatorResponse]:
        response = self._responses.pop((owner_id, request_id), None)
        if response is None:
            # Wake up early when anything is delivered instead of sleeping the
            # whole poll interval.
            self._arrived.clear()
            try:
                await asyncio.wait_for(self._arrived.wait(), TIMEOUTS["REQUEST_POLL"])
            except asyncio.TimeoutError:
                pass
            response = self._responses.pop((owner_id, request_id), None)
        return response

    async def close(self) -> None:
        self._responses.clear()


class RedisChannel:
    """Channel over Redis: a request list plus one response key per request"""

    def __init__(self, redis_url: str = "redis://localhost:6379", redis=None):
        self.redis_url = redis_url
        self.redis = redis if redis is not None else aioredis.from_url(redis_url)
        self.response_ttl = TIMEOUTS["RESPONSE_TTL"]

    @staticmethod
    def response_key(owner_id: str, request_id: str) -> str:
        return f"{REDIS_KEYS['RESPONSE_PREFIX']}:{owner_id}:{request_id}"

    async def submit(self, request: AllocatorRequest) -> None:
        await self.redis.lpush(REDIS_KEYS["REQUEST_QUEUE"], request.model_dump_json())

    async def next_request(self, timeout: float) -> Optional[AllocatorRequest]:
        result = await self.redis.brpop(REDIS_KEYS["REQUEST_QUEUE"], timeout=max(1, int(timeout)))
        if not result:
            return None
        _, raw = result
        try:
            return AllocatorRequest.model_validate_json(raw)
        except ValueError as e:
            logger.warning("Discarding malformed allocator request", error=str(e))
            return None

    async def respond(self, response: AllocatorResponse) -> None:
        key = self.response_key(response.owner_id, response.request_id)
        # nx: a redelivered request must not overwrite the first answer
        await self.redis.set(key, response.model_dump_json(), ex=self.response_ttl, nx=True)

    async def poll_response(self, owner_id: str, request_id: str) -> Optional[AllocatorResponse]:
        key = self.response_key(owner_id, request_id)
        raw = await self.redis.get(key)
        if raw is None:
            return None
        await self.redis.delete(key)
        return AllocatorResponse.model_validate_json(raw)

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
