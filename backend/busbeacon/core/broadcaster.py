"""Redis pub/sub broadcaster for vehicle state, ETA and alert updates."""

import asyncio
import logging

import orjson
import redis.asyncio as aioredis

from busbeacon.config import settings
from busbeacon.schemas.vehicle import ApproachingAlert, VehicleUpdate

logger = logging.getLogger(__name__)

CHANNEL = "busbeacon:vehicles"
ALERT_CHANNEL = "busbeacon:approaching"
STATE_KEY = "busbeacon:state"


class Broadcaster:
    """Publishes updates to Redis and fans them out to WebSocket subscribers."""

    def __init__(self, redis_url: str | None = None) -> None:
        self.redis_url = redis_url or settings.redis_url
        self._redis: aioredis.Redis | None = None
        self._subscribers: set[asyncio.Queue] = set()
        # vehicle_id -> last update dict, used for snapshots
        self._latest: dict[str, dict] = {}

    async def connect(self) -> None:
        self._redis = aioredis.from_url(self.redis_url, decode_responses=False)

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()

    async def publish_update(self, update: VehicleUpdate) -> None:
        """Publish a vehicle state (+ ETAs) and remember it for new subscribers."""
        data = update.model_dump(mode="json")
        self._latest[update.vehicle.vehicle_id] = data
        payload = orjson.dumps(data)

        if self._redis:
            try:
                await self._redis.hset(STATE_KEY, update.vehicle.vehicle_id, payload)
                await self._redis.publish(CHANNEL, payload)
            except Exception:
                logger.exception("Failed to publish vehicle update to Redis")

        self._fan_out(payload)

    async def publish_alert(self, alert: ApproachingAlert) -> None:
        """Hand approaching-stop classifications to the notification side."""
        payload = orjson.dumps(alert.model_dump(mode="json"))

        if self._redis:
            try:
                await self._redis.publish(ALERT_CHANNEL, payload)
            except Exception:
                logger.exception("Failed to publish approaching alert to Redis")

        self._fan_out(payload)

    def _fan_out(self, payload: bytes) -> None:
        dead = set()
        for q in self._subscribers:
            try:
                q.put_nowait(payload)
            except asyncio.QueueFull:
                dead.add(q)
        self._subscribers -= dead

    def snapshot(self) -> bytes:
        return orjson.dumps({"type": "snapshot", "vehicles": list(self._latest.values())})

    def subscribe(self) -> asyncio.Queue:
        """Create a new subscriber queue for WebSocket fan-out."""
        q: asyncio.Queue = asyncio.Queue(maxsize=10)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)
