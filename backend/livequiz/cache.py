import logging
import time
from typing import Dict, List, Optional

import orjson

from .config import config

logger = logging.getLogger(__name__)


def fast_dumps(obj) -> str:
    return orjson.dumps(obj).decode("utf-8")


class LeaderboardCache:
    """Hybrid Redis + in-memory cache for built leaderboards.
    Uses Redis when a client is attached, falls back to in-memory otherwise.
    Entries are keyed by round and limit and dropped on every submission.
    """

    def __init__(self, redis_client=None, ttl: float = config.LEADERBOARD_CACHE_TTL):
        self.redis = redis_client
        self.ttl = ttl
        self._mem: Dict[str, List[Dict]] = {}
        self._mem_timestamps: Dict[str, float] = {}
        # bumped by invalidate(); a build that started before it must not be stored
        self.generation = 0

    @staticmethod
    def _key(round_no: int, limit: int) -> str:
        return f"leaderboard:{round_no}:{limit}"

    async def get(self, round_no: int, limit: int) -> Optional[List[Dict]]:
        key = self._key(round_no, limit)
        if self.redis:
            try:
                data = await self.redis.get(key)
                if data:
                    return orjson.loads(data)
            except Exception as e:
                logger.warning(f"Redis read failed, using memory cache: {e}")
        if key in self._mem and time.monotonic() - self._mem_timestamps.get(key, 0) < self.ttl:
            return self._mem[key]
        return None

    async def set(self, round_no: int, limit: int, leaderboard: List[Dict], generation: Optional[int] = None):
        if generation is not None and generation != self.generation:
            logger.debug(f"Skipping stale leaderboard for round {round_no}")
            return
        key = self._key(round_no, limit)
        self._mem[key] = leaderboard
        self._mem_timestamps[key] = time.monotonic()
        if self.redis:
            try:
                await self.redis.set(key, fast_dumps(leaderboard), px=max(1, int(self.ttl * 1000)))
            except Exception as e:
                logger.warning(f"Redis write failed: {e}")

    async def invalidate(self):
        self.generation += 1
        self._mem.clear()
        self._mem_timestamps.clear()
        if self.redis:
            try:
                keys = [key async for key in self.redis.scan_iter(match="leaderboard:*")]
                if keys:
                    await self.redis.delete(*keys)
            except Exception as e:
                logger.warning(f"Redis invalidate failed: {e}")
