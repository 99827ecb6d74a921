"""Push channel for live quiz snapshots.

A single publisher task snapshots quiz state + leaderboard every interval and
fans the frame out to one bounded queue per subscriber. Subscribing happens
through ``LiveSyncHub.subscribe()``; leaving the ``async with`` block removes
the queue, and the publisher stops once nobody is listening.
"""

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Set

from .config import config

logger = logging.getLogger(__name__)

SnapshotFn = Callable[[], Awaitable[Dict]]


class Subscription:
    def __init__(self, maxsize: int):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, frame: Dict):
        """Enqueue without blocking; a slow reader loses its oldest frame."""
        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(frame)

    async def next_frame(self) -> Dict:
        return await self.queue.get()

    def __aiter__(self) -> AsyncIterator[Dict]:
        return self

    async def __anext__(self) -> Dict:
        return await self.next_frame()


class LiveSyncHub:
    def __init__(
        self,
        snapshot: SnapshotFn,
        interval: float = config.STREAM_INTERVAL_SEC,
        queue_size: int = config.STREAM_QUEUE_SIZE,
    ):
        self._snapshot = snapshot
        self.interval = interval
        self._queue_size = queue_size
        self._subscribers: Set[Subscription] = set()
        self._publish_lock = asyncio.Lock()
        self._publisher: Optional[asyncio.Task] = None
        self._seq = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[Subscription]:
        sub = Subscription(self._queue_size)
        async with self._publish_lock:
            # initial frame goes in before any tick can reach this queue
            sub.offer(await self._frame("state"))
            self._subscribers.add(sub)
        self._ensure_publisher()
        logger.info(f"✓ Stream subscriber joined ({self.subscriber_count} total)")
        try:
            yield sub
        finally:
            self._subscribers.discard(sub)
            logger.info(f"✗ Stream subscriber left ({self.subscriber_count} total)")

    async def publish_now(self):
        """Push a fresh frame immediately, outside the regular cadence."""
        if not self._subscribers:
            return
        await self._publish()

    async def close(self):
        task = self._publisher
        self._publisher = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._subscribers.clear()

    # ------------------------------------------------------------------

    def _ensure_publisher(self):
        if self._publisher is None or self._publisher.done():
            self._publisher = asyncio.create_task(self._run())

    async def _run(self):
        try:
            while self._subscribers:
                await asyncio.sleep(self.interval)
                if not self._subscribers:
                    break
                await self._publish()
        finally:
            if self._publisher is asyncio.current_task():
                self._publisher = None

    async def _publish(self):
        async with self._publish_lock:
            frame = await self._frame("update")
            for sub in list(self._subscribers):
                sub.offer(frame)

    async def _frame(self, kind: str) -> Dict:
        seq = next(self._seq)
        try:
            data = await self._snapshot()
        except Exception as e:
            logger.error(f"Snapshot error: {e}", exc_info=True)
            return {"type": "error", "seq": seq, "data": {"message": "Connection error"}}
        return {"type": kind, "seq": seq, "data": data}
