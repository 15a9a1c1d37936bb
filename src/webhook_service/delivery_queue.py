"""Time-ordered in-process queue of delivery ids."""
from __future__ import annotations

import asyncio
import heapq
import itertools
from datetime import datetime
from uuid import UUID

from webhook_service.domain.models import utc_now


class DelayQueue:
    """Min-heap keyed by due time; ``get`` sleeps until the head is due.

    Consumers wait on a condition that ``put`` notifies, so an earlier item
    arriving while they sleep wakes them. An id is queued at most once; a
    second ``put`` only moves it earlier.
    """

    def __init__(self) -> None:
        self._heap: list[tuple[float, int, UUID]] = []
        self._scheduled: dict[UUID, float] = {}
        self._counter = itertools.count()
        self._cond = asyncio.Condition()

    def __len__(self) -> int:
        return len(self._scheduled)

    def __contains__(self, item: object) -> bool:
        return item in self._scheduled

    @staticmethod
    def _deadline(due_at: datetime | None) -> float:
        loop_now = asyncio.get_running_loop().time()
        if due_at is None:
            return loop_now
        return loop_now + max(0.0, (due_at - utc_now()).total_seconds())

    async def put(self, item: UUID, due_at: datetime | None = None) -> None:
        deadline = self._deadline(due_at)
        async with self._cond:
            current = self._scheduled.get(item)
            if current is not None and current <= deadline:
                return
            self._scheduled[item] = deadline
            heapq.heappush(self._heap, (deadline, next(self._counter), item))
            self._cond.notify_all()

    def discard(self, item: UUID) -> None:
        # heap entry is dropped lazily by get()
        self._scheduled.pop(item, None)

    def _drop_stale(self) -> None:
        while self._heap:
            deadline, _, item = self._heap[0]
            if self._scheduled.get(item) == deadline:
                return
            heapq.heappop(self._heap)

    async def get(self) -> UUID:
        loop = asyncio.get_running_loop()
        async with self._cond:
            while True:
                self._drop_stale()
                if not self._heap:
                    await self._cond.wait()
                    continue
                deadline, _, item = self._heap[0]
                delay = deadline - loop.time()
                if delay <= 0:
                    heapq.heappop(self._heap)
                    del self._scheduled[item]
                    return item
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
