from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from webhook_service.delivery_queue import DelayQueue
from webhook_service.domain.models import utc_now


@pytest.mark.asyncio
async def test_items_come_out_in_due_order():
    queue = DelayQueue()
    late, early, now_item = uuid4(), uuid4(), uuid4()
    await queue.put(late, utc_now() + timedelta(milliseconds=80))
    await queue.put(early, utc_now() + timedelta(milliseconds=30))
    await queue.put(now_item)

    assert await asyncio.wait_for(queue.get(), 1) == now_item
    assert await asyncio.wait_for(queue.get(), 1) == early
    assert await asyncio.wait_for(queue.get(), 1) == late
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_get_waits_until_item_is_due():
    queue = DelayQueue()
    item = uuid4()
    await queue.put(item, utc_now() + timedelta(seconds=5))

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(queue.get(), 0.05)
    assert item in queue


@pytest.mark.asyncio
async def test_earlier_item_wakes_sleeping_consumer():
    queue = DelayQueue()
    await queue.put(uuid4(), utc_now() + timedelta(seconds=10))
    consumer = asyncio.create_task(queue.get())
    await asyncio.sleep(0.01)

    urgent = uuid4()
    await queue.put(urgent)

    assert await asyncio.wait_for(consumer, 1) == urgent


@pytest.mark.asyncio
async def test_put_twice_keeps_one_entry_and_earliest_deadline():
    queue = DelayQueue()
    item = uuid4()
    await queue.put(item, utc_now() + timedelta(seconds=10))
    await queue.put(item)
    await queue.put(item, utc_now() + timedelta(seconds=20))

    assert len(queue) == 1
    assert await asyncio.wait_for(queue.get(), 1) == item


@pytest.mark.asyncio
async def test_discarded_item_is_never_returned():
    queue = DelayQueue()
    dropped, kept = uuid4(), uuid4()
    await queue.put(dropped)
    await queue.put(kept, utc_now() + timedelta(milliseconds=20))
    queue.discard(dropped)

    assert await asyncio.wait_for(queue.get(), 1) == kept
