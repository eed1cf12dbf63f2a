from __future__ import annotations

import asyncio

from labeleval.core.enums import EventType
from labeleval.services.event_broadcaster import EventBroadcaster


def test_publish_fans_out_to_every_subscriber_of_the_evaluation():
    async def _scenario():
        broadcaster = EventBroadcaster()
        first = broadcaster.subscribe("eval-1")
        second = broadcaster.subscribe("eval-1")
        other = broadcaster.subscribe("eval-2")

        broadcaster.publish("eval-1", EventType.LLM_CALL_START, {"messageId": "m1"})

        assert await first.next_event() == {"type": "llm_call_start", "data": {"messageId": "m1"}}
        assert await second.next_event() == {"type": "llm_call_start", "data": {"messageId": "m1"}}
        assert other.queue.empty()

    asyncio.run(_scenario())


def test_complete_closes_all_subscriptions():
    async def _scenario():
        broadcaster = EventBroadcaster()
        subscription = broadcaster.subscribe("eval-1")

        broadcaster.publish_snapshot("eval-1", {"id": "eval-1", "status": "completed"})

        event = await subscription.next_event()
        assert event["type"] == "complete"
        assert event["data"]["status"] == "completed"
        assert await subscription.next_event() is None
        assert broadcaster.subscriber_count("eval-1") == 0

    asyncio.run(_scenario())


def test_non_terminal_snapshot_is_published_as_evaluation_event():
    async def _scenario():
        broadcaster = EventBroadcaster()
        subscription = broadcaster.subscribe("eval-1")

        broadcaster.publish_snapshot("eval-1", {"id": "eval-1", "status": "paused"})

        event = await subscription.next_event()
        assert event["type"] == "evaluation"
        assert broadcaster.subscriber_count("eval-1") == 1

    asyncio.run(_scenario())


def test_last_unsubscribe_frees_bookkeeping():
    async def _scenario():
        broadcaster = EventBroadcaster()
        first = broadcaster.subscribe("eval-1")
        second = broadcaster.subscribe("eval-1")

        first.unsubscribe()
        assert broadcaster.subscriber_count("eval-1") == 1
        second.unsubscribe()
        second.unsubscribe()
        assert broadcaster.subscriber_count("eval-1") == 0
        assert "eval-1" not in broadcaster._subscribers

    asyncio.run(_scenario())


def test_slow_subscriber_is_dropped_without_affecting_others():
    async def _scenario():
        broadcaster = EventBroadcaster(queue_maxsize=2)
        slow = broadcaster.subscribe("eval-1")
        fast = broadcaster.subscribe("eval-1")

        for index in range(3):
            broadcaster.publish("eval-1", EventType.LLM_CALL_START, {"messageId": f"m{index}"})
            if index < 2:
                await fast.next_event()

        assert broadcaster.subscriber_count("eval-1") == 1
        assert (await fast.next_event())["data"] == {"messageId": "m2"}
        assert await asyncio.wait_for(slow.next_event(), 1.0) is None

    asyncio.run(_scenario())


def test_slow_subscriber_still_receives_complete():
    async def _scenario():
        broadcaster = EventBroadcaster(queue_maxsize=2)
        slow = broadcaster.subscribe("eval-1")

        broadcaster.publish("eval-1", EventType.LLM_CALL_START, {"messageId": "m0"})
        broadcaster.publish("eval-1", EventType.LLM_CALL_START, {"messageId": "m1"})
        broadcaster.publish_snapshot("eval-1", {"id": "eval-1", "status": "completed"})

        event = await asyncio.wait_for(slow.next_event(), 1.0)
        assert event["type"] == "complete"
        assert await asyncio.wait_for(slow.next_event(), 1.0) is None
        assert broadcaster.subscriber_count("eval-1") == 0

    asyncio.run(_scenario())


def test_publish_without_subscribers_is_noop():
    broadcaster = EventBroadcaster()
    broadcaster.publish("missing", EventType.ERROR, {"message": "x"})
    assert broadcaster.subscriber_count("missing") == 0
