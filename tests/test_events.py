import sys

sys.path.insert(0, '.')

import asyncio

import pytest

from orchestration.events import EVENT_NAMES, ORDER_UPDATE, PRICE_UPDATE, EventBus


def test_failing_observer_does_not_block_others():
    bus = EventBus()
    received = []

    def broken(event, payload):
        raise RuntimeError("observer bug")

    async def async_observer(event, payload):
        await asyncio.sleep(0)
        received.append(('async', payload))

    bus.subscribe(PRICE_UPDATE, broken)
    bus.subscribe(PRICE_UPDATE, lambda event, payload: received.append(('sync', payload)))
    bus.subscribe(PRICE_UPDATE, async_observer)

    delivered = asyncio.run(bus.publish(PRICE_UPDATE, 42))
    assert delivered == 2
    assert received == [('sync', 42), ('async', 42)]


def test_unsubscribe_stops_delivery():
    bus = EventBus()
    received = []
    unsubscribe = bus.subscribe(ORDER_UPDATE, lambda event, payload: received.append(payload))

    async def run():
        await bus.publish(ORDER_UPDATE, 1)
        unsubscribe()
        await bus.publish(ORDER_UPDATE, 2)

    asyncio.run(run())
    assert received == [1]
    assert bus.observer_count(ORDER_UPDATE) == 0


def test_subscribe_all_receives_every_event():
    bus = EventBus()
    seen = []
    bus.subscribe_all(lambda event, payload: seen.append(event))

    async def run():
        for name in EVENT_NAMES:
            await bus.publish(name)

    asyncio.run(run())
    assert seen == list(EVENT_NAMES)


def test_unknown_event_rejected():
    bus = EventBus()
    with pytest.raises(ValueError):
        bus.subscribe('price_update', lambda event, payload: None)


def test_publish_without_observers():
    assert asyncio.run(EventBus().publish(PRICE_UPDATE, None)) == 0
