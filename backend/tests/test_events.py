import threading

from retailpos.events import NEW_SALE, EventBus


def test_synchronous_delivery_to_all_subscribers():
    bus = EventBus(asynchronous=False)
    seen = []
    bus.subscribe(NEW_SALE, lambda e: seen.append(("a", e.payload["id"])))
    bus.subscribe(NEW_SALE, lambda e: seen.append(("b", e.payload["id"])))

    event = bus.publish(NEW_SALE, {"id": "s-1"})

    assert event.name == NEW_SALE
    assert seen == [("a", "s-1"), ("b", "s-1")]


def test_failing_handler_is_isolated():
    bus = EventBus(asynchronous=False)
    seen = []

    def broken(event):
        raise ValueError("boom")

    bus.subscribe(NEW_SALE, broken)
    bus.subscribe(NEW_SALE, lambda e: seen.append(e.event_id))

    event = bus.publish(NEW_SALE, {"id": "s-2"})

    assert seen == [event.event_id]


def test_unsubscribe():
    bus = EventBus(asynchronous=False)
    seen = []
    unsubscribe = bus.subscribe(NEW_SALE, seen.append)
    unsubscribe()

    bus.publish(NEW_SALE, {})

    assert seen == []
    assert bus.subscribers(NEW_SALE) == []


def test_publish_without_subscribers():
    bus = EventBus(asynchronous=False)
    assert bus.publish("nobody-listens", {"x": 1}) is not None


def test_asynchronous_publish_does_not_block():
    bus = EventBus(asynchronous=True, max_workers=1)
    release = threading.Event()
    delivered = threading.Event()

    def slow(event):
        release.wait(timeout=5)
        delivered.set()

    bus.subscribe(NEW_SALE, slow)
    try:
        bus.publish(NEW_SALE, {"id": "s-3"})
        assert not delivered.is_set()

        release.set()
        assert bus.drain(timeout=5)
        assert delivered.is_set()
    finally:
        release.set()
        bus.shutdown()


def test_payload_is_copied():
    bus = EventBus(asynchronous=False)
    seen = []
    bus.subscribe(NEW_SALE, lambda e: seen.append(e.payload))

    payload = {"id": "s-4"}
    bus.publish(NEW_SALE, payload)
    payload["id"] = "changed"

    assert seen[0]["id"] == "s-4"


def test_event_to_dict():
    bus = EventBus(asynchronous=False)
    event = bus.publish(NEW_SALE, {"id": "s-5"})
    data = event.to_dict()
    assert data["name"] == NEW_SALE
    assert data["payload"] == {"id": "s-5"}
    assert data["occurred_at"].endswith("Z")
