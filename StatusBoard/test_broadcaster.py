"""Tests for the device status broadcaster."""
import asyncio
import json
from broadcaster import DeviceStatusBroadcaster


class FakeWebSocket:
    """Records sent frames; optionally fails every send."""

    def __init__(self, fail=False):
        self.fail = fail
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(json.loads(text))


def test_connect_sends_initial_snapshot_only_to_new_subscriber():
    async def scenario():
        broadcaster = DeviceStatusBroadcaster()
        first, second = FakeWebSocket(), FakeWebSocket()
        await broadcaster.connect(first, lambda: {"pc": {"status": "online"}})
        await broadcaster.connect(second, lambda: {"pc": {"status": "offline"}})
        return broadcaster, first, second

    broadcaster, first, second = asyncio.run(scenario())

    assert first.accepted and second.accepted
    assert [m["data"]["pc"]["status"] for m in first.sent] == ["online"]
    assert [m["data"]["pc"]["status"] for m in second.sent] == ["offline"]
    assert first.sent[0]["type"] == "deviceStatus"
    assert first.sent[0]["timestamp"].endswith("Z")
    assert broadcaster.client_count == 2


def test_broadcast_drops_failing_channels():
    async def scenario():
        broadcaster = DeviceStatusBroadcaster()
        healthy, broken = FakeWebSocket(), FakeWebSocket()
        await broadcaster.connect(healthy, dict)
        await broadcaster.connect(broken, dict)
        broken.fail = True
        delivered = await broadcaster.broadcast({"pc": {"status": "online"}})
        return broadcaster, healthy, broken, delivered

    broadcaster, healthy, broken, delivered = asyncio.run(scenario())

    assert delivered == 1
    assert broadcaster.active_connections == {healthy}
    assert healthy.sent[-1]["data"] == {"pc": {"status": "online"}}


def test_failed_initial_send_is_not_subscribed():
    async def scenario():
        broadcaster = DeviceStatusBroadcaster()
        await broadcaster.connect(FakeWebSocket(fail=True), dict)
        return broadcaster

    assert asyncio.run(scenario()).client_count == 0


def test_publish_from_worker_threads_preserves_order():
    async def scenario():
        broadcaster = DeviceStatusBroadcaster()
        broadcaster.bind_loop(asyncio.get_running_loop())
        subscriber = FakeWebSocket()
        await broadcaster.connect(subscriber, dict)

        def publish_all():
            for index in range(20):
                broadcaster.publish({"seq": index})

        await asyncio.to_thread(publish_all)
        for _ in range(100):
            if len(subscriber.sent) == 21:
                break
            await asyncio.sleep(0.01)
        return subscriber

    subscriber = asyncio.run(scenario())
    assert [m["data"]["seq"] for m in subscriber.sent[1:]] == list(range(20))


def test_publish_without_loop_or_clients_is_noop():
    broadcaster = DeviceStatusBroadcaster()
    broadcaster.publish({"pc": {}})

    loop = asyncio.new_event_loop()
    try:
        broadcaster.bind_loop(loop)
        broadcaster.publish({"pc": {}})
    finally:
        loop.close()


def test_disconnect_unknown_socket_is_harmless():
    broadcaster = DeviceStatusBroadcaster()
    broadcaster.disconnect(FakeWebSocket())
    assert broadcaster.client_count == 0
