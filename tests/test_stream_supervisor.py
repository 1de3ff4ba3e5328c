import asyncio

import pytest

from fairquote.sim.fakes import FakeTransport, FakeTransportFactory, RecordingSleep, wait_for_condition
from fairquote.streams.supervisor import ResilientStream, open_stream


def route_by_channel(msg):
    return msg.get("channel")


@pytest.mark.asyncio
async def test_delivers_messages_and_resubscribes_after_drop():
    t1 = FakeTransport()
    t2 = FakeTransport()
    factory = FakeTransportFactory(t1, t2)
    sleep = RecordingSleep()
    stream = ResilientStream(factory, name="test", reconnect_delay_s=5.0, sleep=sleep)

    received = []
    await stream.subscribe("ticks", received.append, request={"op": "sub", "ch": "ticks"})
    stream.start()
    assert await stream.wait_connected(timeout=1)
    assert t1.sent_json() == [{"op": "sub", "ch": "ticks"}]

    t1.feed({"p": 1})
    t1.feed({"p": 2})
    await wait_for_condition(lambda: len(received) == 2)

    t1.fail()
    await wait_for_condition(lambda: stream.connect_count == 2)
    assert t1.closed
    assert sleep.calls == [5.0]
    assert t2.sent_json() == [{"op": "sub", "ch": "ticks"}]

    t2.feed({"p": 3})
    await wait_for_condition(lambda: len(received) == 3)
    assert received == [{"p": 1}, {"p": 2}, {"p": 3}]

    await stream.close()


@pytest.mark.asyncio
async def test_unparseable_message_does_not_reconnect():
    t1 = FakeTransport()
    stream = ResilientStream(FakeTransportFactory(t1), name="test", sleep=RecordingSleep())
    received = []
    await stream.subscribe("all", received.append)
    stream.start()
    await stream.wait_connected(timeout=1)

    t1.feed("{not json")
    t1.feed({"ok": True})
    await wait_for_condition(lambda: received == [{"ok": True}])
    assert stream.connect_count == 1
    assert stream.connected

    await stream.close()


@pytest.mark.asyncio
async def test_callback_errors_are_isolated():
    t1 = FakeTransport()
    stream = ResilientStream(FakeTransportFactory(t1), name="test", sleep=RecordingSleep())

    def boom(msg):
        raise RuntimeError("consumer bug")

    good = []
    await stream.subscribe("bad", boom)
    await stream.subscribe("good", good.append)
    stream.start()
    await stream.wait_connected(timeout=1)

    t1.feed({"n": 1})
    t1.feed({"n": 2})
    await wait_for_condition(lambda: len(good) == 2)
    assert stream.connect_count == 1

    await stream.close()


@pytest.mark.asyncio
async def test_failed_connect_is_retried():
    broken = FakeTransport(fail_open=OSError("connection refused"))
    healthy = FakeTransport()
    factory = FakeTransportFactory(broken, healthy)
    sleep = RecordingSleep()
    stream = ResilientStream(factory, name="test", reconnect_delay_s=2.0, sleep=sleep)
    stream.start()

    assert await stream.wait_connected(timeout=1)
    assert sleep.calls == [2.0]
    assert len(factory.created) == 2
    assert stream.connect_count == 1

    await stream.close()


@pytest.mark.asyncio
async def test_close_is_idempotent_and_stops_callbacks():
    t1 = FakeTransport()
    stream = ResilientStream(FakeTransportFactory(t1), name="test", sleep=RecordingSleep())
    received = []
    await stream.subscribe("all", received.append)
    stream.start()
    await stream.wait_connected(timeout=1)

    await stream.close()
    await stream.close()
    assert stream.closed
    assert not stream.connected
    assert t1.closed

    t1.feed({"late": True})
    await asyncio.sleep(0.01)
    assert received == []

    with pytest.raises(RuntimeError):
        stream.start()


@pytest.mark.asyncio
async def test_close_during_reconnect_delay():
    t1 = FakeTransport()
    factory = FakeTransportFactory(t1)
    stream = ResilientStream(factory, name="test", reconnect_delay_s=30.0)
    stream.start()
    await stream.wait_connected(timeout=1)

    t1.fail()
    await wait_for_condition(lambda: not stream.connected)
    await asyncio.wait_for(stream.close(), timeout=1)
    assert len(factory.created) == 1


@pytest.mark.asyncio
async def test_router_and_unsubscribe():
    t1 = FakeTransport()
    t2 = FakeTransport()
    stream = ResilientStream(
        FakeTransportFactory(t1, t2), name="test", router=route_by_channel, sleep=RecordingSleep()
    )
    a, b = [], []
    await stream.subscribe("a", a.append, request={"sub": "a"}, unsubscribe_request={"unsub": "a"})
    await stream.subscribe("b", b.append, request={"sub": "b"}, unsubscribe_request={"unsub": "b"})
    stream.start()
    await stream.wait_connected(timeout=1)

    t1.feed({"channel": "a", "v": 1})
    t1.feed({"channel": "b", "v": 1})
    t1.feed({"channel": "pong"})
    t1.feed({"no_channel": True})
    await wait_for_condition(lambda: len(a) == 1 and len(b) == 1)

    await stream.unsubscribe("a")
    assert t1.sent_json()[-1] == {"unsub": "a"}
    assert [s.key for s in stream.subscriptions()] == ["b"]

    t1.feed({"channel": "a", "v": 2})
    t1.feed({"channel": "b", "v": 2})
    await wait_for_condition(lambda: len(b) == 2)
    assert len(a) == 1

    t1.fail()
    await wait_for_condition(lambda: stream.connect_count == 2)
    assert t2.sent_json() == [{"sub": "b"}]

    await stream.close()


@pytest.mark.asyncio
async def test_subscribe_while_connected_sends_immediately():
    t1 = FakeTransport()
    stream = ResilientStream(FakeTransportFactory(t1), name="test", sleep=RecordingSleep())
    stream.start()
    await stream.wait_connected(timeout=1)
    assert t1.sent == []

    first = []
    await stream.subscribe("x", first.append, request={"sub": "x"})
    assert t1.sent_json() == [{"sub": "x"}]

    # 重复订阅只替换回调，不再发送请求
    second = []
    await stream.subscribe("x", second.append, request={"sub": "x"})
    assert len(t1.sent) == 1

    t1.feed({"v": 1})
    await wait_for_condition(lambda: second == [{"v": 1}])
    assert first == []

    await stream.close()


@pytest.mark.asyncio
async def test_connect_hooks_run_on_every_connect():
    t1 = FakeTransport()
    t2 = FakeTransport()
    stream = ResilientStream(FakeTransportFactory(t1, t2), name="test", sleep=RecordingSleep())
    events = []

    async def on_connect():
        events.append("connect")

    stream.add_connect_hook(on_connect)
    stream.add_disconnect_hook(lambda: events.append("disconnect"))
    stream.start()
    await stream.wait_connected(timeout=1)

    t1.fail()
    await wait_for_condition(lambda: events.count("connect") == 2)
    assert events == ["connect", "disconnect", "connect"]

    await stream.close()
    assert events[-1] == "disconnect"


@pytest.mark.asyncio
async def test_failing_connect_hook_triggers_reconnect():
    t1 = FakeTransport()
    t2 = FakeTransport()
    sleep = RecordingSleep()
    stream = ResilientStream(FakeTransportFactory(t1, t2), name="test", reconnect_delay_s=1.0, sleep=sleep)
    attempts = []

    async def flaky_hook():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("snapshot unavailable")

    stream.add_connect_hook(flaky_hook)
    stream.start()

    assert await stream.wait_connected(timeout=1)
    assert len(attempts) == 2
    assert t1.closed
    assert sleep.calls == [1.0]

    await stream.close()


@pytest.mark.asyncio
async def test_open_stream_starts_immediately():
    t1 = FakeTransport()
    stream = await open_stream(FakeTransportFactory(t1), name="quick", sleep=RecordingSleep())
    assert await stream.wait_connected(timeout=1)
    assert t1.opened
    await stream.close()
