"""Tests for the broadcast channel and the slave command queue."""

from __future__ import annotations

import asyncio

import pytest

from openvibe.channels import BroadcastChannel, CommandQueue
from openvibe.config import OverflowPolicy
from openvibe.errors import GroupClosed, SlaveSuperseded, SubscriberOverflow


# ── Broadcast ─────────────────────────────────────────────────────


class TestBroadcastChannel:
    @pytest.mark.asyncio
    async def test_publish_reaches_every_subscriber(self):
        ch = BroadcastChannel("d1")
        a, b = ch.subscribe(), ch.subscribe()

        assert ch.publish('{"status":"ok"}') == 2
        assert await a.recv() == '{"status":"ok"}'
        assert await b.recv() == '{"status":"ok"}'

    @pytest.mark.asyncio
    async def test_late_subscriber_misses_earlier_frames(self):
        ch = BroadcastChannel("d1")
        ch.subscribe()
        ch.publish("early")

        late = ch.subscribe()
        assert late.pending == 0
        ch.publish("later")
        assert await late.recv() == "later"

    @pytest.mark.asyncio
    async def test_preserves_publish_order(self):
        ch = BroadcastChannel("d1")
        sub = ch.subscribe()
        for i in range(5):
            ch.publish(f"m{i}")
        assert [await sub.recv() for _ in range(5)] == ["m0", "m1", "m2", "m3", "m4"]

    @pytest.mark.asyncio
    async def test_binary_frames_pass_through(self):
        ch = BroadcastChannel("d1")
        sub = ch.subscribe()
        ch.publish(b"\x00\xff")
        frame = await sub.recv()
        assert frame == b"\x00\xff"
        assert isinstance(frame, bytes)

    @pytest.mark.asyncio
    async def test_recv_waits_for_publish(self):
        ch = BroadcastChannel("d1")
        sub = ch.subscribe()
        task = asyncio.create_task(sub.recv())
        await asyncio.sleep(0)
        assert not task.done()

        ch.publish("hello")
        assert await asyncio.wait_for(task, 1.0) == "hello"

    @pytest.mark.asyncio
    async def test_unsubscribe_leaves_others_alone(self):
        ch = BroadcastChannel("d1")
        a, b = ch.subscribe(), ch.subscribe()
        ch.unsubscribe(a)

        assert ch.subscriber_count == 1
        assert ch.publish("x") == 1
        assert await b.recv() == "x"
        assert a.pending == 0
        assert not a.closed

    def test_unsubscribe_twice_is_harmless(self):
        ch = BroadcastChannel("d1")
        sub = ch.subscribe()
        ch.unsubscribe(sub)
        ch.unsubscribe(sub)
        assert ch.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_close_is_terminal_for_every_subscriber(self):
        ch = BroadcastChannel("d1")
        a, b = ch.subscribe(), ch.subscribe()
        ch.publish("buffered")
        ch.close()

        for sub in (a, b):
            with pytest.raises(GroupClosed):
                await sub.recv()
            # Stays terminal
            with pytest.raises(GroupClosed):
                await sub.recv()
        assert ch.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_each_receiver_gets_its_own_error(self):
        ch = BroadcastChannel("d1")
        a, b = ch.subscribe(), ch.subscribe()
        ch.close(GroupClosed("gone"))

        raised = []
        for sub in (a, b, a):
            with pytest.raises(GroupClosed) as exc:
                await sub.recv()
            raised.append(exc.value)
        assert len({id(e) for e in raised}) == 3
        assert all(str(e) == "gone" for e in raised)

    @pytest.mark.asyncio
    async def test_close_wakes_waiting_receiver(self):
        ch = BroadcastChannel("d1")
        sub = ch.subscribe()
        task = asyncio.create_task(sub.recv())
        await asyncio.sleep(0)

        ch.close()
        with pytest.raises(GroupClosed):
            await asyncio.wait_for(task, 1.0)

    def test_publish_after_close_raises(self):
        ch = BroadcastChannel("d1")
        ch.close()
        with pytest.raises(GroupClosed):
            ch.publish("late")

    @pytest.mark.asyncio
    async def test_subscribe_after_close_is_already_closed(self):
        ch = BroadcastChannel("d1")
        ch.close()
        sub = ch.subscribe()
        assert sub.closed
        with pytest.raises(GroupClosed):
            await sub.recv()


class TestOverflowPolicy:
    @pytest.mark.asyncio
    async def test_drop_oldest_keeps_newest_frames(self):
        ch = BroadcastChannel("d1", capacity=2, policy=OverflowPolicy.DROP_OLDEST)
        sub = ch.subscribe()
        for frame in ("1", "2", "3", "4"):
            ch.publish(frame)

        assert sub.dropped == 2
        assert await sub.recv() == "3"
        assert await sub.recv() == "4"
        assert ch.subscriber_count == 1
        assert not sub.closed

    @pytest.mark.asyncio
    async def test_disconnect_terminates_only_the_laggard(self):
        ch = BroadcastChannel("d1", capacity=2, policy=OverflowPolicy.DISCONNECT)
        fast, slow = ch.subscribe(), ch.subscribe()

        for frame in ("1", "2", "3"):
            ch.publish(frame)
            assert await fast.recv() == frame

        assert slow.closed
        assert ch.subscriber_count == 1
        with pytest.raises(SubscriberOverflow):
            await slow.recv()

        assert ch.publish("4") == 1
        assert await fast.recv() == "4"

    @pytest.mark.asyncio
    async def test_disconnect_discards_backlog(self):
        ch = BroadcastChannel("d1", capacity=1, policy=OverflowPolicy.DISCONNECT)
        sub = ch.subscribe()
        ch.publish("1")
        ch.publish("2")
        assert sub.pending == 0
        with pytest.raises(SubscriberOverflow):
            await sub.recv()


# ── Commands ──────────────────────────────────────────────────────


class TestCommandQueue:
    @pytest.mark.asyncio
    async def test_fifo(self):
        q = CommandQueue()
        for frame in ("a", "b", "c"):
            assert await q.send(frame)
        assert [await q.recv() for _ in range(3)] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_full_queue_applies_backpressure(self):
        q = CommandQueue(capacity=1)
        await q.send("a")
        sender = asyncio.create_task(q.send("b"))
        await asyncio.sleep(0)
        assert not sender.done()

        assert await q.recv() == "a"
        assert await asyncio.wait_for(sender, 1.0) is True
        assert await q.recv() == "b"

    @pytest.mark.asyncio
    async def test_close_raises_reason_on_recv(self):
        q = CommandQueue()
        await q.send("pending")
        await q.close(SlaveSuperseded())

        assert len(q) == 0
        with pytest.raises(SlaveSuperseded):
            await q.recv()

    @pytest.mark.asyncio
    async def test_close_wakes_receiver(self):
        q = CommandQueue()
        receiver = asyncio.create_task(q.recv())
        await asyncio.sleep(0)

        await q.close(GroupClosed())
        with pytest.raises(GroupClosed):
            await asyncio.wait_for(receiver, 1.0)

    @pytest.mark.asyncio
    async def test_close_releases_blocked_sender(self):
        q = CommandQueue(capacity=1)
        await q.send("a")
        sender = asyncio.create_task(q.send("b"))
        await asyncio.sleep(0)

        await q.close(SlaveSuperseded())
        assert await asyncio.wait_for(sender, 1.0) is False

    @pytest.mark.asyncio
    async def test_send_after_close_returns_false(self):
        q = CommandQueue()
        await q.close(GroupClosed())
        assert await q.send("x") is False
        assert q.closed

    @pytest.mark.asyncio
    async def test_repeated_recv_after_close_raises_distinct_errors(self):
        q = CommandQueue()
        await q.close(SlaveSuperseded("replaced"))

        with pytest.raises(SlaveSuperseded) as first:
            await q.recv()
        with pytest.raises(SlaveSuperseded) as second:
            await q.recv()
        assert first.value is not second.value
        assert str(second.value) == "replaced"
