"""
Tests for the autoresponder engine.

Tests:
- Reply decision rules and their order
- Enqueue path persistence
- Tick processing (send, drop, defer)
- Per-user cooldown across channels
- Send failures and timeouts
- Error isolation within a tick
- End-to-end scenarios
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import EVENING
from supportbot.autoresponder.engine import CHANNELS_KEY, AutoresponderEngine, should_send_reply
from supportbot.autoresponder.models import Channel, ReplyDecision
from supportbot.store import JsonFileStore, MemoryStore


DUE = EVENING + 301  # just past the 300s reply timeout


def queue(store, *channels):
    store.set(CHANNELS_KEY, [c.to_dict() for c in channels])


def stored_channels(store):
    return {c["id"]: Channel.from_dict(c) for c in store.get(CHANNELS_KEY, []) if isinstance(c, dict)}


def queued(store, channel_id):
    channel = stored_channels(store).get(channel_id)
    return channel.messages if channel else []


class TestShouldSendReply:
    """Tests for the per-message decision."""

    def test_young_message_is_deferred(self, channel, make_message, ar_config):
        message = make_message(timestamp=EVENING)
        for now in (EVENING, EVENING + 10, EVENING + 299):
            assert should_send_reply(channel, message, ar_config, now, None) == ReplyDecision.DEFER

    def test_minimum_reply_timeout(self, channel, make_message, ar_config):
        ar_config.timeout = 0
        message = make_message(timestamp=EVENING)

        assert should_send_reply(channel, message, ar_config, EVENING + 5, None) == ReplyDecision.DEFER
        assert should_send_reply(channel, message, ar_config, EVENING + 16, None) == ReplyDecision.SEND

    def test_recent_agent_activity_defers(self, make_message, ar_config):
        channel = Channel(id="C1", last_agent_message_time=DUE - 100)
        message = make_message(timestamp=EVENING)
        assert should_send_reply(channel, message, ar_config, DUE, None) == ReplyDecision.DEFER

    def test_recently_messaged_user_is_dropped(self, channel, make_message, ar_config):
        message = make_message(timestamp=EVENING)
        assert should_send_reply(channel, message, ar_config, DUE, DUE - 60) == ReplyDecision.DROP

    def test_cooldown_expired(self, channel, make_message, ar_config):
        message = make_message(timestamp=EVENING)
        last = DUE - ar_config.user_limit_timeout - 1
        assert should_send_reply(channel, message, ar_config, DUE, last) == ReplyDecision.SEND

    def test_timing_checks_come_before_cooldown(self, channel, make_message, ar_config):
        message = make_message(timestamp=EVENING)
        # Recently messaged, but the message is still too young: defer, not drop
        assert should_send_reply(channel, message, ar_config, EVENING + 10, EVENING) == ReplyDecision.DEFER


class TestEnqueue:
    """Tests for the enqueue path."""

    @pytest.mark.asyncio
    async def test_eligible_message_is_persisted(self, engine, store, make_message):
        message = make_message()

        assert await engine.enqueue(message) is True

        channels = stored_channels(store)
        assert channels["C1"].messages == [message]
        assert channels["C1"].last_agent_message_time == 0

    @pytest.mark.asyncio
    async def test_ineligible_message_still_creates_channel(self, engine, store, make_message):
        assert await engine.enqueue(make_message(text="<@U2> thanks")) is False
        assert queued(store, "C1") == []

    @pytest.mark.asyncio
    async def test_duplicate_event_is_queued_once(self, engine, store, make_message):
        message = make_message()
        await engine.enqueue(message)
        assert await engine.enqueue(message) is False
        assert len(queued(store, "C1")) == 1

    @pytest.mark.asyncio
    async def test_agent_message_clears_stored_queue(self, engine, store, make_message):
        for i in range(3):
            await engine.enqueue(make_message(timestamp=EVENING + i))

        await engine.enqueue(make_message(is_agent=True, timestamp=EVENING + 5))

        channel = stored_channels(store)["C1"]
        assert channel.messages == []
        assert channel.last_agent_message_time == EVENING + 5


class TestTick:
    """Tests for the scheduled evaluation."""

    @pytest.mark.asyncio
    async def test_due_message_is_sent(self, engine, store, sender, make_message):
        message = make_message()
        queue(store, Channel(id="C1", messages=[message]))

        result = await engine.run_tick(now=DUE)

        sender.assert_awaited_once_with(message)
        assert result.sent == 1
        assert queued(store, "C1") == []
        assert engine.limiter.last_reply("U100") == DUE

    @pytest.mark.asyncio
    async def test_young_message_stays_queued(self, engine, store, sender, make_message):
        message = make_message()
        queue(store, Channel(id="C1", messages=[message]))

        result = await engine.run_tick(now=EVENING + 30)

        sender.assert_not_awaited()
        assert result.deferred == 1
        assert queued(store, "C1") == [message]
        assert engine.limiter.last_reply("U100") is None

    @pytest.mark.asyncio
    async def test_dropped_message_is_removed_silently(self, engine, store, sender, make_message):
        engine.limiter.record("U100", DUE - 60)
        queue(store, Channel(id="C1", messages=[make_message()]))

        result = await engine.run_tick(now=DUE)

        sender.assert_not_awaited()
        assert result.dropped == 1
        assert queued(store, "C1") == []
        assert engine.limiter.last_reply("U100") == DUE - 60

    @pytest.mark.asyncio
    async def test_mixed_queue_keeps_order_of_deferred(self, engine, store, sender, make_message):
        old_a = make_message(user_id="UA", timestamp=EVENING)
        young_1 = make_message(user_id="UB", timestamp=DUE - 10)
        old_c = make_message(user_id="UC", timestamp=EVENING)
        young_2 = make_message(user_id="UD", timestamp=DUE - 5)
        queue(store, Channel(id="C1", messages=[old_a, young_1, old_c, young_2]))

        result = await engine.run_tick(now=DUE)

        assert result.sent == 2
        assert result.deferred == 2
        assert sender.await_count == 2
        assert queued(store, "C1") == [young_1, young_2]

    @pytest.mark.asyncio
    async def test_one_reply_per_user_across_channels(self, engine, store, sender, make_message):
        first = make_message(channel_id="C1")
        second = make_message(channel_id="C2")
        queue(store, Channel(id="C1", messages=[first]), Channel(id="C2", messages=[second]))

        result = await engine.run_tick(now=DUE)

        assert sender.await_count == 1
        assert result.sent == 1
        assert result.dropped == 1
        assert queued(store, "C1") == []
        assert queued(store, "C2") == []

    @pytest.mark.asyncio
    async def test_second_tick_within_cooldown_drops(self, engine, store, sender, make_message):
        queue(store, Channel(id="C1", messages=[make_message()]))
        await engine.run_tick(now=DUE)

        queue(store, Channel(id="C1", messages=[make_message(timestamp=DUE)]))

        result = await engine.run_tick(now=DUE + 400)

        assert sender.await_count == 1
        assert result.dropped == 1

    @pytest.mark.asyncio
    async def test_channels_written_once_per_tick(self, engine, store, make_message):
        queue(
            store,
            Channel(id="C1", messages=[make_message(user_id="U1"), make_message(user_id="U2")]),
            Channel(id="C2", messages=[make_message(user_id="U3", channel_id="C2")]),
        )

        with patch.object(store, "set", wraps=store.set) as spy:
            await engine.run_tick(now=DUE)

        channel_writes = [c for c in spy.call_args_list if c.args[0] == CHANNELS_KEY]
        assert len(channel_writes) == 1

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, engine, store, sender, make_message):
        message = make_message()
        queue(store, Channel(id="C1", messages=[message]))

        result = await engine.run_tick(now=DUE, dry_run=True)

        assert result.decisions == [(message, ReplyDecision.SEND)]
        sender.assert_not_awaited()
        assert queued(store, "C1") == [message]
        assert engine.limiter.last_reply("U100") is None


class TestPruning:
    """Tests for removal of idle channels."""

    @pytest.mark.asyncio
    async def test_idle_empty_channel_is_pruned(self, engine, store):
        queue(store, Channel(id="C1", last_agent_message_time=DUE - 10_000))
        await engine.run_tick(now=DUE)
        assert "C1" not in stored_channels(store)

    @pytest.mark.asyncio
    async def test_recent_agent_activity_is_kept(self, engine, store):
        queue(store, Channel(id="C1", last_agent_message_time=DUE - 100))
        await engine.run_tick(now=DUE)
        assert stored_channels(store)["C1"].last_agent_message_time == DUE - 100


class TestSendFailures:
    """Tests for sender errors."""

    @pytest.mark.asyncio
    async def test_failed_send_still_consumes_cooldown(self, store, ar_config, clock, make_message):
        sender = AsyncMock(side_effect=RuntimeError("slack is down"))
        engine = AutoresponderEngine(store, ar_config, sender=sender, clock=clock)
        queue(store, Channel(id="C1", messages=[make_message()]))

        result = await engine.run_tick(now=DUE)

        assert result.sent == 1
        assert result.failed_sends == 1
        assert queued(store, "C1") == []
        assert engine.limiter.last_reply("U100") == DUE
        assert engine.get_stats()["total_failed"] == 1

    @pytest.mark.asyncio
    async def test_slow_send_is_bounded(self, store, ar_config, clock, make_message):
        async def hang(message):
            await asyncio.sleep(10)

        ar_config.send_timeout = 0.05
        engine = AutoresponderEngine(store, ar_config, sender=hang, clock=clock)
        queue(store, Channel(id="C1", messages=[make_message()]))

        result = await asyncio.wait_for(engine.run_tick(now=DUE), timeout=2)

        assert result.failed_sends == 1
        assert queued(store, "C1") == []

    @pytest.mark.asyncio
    async def test_no_sender_configured(self, store, ar_config, clock, make_message):
        engine = AutoresponderEngine(store, ar_config, clock=clock)
        queue(store, Channel(id="C1", messages=[make_message()]))

        result = await engine.run_tick(now=DUE)

        assert result.failed_sends == 1


class TestErrorIsolation:
    """A bad message or channel never aborts the tick."""

    @pytest.mark.asyncio
    async def test_evaluation_error_skips_only_that_message(self, engine, store, sender, make_message):
        bad = make_message(user_id="U_BAD")
        good = make_message(user_id="U_GOOD", channel_id="C2")
        queue(store, Channel(id="C1", messages=[bad]), Channel(id="C2", messages=[good]))

        original = engine.evaluate

        def flaky(channel, message, now, replied=None):
            if message.user_id == "U_BAD":
                raise ValueError("boom")
            return original(channel, message, now, replied)

        with patch.object(engine, "evaluate", side_effect=flaky):
            result = await engine.run_tick(now=DUE)

        assert result.errors == 1
        sender.assert_awaited_once_with(good)
        # The failing message is removed so it cannot fail every tick
        assert queued(store, "C1") == []

    @pytest.mark.asyncio
    async def test_malformed_stored_message_is_skipped(self, engine, store, sender, make_message):
        good = make_message()
        store.set(CHANNELS_KEY, [
            {"id": "C1", "last_agent_message_time": 0, "messages": [{"id": "x"}, good.to_dict()]},
            "not a channel",
        ])

        result = await engine.run_tick(now=DUE)

        sender.assert_awaited_once_with(good)
        assert result.sent == 1

    @pytest.mark.asyncio
    async def test_store_failure_makes_tick_a_noop(self, ar_config, clock, sender):
        class BrokenStore(MemoryStore):
            def get(self, key, default=None):
                raise OSError("disk gone")

        engine = AutoresponderEngine(BrokenStore(), ar_config, sender=sender, clock=clock)

        result = await engine.run_tick(now=DUE)

        assert result.errors == 1
        sender.assert_not_awaited()


class TestConcurrency:
    """Enqueue and tick never lose each other's updates."""

    @pytest.mark.asyncio
    async def test_tick_and_enqueue_together_keep_both_updates(self, engine, store, sender, clock, make_message):
        old = make_message(user_id="U1")
        queue(store, Channel(id="C1", messages=[old]))

        clock.now = DUE
        fresh = make_message(user_id="U2", timestamp=DUE)

        await asyncio.gather(engine.run_tick(), engine.enqueue(fresh))

        sender.assert_awaited_once_with(old)
        assert queued(store, "C1") == [fresh]

    @pytest.mark.asyncio
    async def test_enqueue_waits_for_engine_lock(self, engine, store, clock, make_message):
        message = make_message(timestamp=clock.now)

        async with engine._lock:
            pending = asyncio.create_task(engine.enqueue(message))
            await asyncio.sleep(0.01)
            assert not pending.done()
            assert queued(store, "C1") == []

        assert await pending is True
        assert queued(store, "C1") == [message]

    @pytest.mark.asyncio
    async def test_tick_waits_for_engine_lock(self, engine, store, sender, make_message):
        message = make_message()
        queue(store, Channel(id="C1", messages=[message]))

        async with engine._lock:
            pending = asyncio.create_task(engine.run_tick(now=DUE))
            await asyncio.sleep(0.01)
            assert not pending.done()
            assert queued(store, "C1") == [message]

        result = await pending
        assert result.sent == 1
        sender.assert_awaited_once_with(message)

    @pytest.mark.asyncio
    async def test_close_flushes_store(self, engine, store):
        with patch.object(store, "flush") as flush:
            await engine.close()
        flush.assert_called_once()

    @pytest.mark.asyncio
    async def test_cancelled_tick_leaves_reply_for_close(self, store, ar_config, clock, make_message):
        completed = []

        async def slow_send(message):
            await asyncio.sleep(0.2)
            completed.append(message)

        engine = AutoresponderEngine(store, ar_config, sender=slow_send, clock=clock)
        message = make_message()
        queue(store, Channel(id="C1", messages=[message]))

        tick = asyncio.create_task(engine.run_tick(now=DUE))
        await asyncio.sleep(0.05)
        tick.cancel()
        with pytest.raises(asyncio.CancelledError):
            await tick

        assert engine.get_stats()["inflight"] == 1
        await engine.close()

        assert completed == [message]
        assert engine.get_stats()["inflight"] == 0


class TestStoreWrites:
    """A tick writes queue and cooldowns together."""

    @pytest.mark.asyncio
    async def test_tick_writes_state_file_once(self, tmp_path, ar_config, clock, sender, make_message):
        store = JsonFileStore(tmp_path / "state.json")
        engine = AutoresponderEngine(store, ar_config, sender=sender, clock=clock)
        queue(
            store,
            Channel(id="C1", messages=[make_message(user_id="U1")]),
            Channel(id="C2", messages=[make_message(user_id="U2", channel_id="C2")]),
        )

        with patch.object(store, "_save", wraps=store._save) as save:
            result = await engine.run_tick(now=DUE)

        assert result.sent == 2
        assert save.call_count == 1
        reopened = JsonFileStore(tmp_path / "state.json")
        assert reopened.get("user_message_U1") == DUE
        assert reopened.get("user_message_U2") == DUE

    @pytest.mark.asyncio
    async def test_reply_is_sent_when_cooldown_write_fails(self, engine, store, sender, make_message):
        message = make_message()
        queue(store, Channel(id="C1", messages=[message]))

        with patch.object(engine.limiter, "record", side_effect=OSError("disk full")):
            result = await engine.run_tick(now=DUE)

        assert result.errors == 1
        sender.assert_awaited_once_with(message)
        assert queued(store, "C1") == []

    @pytest.mark.asyncio
    async def test_nothing_sent_when_queue_write_fails(self, engine, store, sender, make_message):
        queue(store, Channel(id="C1", messages=[make_message()]))

        with patch.object(store, "set", side_effect=OSError("disk full")):
            result = await engine.run_tick(now=DUE)

        assert result.errors == 1
        sender.assert_not_awaited()
        assert len(queued(store, "C1")) == 1


class TestEndToEnd:
    """Scenarios from enqueue to reply."""

    @pytest.mark.asyncio
    async def test_unanswered_message_gets_one_reply(self, engine, store, sender, clock, make_message):
        message = make_message(text="help please", timestamp=EVENING)
        assert await engine.enqueue(message) is True

        clock.now = EVENING + 300 + 1
        result = await engine.run_tick()

        assert result.sent == 1
        sender.assert_awaited_once_with(message)
        assert queued(store, "C1") == []
        assert engine.limiter.last_reply("U100") == EVENING + 301

    @pytest.mark.asyncio
    async def test_agent_reply_cancels_autoresponse(self, engine, store, sender, clock, make_message):
        message = make_message(text="help please", timestamp=EVENING)
        await engine.enqueue(message)

        clock.now = EVENING + 5
        agent = make_message(user_id="U_AGENT", is_agent=True, timestamp=EVENING + 5)
        await engine.enqueue(agent)

        channel = stored_channels(store)["C1"]
        assert channel.messages == []
        assert channel.last_agent_message_time == EVENING + 5

        clock.now = EVENING + 301
        result = await engine.run_tick()

        assert result.sent == 0
        sender.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_status_reports_queue(self, engine, make_message):
        await engine.enqueue(make_message())
        status = engine.get_status()

        assert status["queued_total"] == 1
        assert status["channels"][0]["id"] == "C1"
        assert status["total_enqueued"] == 1
