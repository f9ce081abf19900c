"""RealtimeChannel (Redis pub/sub + presence 해시) 테스트.

Redis 클라이언트는 AsyncMock으로 대체합니다.
"""

import asyncio
import json
import time
from unittest.mock import AsyncMock, MagicMock

from audio_room.realtime import RealtimeChannel
from audio_room.realtime.channel import (
    CHANNEL_ERROR,
    CLOSED,
    SUBSCRIBED,
    channel_name,
    presence_key,
    read_presence,
)


async def idle_message(**kwargs):
    await asyncio.sleep(0.01)
    return None


def make_redis(presence=None):
    redis_client = MagicMock()
    redis_client.hgetall = AsyncMock(return_value=presence or {})
    redis_client.hset = AsyncMock(return_value=1)
    redis_client.hdel = AsyncMock(return_value=1)
    redis_client.publish = AsyncMock(return_value=1)

    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.close = AsyncMock()
    pubsub.get_message = AsyncMock(side_effect=idle_message)
    redis_client.pubsub.return_value = pubsub
    return redis_client, pubsub


def entry(role, online_at=None):
    return json.dumps([{"role": role, "online_at": online_at or time.time()}])


class TestNames:
    def test_topic_and_presence_key(self):
        assert channel_name("42") == "audio-room-42"
        assert presence_key("42") == "audio-room-42:presence"


class TestReadPresence:
    async def test_expired_and_malformed_entries_are_skipped(self):
        redis_client, _ = make_redis({
            "alice": entry("speaker"),
            "bob": entry("listener", online_at=time.time() - 120),
            "carol": "not-json",
        })

        state = await read_presence(redis_client, "42", ttl=30)

        assert list(state) == ["alice"]
        assert state["alice"][0]["role"] == "speaker"
        redis_client.hgetall.assert_awaited_once_with("audio-room-42:presence")

    async def test_single_meta_object_is_wrapped(self):
        redis_client, _ = make_redis({
            "alice": json.dumps({"role": "listener", "online_at": time.time()}),
        })
        state = await read_presence(redis_client, "42")
        assert state["alice"][0]["role"] == "listener"

    async def test_unparseable_online_at_is_skipped(self):
        redis_client, _ = make_redis({
            "alice": entry("speaker"),
            "bob": json.dumps([{"role": "speaker", "online_at": "soon"}]),
            "carol": json.dumps([{"role": "listener", "online_at": None}]),
            "dave": json.dumps(7),
        })

        state = await read_presence(redis_client, "42")

        assert list(state) == ["alice"]


class TestSubscribe:
    async def test_subscribe_reports_status_and_syncs(self):
        redis_client, pubsub = make_redis({"alice": entry("speaker")})
        channel = RealtimeChannel(redis_client, "42", key="bob")
        statuses = []
        synced = []
        channel.on_presence_sync(synced.append)

        assert await channel.subscribe(statuses.append)

        pubsub.subscribe.assert_awaited_once_with("audio-room-42")
        assert statuses == [SUBSCRIBED]
        assert list(synced[0]) == ["alice"]
        assert channel.presence_state() == synced[0]

        await channel.unsubscribe()
        pubsub.unsubscribe.assert_awaited_once_with("audio-room-42")
        pubsub.close.assert_awaited_once()
        assert channel.status == CLOSED

    async def test_subscribe_failure_returns_false(self):
        redis_client, pubsub = make_redis()
        pubsub.subscribe.side_effect = ConnectionError("redis down")
        channel = RealtimeChannel(redis_client, "42", key="bob")
        statuses = []

        assert await channel.subscribe(statuses.append) is False
        assert statuses == [CHANNEL_ERROR]
        await channel.unsubscribe()


class TestPresence:
    async def test_track_writes_hash_and_publishes_sync(self):
        redis_client, _ = make_redis()
        channel = RealtimeChannel(redis_client, "42", key="bob")

        assert await channel.track({"role": "listener"})

        key, field, value = redis_client.hset.await_args.args
        assert (key, field) == ("audio-room-42:presence", "bob")
        assert json.loads(value)[0]["role"] == "listener"
        published = json.loads(redis_client.publish.await_args.args[1])
        assert published == {"type": "presence", "event": "sync", "key": "bob"}
        assert channel.tracked

        await channel.unsubscribe()
        redis_client.hdel.assert_awaited_once_with("audio-room-42:presence", "bob")
        assert not channel.tracked

    async def test_track_failure_returns_false(self):
        redis_client, _ = make_redis()
        redis_client.hset.side_effect = ConnectionError("redis down")
        channel = RealtimeChannel(redis_client, "42", key="bob")

        assert await channel.track({"role": "listener"}) is False


class TestBroadcast:
    async def test_send_publishes_envelope(self):
        redis_client, _ = make_redis()
        channel = RealtimeChannel(redis_client, "42", key="bob")

        assert await channel.send("signal", {"from": "bob", "data": {}})

        topic, body = redis_client.publish.await_args.args
        assert topic == "audio-room-42"
        assert json.loads(body) == {
            "type": "broadcast", "event": "signal", "payload": {"from": "bob", "data": {}},
        }

    async def test_send_failure_returns_false(self):
        redis_client, _ = make_redis()
        redis_client.publish.side_effect = ConnectionError("redis down")
        channel = RealtimeChannel(redis_client, "42", key="bob")
        assert await channel.send("signal", {}) is False

    async def test_handle_message_dispatches_by_type(self):
        redis_client, _ = make_redis({"alice": entry("speaker")})
        channel = RealtimeChannel(redis_client, "42", key="bob")
        received = []
        synced = []
        channel.on_broadcast("signal", received.append)
        channel.on_presence_sync(synced.append)

        broadcast = {"type": "broadcast", "event": "signal", "payload": {"from": "alice"}}
        await channel.handle_message({"type": "message", "data": json.dumps(broadcast).encode()})
        await channel.handle_message({"type": "message", "data": json.dumps({"type": "presence"})})
        await channel.handle_message({"type": "message", "data": "{broken"})
        await channel.handle_message({"type": "subscribe", "data": 1})

        assert received == [{"from": "alice"}]
        assert len(synced) == 1

    async def test_handler_errors_do_not_stop_dispatch(self):
        redis_client, _ = make_redis()
        channel = RealtimeChannel(redis_client, "42", key="bob")
        received = []

        def broken(payload):
            raise RuntimeError("handler failed")

        channel.on_broadcast("signal", broken)
        channel.on_broadcast("signal", received.append)

        message = {"type": "broadcast", "event": "signal", "payload": {"x": 1}}
        await channel.handle_message({"type": "message", "data": json.dumps(message)})

        assert received == [{"x": 1}]

    async def test_listener_delivers_published_messages(self):
        redis_client, pubsub = make_redis()
        message = {"type": "broadcast", "event": "signal", "payload": {"from": "alice"}}
        queue = [{"type": "message", "data": json.dumps(message)}]

        async def next_message(**kwargs):
            if queue:
                return queue.pop(0)
            return await idle_message()

        pubsub.get_message.side_effect = next_message
        channel = RealtimeChannel(redis_client, "42", key="bob")
        received = []
        channel.on_broadcast("signal", received.append)

        await channel.subscribe()
        await asyncio.sleep(0.05)
        await channel.unsubscribe()

        assert received == [{"from": "alice"}]

    async def test_presence_read_failure_is_logged_and_ignored(self):
        redis_client, _ = make_redis()
        redis_client.hgetall.side_effect = ConnectionError("redis timeout")
        channel = RealtimeChannel(redis_client, "42", key="bob")
        synced = []
        channel.on_presence_sync(synced.append)

        await channel.handle_message({"type": "message", "data": json.dumps({"type": "presence"})})

        assert synced == []

    async def test_listener_survives_presence_failure(self):
        redis_client, pubsub = make_redis()
        reads = []

        async def flaky_hgetall(key):
            reads.append(key)
            if len(reads) == 2:
                raise ConnectionError("redis timeout")
            return {"alice": entry("speaker")}

        redis_client.hgetall.side_effect = flaky_hgetall
        signal = {"type": "broadcast", "event": "signal", "payload": {"from": "alice"}}
        queue = [
            {"type": "message", "data": json.dumps({"type": "presence", "event": "sync"})},
            {"type": "message", "data": json.dumps(signal)},
        ]

        async def next_message(**kwargs):
            if queue:
                return queue.pop(0)
            return await idle_message()

        pubsub.get_message.side_effect = next_message
        channel = RealtimeChannel(redis_client, "42", key="bob")
        received = []
        channel.on_broadcast("signal", received.append)

        await channel.subscribe()
        await asyncio.sleep(0.05)

        assert channel.status == SUBSCRIBED
        assert received == [{"from": "alice"}]
        assert not channel._listener_task.done()
        await channel.unsubscribe()
