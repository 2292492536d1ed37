from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone

import pytest

from chat_sync.infrastructure.bus.change_feed import RedisChangeFeed
from chat_sync.infrastructure.bus.serializer import (
    deserialize_event,
    serialize_event,
    split_change_event,
)
from tests.conftest import wait_until


class _RecordingRedis:
    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel, raw):
        self.published.append((channel, raw))
        return 1


class _ScriptedPubSub:
    """One Pub/Sub session: replays ``raws``, then fails or stays open."""

    def __init__(self, raws=(), *, fail_with=None, refuse_with=None) -> None:
        self.raws = list(raws)
        self.fail_with = fail_with
        self.refuse_with = refuse_with

    async def subscribe(self, channel):
        if self.refuse_with is not None:
            raise self.refuse_with

    async def listen(self):
        for raw in self.raws:
            yield {"type": "message", "data": raw}
        if self.fail_with is not None:
            raise self.fail_with
        await asyncio.Event().wait()

    async def unsubscribe(self, channel):
        return None

    async def aclose(self):
        return None


class _SessionsRedis(_RecordingRedis):
    def __init__(self, sessions) -> None:
        super().__init__()
        self.sessions = list(sessions)
        self.opened = 0

    def pubsub(self):
        self.opened += 1
        return self.sessions.pop(0)


def _insert(message_id: str) -> str:
    return serialize_event(
        "messages.insert", {"id": message_id, "conversation_id": "c1"}, audience=["alice"],
    )


async def _replay(redis: _RecordingRedis, feed: RedisChangeFeed) -> None:
    for _, raw in redis.published:
        await feed._dispatch(*deserialize_event(raw))


def test_envelope_encodes_ids_timestamps_and_sets():
    conversation_id = uuid.uuid4()
    raw = serialize_event(
        "messages.insert",
        {
            "conversation_id": conversation_id,
            "created_at": datetime(2024, 5, 1, tzinfo=timezone.utc),
            "read_by": {"b", "a"},
        },
        audience=["a", "b"],
        origin="conn-1",
    )

    event, data, envelope = deserialize_event(raw)

    assert event == "messages.insert"
    assert data == {
        "conversation_id": str(conversation_id),
        "created_at": "2024-05-01T00:00:00+00:00",
        "read_by": ["a", "b"],
    }
    assert envelope["audience"] == ["a", "b"]
    assert envelope["origin"] == "conn-1"


def test_split_change_event():
    assert split_change_event("messages.update") == ("messages", "update")
    with pytest.raises(ValueError):
        split_change_event("typing")


@pytest.mark.asyncio
async def test_feed_delivers_to_audience_and_filter():
    redis = _RecordingRedis()
    alice_feed = RedisChangeFeed(redis, "chat.changes", "alice")
    carol_feed = RedisChangeFeed(redis, "chat.changes", "carol")
    seen = {"alice": [], "carol": []}

    async def _record_alice(row):
        seen["alice"].append(row["id"])

    async def _record_carol(row):
        seen["carol"].append(row["id"])

    async def _noop(row):
        return None

    alice_feed.subscribe("messages", {"conversation_id": "c1"}, _record_alice, _noop, _noop)
    carol_feed.subscribe("messages", None, _record_carol, _noop, _noop)

    await alice_feed.publish("messages", "insert", {"id": "m1", "conversation_id": "c1"}, ["alice", "bob"])
    await alice_feed.publish("messages", "insert", {"id": "m2", "conversation_id": "c2"}, ["alice", "carol"])
    await _replay(redis, alice_feed)
    await _replay(redis, carol_feed)

    assert [channel for channel, _ in redis.published] == ["chat.changes", "chat.changes"]
    assert seen == {"alice": ["m1"], "carol": ["m2"]}


@pytest.mark.asyncio
async def test_feed_isolates_failing_listener_and_unsubscribe():
    redis = _RecordingRedis()
    feed = RedisChangeFeed(redis, "chat.changes", "alice")
    deleted = []

    async def _boom(row):
        raise RuntimeError("listener bug")

    async def _record(row):
        deleted.append(row["id"])

    async def _noop(row):
        return None

    feed.subscribe("messages", None, _noop, _noop, _boom)
    unsubscribe = feed.subscribe("messages", None, _noop, _noop, _record)

    await feed.publish("messages", "delete", {"id": "m1"}, ["alice"])
    await _replay(redis, feed)
    unsubscribe()
    await _replay(redis, feed)

    assert deleted == ["m1"]


@pytest.mark.asyncio
async def test_feed_ignores_non_change_events(caplog):
    feed = RedisChangeFeed(_RecordingRedis(), "chat.changes", "alice")

    await feed._dispatch("typing", {}, {"event": "typing", "data": {}})

    assert "Ignoring non-change event" in caplog.text


@pytest.mark.asyncio
async def test_feed_resubscribes_after_connection_loss():
    redis = _SessionsRedis(
        [
            _ScriptedPubSub([_insert("m1")], fail_with=ConnectionError("reset by peer")),
            _ScriptedPubSub(refuse_with=ConnectionError("still down")),
            _ScriptedPubSub([_insert("m2")]),
        ]
    )
    feed = RedisChangeFeed(
        redis, "chat.changes", "alice", restart_delay=0.001, max_restart_delay=0.01,
    )
    seen: list[str] = []
    restored: list[bool] = []

    async def _record(row):
        seen.append(row["id"])

    async def _noop(row):
        return None

    async def _on_restored():
        restored.append(True)

    feed.subscribe("messages", None, _record, _noop, _noop)
    feed.add_restore_listener(_on_restored)

    await feed.start()
    try:
        await wait_until(lambda: seen == ["m1", "m2"] and restored == [True])
        assert redis.opened == 3
    finally:
        await feed.stop()


@pytest.mark.asyncio
async def test_stopped_feed_does_not_restart():
    redis = _SessionsRedis([_ScriptedPubSub()])
    feed = RedisChangeFeed(redis, "chat.changes", "alice", restart_delay=30.0)
    restored: list[bool] = []

    async def _on_restored():
        restored.append(True)

    feed.add_restore_listener(_on_restored)
    await feed.start()
    await feed._on_lost(ConnectionError("reset"))
    await feed.stop()

    assert restored == []
    assert redis.opened == 1
