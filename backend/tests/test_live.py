from __future__ import annotations

import asyncio
import json
import threading

from streamstats.services import live
from streamstats.services.live import (
    FanoutPublisher,
    LiveBroadcaster,
    RedisLivePublisher,
    tenant_topic,
    topics_for,
    video_topic,
)


class _FakeRedis:
    def __init__(self):
        self.published: list[tuple[str, str]] = []

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 1


class _FakeConnector:
    def __init__(self, client):
        self.client = client

    def get(self):
        return self.client


class _ExplodingPublisher:
    def publish(self, topic, payload):
        raise RuntimeError("down")


def test_topics_for_tenant_and_video():
    assert tenant_topic("t1") == "tenant:t1"
    assert video_topic("t1", "v1") == "tenant:t1:video:v1"
    assert topics_for("t1", "v1") == ["tenant:t1", "tenant:t1:video:v1"]


def test_broadcaster_delivers_to_topic_subscribers_only():
    async def scenario():
        broadcaster = LiveBroadcaster()
        tenant_queue = await broadcaster.subscribe("tenant:t1")
        other_queue = await broadcaster.subscribe("tenant:t2")

        broadcaster.publish("tenant:t1", {"type": "view", "video_id": "v1"})
        message = await asyncio.wait_for(tenant_queue.get(), timeout=1)
        return message, other_queue.qsize()

    message, other_size = asyncio.run(scenario())

    assert message.startswith("data: ")
    assert json.loads(message[len("data: "):]) == {"type": "view", "video_id": "v1"}
    assert other_size == 0


def test_broadcaster_unsubscribe_removes_queue():
    async def scenario():
        broadcaster = LiveBroadcaster()
        queue = await broadcaster.subscribe("tenant:t1")
        during = broadcaster.subscriber_count("tenant:t1")
        await broadcaster.unsubscribe("tenant:t1", queue)
        broadcaster.publish("tenant:t1", {"type": "view"})
        return during, broadcaster.subscriber_count()

    during, after = asyncio.run(scenario())

    assert during == 1
    assert after == 0


def test_broadcaster_drops_messages_for_full_queue(monkeypatch):
    monkeypatch.setattr(live, "SUBSCRIBER_QUEUE_SIZE", 1)

    async def scenario():
        broadcaster = LiveBroadcaster()
        queue = await broadcaster.subscribe("tenant:t1")
        broadcaster.publish("tenant:t1", {"n": 1})
        broadcaster.publish("tenant:t1", {"n": 2})
        await asyncio.sleep(0)
        return queue.qsize(), await queue.get()

    size, first = asyncio.run(scenario())

    assert size == 1
    assert '"n": 1' in first


def test_redis_publisher_uses_prefixed_channel(monkeypatch):
    fake = _FakeRedis()
    monkeypatch.setattr(live.settings, "REDIS_KEY_PREFIX", "")
    monkeypatch.setattr(live.settings, "LIVE_REDIS_CHANNEL_PREFIX", "live")
    publisher = RedisLivePublisher(_FakeConnector(fake))

    publisher.publish("tenant:t1", {"type": "view"})
    publisher.shutdown(wait=True)

    assert fake.published == [("live:tenant:t1", json.dumps({"type": "view"}))]


def test_redis_publisher_channel_includes_key_prefix(monkeypatch):
    monkeypatch.setattr(live.settings, "REDIS_KEY_PREFIX", "Prod Stats")
    monkeypatch.setattr(live.settings, "LIVE_REDIS_CHANNEL_PREFIX", "live")

    assert RedisLivePublisher.channel_for("tenant:t1") == "prod-stats:live:tenant:t1"


def test_redis_publisher_skips_without_redis():
    publisher = RedisLivePublisher(_FakeConnector(None))

    publisher.publish("tenant:t1", {"type": "view"})
    publisher.shutdown(wait=True)


def test_redis_publisher_drops_when_backlog_is_full():
    release = threading.Event()

    class _StalledRedis(_FakeRedis):
        def publish(self, channel, message):
            release.wait(timeout=5)
            return super().publish(channel, message)

    fake = _StalledRedis()
    publisher = RedisLivePublisher(_FakeConnector(fake), max_pending=2)

    for n in range(5):
        publisher.publish("tenant:t1", {"n": n})
    release.set()
    publisher.shutdown(wait=True)

    assert [json.loads(message)["n"] for _, message in fake.published] == [0, 1]


def test_redis_publisher_logs_send_failures(caplog):
    class _BrokenRedis:
        def publish(self, channel, message):
            raise ConnectionError("reset by peer")

    publisher = RedisLivePublisher(_FakeConnector(_BrokenRedis()))

    with caplog.at_level("WARNING", logger="streamstats.services.live"):
        publisher.publish("tenant:t1", {"type": "view"})
        publisher.shutdown(wait=True)

    assert "Live publish to tenant:t1 via Redis failed" in caplog.text


def test_fanout_continues_after_failure(caplog):
    fake = _FakeRedis()
    redis_publisher = RedisLivePublisher(_FakeConnector(fake))
    fanout = FanoutPublisher([_ExplodingPublisher(), redis_publisher])

    with caplog.at_level("WARNING", logger="streamstats.services.live"):
        fanout.publish("tenant:t1", {"type": "view"})
    redis_publisher.shutdown(wait=True)

    assert len(fake.published) == 1
    assert "Live publish to tenant:t1 via _ExplodingPublisher failed" in caplog.text
