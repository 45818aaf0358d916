from __future__ import annotations

import json
import threading

import pytest

from sda.broker import ConnectionWatcher, InMemoryBroker, RedisBroker, consume, create_broker_from_env, send_error
from sda.errors import ConfigError, ConnectionLossError, PublishError


class FakeRedisError(Exception):
    pass


class FakeRedisClient:
    def __init__(self) -> None:
        self.kv: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise FakeRedisError("Connection refused")

    def set(self, key: str, value: str) -> None:
        self._check()
        self.kv[key] = value

    def get(self, key: str):
        self._check()
        return self.kv.get(key)

    def rpush(self, key: str, value: str) -> None:
        self._check()
        self.lists.setdefault(key, []).append(value)

    def lpush(self, key: str, value: str) -> None:
        self._check()
        self.lists.setdefault(key, []).insert(0, value)

    def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))

    def lrange(self, key: str, start: int, end: int) -> list[str]:
        items = self.lists.get(key, [])
        return items[start:] if end == -1 else items[start : end + 1]

    def lmove(self, first_list: str, second_list: str, src: str = "LEFT", dest: str = "RIGHT"):
        self._check()
        items = self.lists.get(first_list, [])
        if not items:
            return None
        value = items.pop(0 if src == "LEFT" else -1)
        target = self.lists.setdefault(second_list, [])
        if dest == "LEFT":
            target.insert(0, value)
        else:
            target.append(value)
        return value

    def lrem(self, key: str, count: int, value: str) -> int:
        items = self.lists.get(key, [])
        kept = [item for item in items if item != value]
        self.lists[key] = kept
        return len(items) - len(kept)

    def delete(self, *keys: str) -> None:
        for key in keys:
            self.kv.pop(key, None)

    def ping(self) -> bool:
        self._check()
        return True


def _fake_redis_module(client: FakeRedisClient):
    class FakeRedisModule:
        RedisError = FakeRedisError

        class Redis:
            @staticmethod
            def from_url(_dsn: str, decode_responses: bool = True):
                assert decode_responses is True
                return client

    return FakeRedisModule


def test_in_memory_broker_routes_by_key_and_acks():
    b = InMemoryBroker()
    b.publish(correlation_id="c1", exchange="sda", routing_key="verified", body=b"{}")
    assert b.get("other") is None

    delivery = b.get("verified")
    assert delivery is not None
    assert delivery.correlation_id == "c1"
    assert delivery.redelivered is False
    assert b.inflight_count() == 1

    delivery.ack()
    assert delivery.resolution == "ack"
    assert b.inflight_count() == 0
    assert b.pending_count("verified") == 0


def test_in_memory_nack_requeue_redelivers_at_head():
    b = InMemoryBroker()
    b.publish(correlation_id="c1", exchange="sda", routing_key="q", body=b"first")
    b.publish(correlation_id="c2", exchange="sda", routing_key="q", body=b"second")

    first = b.get("q")
    first.nack(requeue=True)

    replay = b.get("q")
    assert replay.body == b"first"
    assert replay.redelivered is True
    replay.nack(requeue=False)
    assert [m.body for m in b.pending("q")] == [b"second"]


def test_delivery_resolves_exactly_once():
    b = InMemoryBroker()
    b.publish(correlation_id="c1", exchange="sda", routing_key="q", body=b"{}")
    delivery = b.get("q")
    delivery.ack()
    with pytest.raises(RuntimeError, match="already resolved"):
        delivery.nack(requeue=True)
    with pytest.raises(RuntimeError):
        delivery.ack()


def test_closed_in_memory_broker_fails_publish_and_receive():
    b = InMemoryBroker()
    b.close()
    with pytest.raises(PublishError):
        b.publish(correlation_id="c1", exchange="sda", routing_key="q", body=b"{}")
    with pytest.raises(ConnectionLossError):
        b.get("q")
    with pytest.raises(ConnectionLossError):
        b.ping()
    b.reset()
    b.ping()


def test_redis_broker_round_trip_with_fake_driver(monkeypatch):
    client = FakeRedisClient()
    monkeypatch.setattr("sda.broker._import_redis", lambda: _fake_redis_module(client))

    broker = create_broker_from_env({"BROKER_BACKEND": "redis", "BROKER_DSN": "redis://localhost:6379/0"})
    assert isinstance(broker, RedisBroker)

    broker.publish(correlation_id="c1", exchange="sda", routing_key="q", body=b'{"a":1}')
    got = broker.get("q")
    assert got is not None
    assert got.body == b'{"a":1}'
    assert got.correlation_id == "c1"

    got.nack(requeue=True)
    replay = broker.get("q")
    assert replay.message_id == got.message_id
    assert replay.redelivered is True
    replay.ack()
    assert broker.pending_count("q") == 0
    assert client.kv == {}
    assert client.lists["sda:queue:q:processing"] == []


def test_redis_broker_redelivers_unacked_message_after_restart(monkeypatch):
    client = FakeRedisClient()
    monkeypatch.setattr("sda.broker._import_redis", lambda: _fake_redis_module(client))

    first = RedisBroker(dsn="redis://localhost:6379/0")
    first.publish(correlation_id="c1", exchange="sda", routing_key="q", body=b"one")
    first.publish(correlation_id="c2", exchange="sda", routing_key="q", body=b"two")
    taken = first.get("q")
    assert client.lrange("sda:queue:q:processing", 0, -1) == [taken.message_id]

    # process dies here without resolving the delivery
    restarted = RedisBroker(dsn="redis://localhost:6379/0")
    replay = restarted.get("q")
    assert replay.message_id == taken.message_id
    assert replay.body == b"one"
    assert replay.redelivered is True
    replay.ack()

    following = restarted.get("q")
    assert following.body == b"two"
    assert following.redelivered is False


def test_redis_broker_reclaim_runs_once_per_queue(monkeypatch):
    client = FakeRedisClient()
    monkeypatch.setattr("sda.broker._import_redis", lambda: _fake_redis_module(client))
    broker = RedisBroker(dsn="redis://localhost:6379/0")
    broker.publish(correlation_id="c1", exchange="sda", routing_key="q", body=b"{}")
    broker.publish(correlation_id="c2", exchange="sda", routing_key="q", body=b"{}")

    held = broker.get("q")
    other = broker.get("q")
    assert other.message_id != held.message_id
    assert broker.get("q") is None
    assert client.llen("sda:queue:q:processing") == 2


def test_redis_broker_preserves_non_utf8_bodies(monkeypatch):
    client = FakeRedisClient()
    monkeypatch.setattr("sda.broker._import_redis", lambda: _fake_redis_module(client))
    broker = RedisBroker(dsn="redis://localhost:6379/0")

    raw = b"\xff\xfe{\"file_id\": 1}\x80"
    broker.publish(correlation_id="c1", exchange="sda", routing_key="q", body=raw)
    assert broker.get("q").body == raw


def test_redis_broker_skips_dangling_ids(monkeypatch):
    client = FakeRedisClient()
    monkeypatch.setattr("sda.broker._import_redis", lambda: _fake_redis_module(client))
    broker = RedisBroker(dsn="redis://localhost:6379/0")
    client.rpush("sda:queue:q:pending", "msg_missing")

    assert broker.get("q") is None
    assert client.llen("sda:queue:q:processing") == 0


def test_redis_broker_maps_driver_errors(monkeypatch):
    client = FakeRedisClient()
    monkeypatch.setattr("sda.broker._import_redis", lambda: _fake_redis_module(client))
    broker = RedisBroker(dsn="redis://localhost:6379/0")

    client.down = True
    with pytest.raises(PublishError):
        broker.publish(correlation_id="c1", exchange="sda", routing_key="q", body=b"{}")
    with pytest.raises(ConnectionLossError):
        broker.get("q")
    with pytest.raises(ConnectionLossError):
        broker.ping()


def test_broker_factory_defaults_and_validation():
    assert isinstance(create_broker_from_env({}), InMemoryBroker)
    with pytest.raises(ConfigError, match="BROKER_DSN"):
        create_broker_from_env({"BROKER_BACKEND": "redis"})
    with pytest.raises(ConfigError, match="unsupported broker backend"):
        create_broker_from_env({"BROKER_BACKEND": "amqp"})


def test_connection_watcher_reports_loss():
    b = InMemoryBroker()
    lost = threading.Event()
    errors: list[ConnectionLossError] = []

    def on_loss(error: ConnectionLossError) -> None:
        errors.append(error)
        lost.set()

    watcher = ConnectionWatcher(b, interval_s=0.01, on_loss=on_loss)
    watcher.start()
    b.close()
    assert lost.wait(2.0)
    watcher.stop()
    assert isinstance(errors[0], ConnectionLossError)


def test_connection_watcher_stops_quietly():
    b = InMemoryBroker()
    errors: list[ConnectionLossError] = []
    watcher = ConnectionWatcher(b, interval_s=0.01, on_loss=errors.append)
    watcher.start()
    watcher.stop()
    assert errors == []


def test_consume_yields_until_stopped():
    b = InMemoryBroker()
    for i in range(3):
        b.publish(correlation_id=f"c{i}", exchange="sda", routing_key="q", body=b"{}")
    stop = threading.Event()

    seen = []
    for delivery in consume(b, "q", poll_interval_s=0.01, stop=stop):
        seen.append(delivery.correlation_id)
        delivery.ack()
        if len(seen) == 3:
            stop.set()
    assert seen == ["c0", "c1", "c2"]


def test_send_error_wraps_original_body():
    b = InMemoryBroker()
    b.publish(correlation_id="c1", exchange="sda", routing_key="q", body=b'{"file_id": 3}')
    delivery = b.get("q")

    send_error(b, delivery, reason="bad header", exchange="sda", routing_key="error", user="alice")
    events = b.pending("error")
    assert events[0].correlation_id == "c1"
    assert json.loads(events[0].body) == {
        "user": "alice",
        "filepath": None,
        "reason": "bad header",
        "original_message": {"file_id": 3},
    }
