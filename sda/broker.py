from __future__ import annotations

import base64
import json
import logging
import os
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from sda.errors import ConfigError, ConnectionLossError, PublishError
from sda.messages import encode_message, error_event

logger = logging.getLogger(__name__)


class Broker(Protocol):
    def publish(
        self,
        *,
        correlation_id: str,
        exchange: str,
        routing_key: str,
        body: bytes,
        durable: bool = True,
    ) -> None: ...

    def get(self, queue_name: str) -> Delivery | None: ...

    def ping(self) -> None: ...


@dataclass
class QueueMessage:
    message_id: str
    queue_name: str
    correlation_id: str
    exchange: str
    body: bytes
    durable: bool = True
    attempt: int = 0
    published_at: str | None = None


@dataclass
class Delivery:
    """One received message. It must be resolved exactly once with ack or nack."""

    message_id: str
    queue_name: str
    correlation_id: str
    body: bytes
    redelivered: bool = False
    _broker: Any = field(default=None, repr=False, compare=False)
    _resolution: str | None = field(default=None, repr=False, compare=False)

    @property
    def resolution(self) -> str | None:
        return self._resolution

    def _resolve(self, resolution: str) -> None:
        if self._resolution is not None:
            raise RuntimeError(f"delivery {self.message_id} already resolved with {self._resolution}")
        self._resolution = resolution

    def ack(self) -> None:
        self._resolve("ack")
        self._broker._ack(self)

    def nack(self, *, requeue: bool) -> None:
        self._resolve("nack_requeue" if requeue else "nack_drop")
        self._broker._nack(self, requeue=requeue)


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class InMemoryBroker:
    """Direct-exchange broker kept in process memory; routing keys name the queues."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._inflight: dict[str, QueueMessage] = {}
        self._connected = True

    def publish(
        self,
        *,
        correlation_id: str,
        exchange: str,
        routing_key: str,
        body: bytes,
        durable: bool = True,
    ) -> None:
        with self._lock:
            if not self._connected:
                raise PublishError(f"broker unavailable, cannot publish to {exchange}/{routing_key}")
            msg = QueueMessage(
                message_id=f"msg_{uuid.uuid4().hex[:12]}",
                queue_name=routing_key,
                correlation_id=correlation_id,
                exchange=exchange,
                body=bytes(body),
                durable=durable,
                published_at=_utcnow_iso(),
            )
            self._queues.setdefault(routing_key, deque()).append(msg)

    def get(self, queue_name: str) -> Delivery | None:
        with self._lock:
            if not self._connected:
                raise ConnectionLossError("broker connection closed")
            queue = self._queues.setdefault(queue_name, deque())
            if not queue:
                return None
            msg = queue.popleft()
            self._inflight[msg.message_id] = msg
            return Delivery(
                message_id=msg.message_id,
                queue_name=msg.queue_name,
                correlation_id=msg.correlation_id,
                body=msg.body,
                redelivered=msg.attempt > 0,
                _broker=self,
            )

    def _ack(self, delivery: Delivery) -> None:
        with self._lock:
            self._inflight.pop(delivery.message_id, None)

    def _nack(self, delivery: Delivery, *, requeue: bool) -> None:
        with self._lock:
            msg = self._inflight.pop(delivery.message_id, None)
            if msg is None:
                return
            msg.attempt += 1
            if requeue:
                self._queues.setdefault(msg.queue_name, deque()).appendleft(msg)

    def ping(self) -> None:
        if not self._connected:
            raise ConnectionLossError("broker connection closed")

    def close(self) -> None:
        with self._lock:
            self._connected = False

    def pending(self, queue_name: str) -> list[QueueMessage]:
        with self._lock:
            return list(self._queues.get(queue_name, deque()))

    def pending_count(self, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(queue_name, deque()))

    def inflight_count(self) -> int:
        with self._lock:
            return len(self._inflight)

    def reset(self) -> None:
        with self._lock:
            self._queues.clear()
            self._inflight.clear()
            self._connected = True


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for BROKER_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisBroker:
    """Redis-backed broker: a pending list and a processing list per queue.

    ``get`` moves an id from pending to processing in one LMOVE, so a
    message is always on one of the two lists until it is resolved. The
    first ``get`` on a queue returns whatever a previous process left in
    processing to the head of pending, marked as redelivered.

    A publish returns once Redis has stored the message, which is the
    publish confirmation the workers wait for before acknowledging.
    """

    def __init__(self, *, dsn: str, namespace: str = "sda") -> None:
        if not dsn.strip():
            raise ValueError("BROKER_DSN must be provided for redis broker")
        self._dsn = dsn.strip()
        self._namespace = namespace.strip() or "sda"
        self._lock = threading.RLock()
        self._reclaimed: set[str] = set()
        redis = _import_redis()
        self._redis_error = getattr(redis, "RedisError", Exception)
        self._client = redis.Redis.from_url(self._dsn, decode_responses=True)

    def _pending_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:pending"

    def _processing_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:processing"

    def _msg_key(self, message_id: str) -> str:
        return f"{self._namespace}:msg:{message_id}"

    def _load_msg(self, message_id: str) -> dict[str, Any] | None:
        raw = self._client.get(self._msg_key(message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _save_msg(self, message_id: str, data: dict[str, Any]) -> None:
        self._client.set(self._msg_key(message_id), json.dumps(data, ensure_ascii=True, sort_keys=True))

    def _mark_redelivered(self, message_id: str) -> None:
        data = self._load_msg(message_id)
        if data is None:
            return
        data["attempt"] = int(data.get("attempt", 0)) + 1
        self._save_msg(message_id, data)

    def reclaim(self, queue_name: str) -> int:
        """Return ids stranded in processing to the head of pending, oldest first."""
        pending = self._pending_key(queue_name)
        processing = self._processing_key(queue_name)
        moved = 0
        with self._lock:
            while True:
                message_id = self._client.lmove(processing, pending, "RIGHT", "LEFT")
                if not isinstance(message_id, str) or not message_id:
                    break
                self._mark_redelivered(message_id)
                moved += 1
            self._reclaimed.add(queue_name)
        if moved:
            logger.warning("reclaimed %d unacknowledged messages on %s", moved, queue_name)
        return moved

    def publish(
        self,
        *,
        correlation_id: str,
        exchange: str,
        routing_key: str,
        body: bytes,
        durable: bool = True,
    ) -> None:
        message_id = f"msg_{uuid.uuid4().hex[:12]}"
        data = {
            "message_id": message_id,
            "queue_name": routing_key,
            "correlation_id": correlation_id,
            "exchange": exchange,
            "body": base64.b64encode(bytes(body)).decode("ascii"),
            "durable": bool(durable),
            "attempt": 0,
            "published_at": _utcnow_iso(),
        }
        with self._lock:
            try:
                self._save_msg(message_id, data)
                self._client.rpush(self._pending_key(routing_key), message_id)
            except self._redis_error as exc:
                raise PublishError(f"publish to {exchange}/{routing_key} failed: {exc}") from exc

    def get(self, queue_name: str) -> Delivery | None:
        pending = self._pending_key(queue_name)
        processing = self._processing_key(queue_name)
        with self._lock:
            try:
                if queue_name not in self._reclaimed:
                    self.reclaim(queue_name)
                while True:
                    message_id = self._client.lmove(pending, processing, "LEFT", "RIGHT")
                    if not isinstance(message_id, str) or not message_id:
                        return None
                    data = self._load_msg(message_id)
                    if data is None:
                        logger.warning("dropping dangling message id %s from %s", message_id, queue_name)
                        self._client.lrem(processing, 0, message_id)
                        continue
                    return Delivery(
                        message_id=message_id,
                        queue_name=queue_name,
                        correlation_id=str(data.get("correlation_id", "")),
                        body=base64.b64decode(str(data.get("body", ""))),
                        redelivered=int(data.get("attempt", 0)) > 0,
                        _broker=self,
                    )
            except self._redis_error as exc:
                raise ConnectionLossError(f"receive from {queue_name} failed: {exc}") from exc

    def _ack(self, delivery: Delivery) -> None:
        with self._lock:
            self._client.lrem(self._processing_key(delivery.queue_name), 0, delivery.message_id)
            self._client.delete(self._msg_key(delivery.message_id))

    def _nack(self, delivery: Delivery, *, requeue: bool) -> None:
        processing = self._processing_key(delivery.queue_name)
        with self._lock:
            if not requeue:
                self._client.lrem(processing, 0, delivery.message_id)
                self._client.delete(self._msg_key(delivery.message_id))
                return
            # The id is on pending before it leaves processing.
            self._mark_redelivered(delivery.message_id)
            self._client.lpush(self._pending_key(delivery.queue_name), delivery.message_id)
            self._client.lrem(processing, 0, delivery.message_id)

    def ping(self) -> None:
        try:
            self._client.ping()
        except self._redis_error as exc:
            raise ConnectionLossError(f"broker connection lost: {exc}") from exc

    def pending_count(self, queue_name: str) -> int:
        with self._lock:
            return int(self._client.llen(self._pending_key(queue_name)))


def consume(
    broker: Broker,
    queue_name: str,
    *,
    poll_interval_s: float = 0.5,
    stop: threading.Event | None = None,
) -> Iterator[Delivery]:
    """Yield deliveries from ``queue_name`` until ``stop`` is set, polling while the queue is empty."""
    while stop is None or not stop.is_set():
        delivery = broker.get(queue_name)
        if delivery is not None:
            yield delivery
            continue
        if stop is not None:
            stop.wait(poll_interval_s)
        else:
            time.sleep(poll_interval_s)


def send_error(
    broker: Broker,
    delivery: Delivery,
    *,
    reason: str,
    exchange: str,
    routing_key: str,
    durable: bool = True,
    user: str | None = None,
    filepath: str | None = None,
) -> None:
    broker.publish(
        correlation_id=delivery.correlation_id,
        exchange=exchange,
        routing_key=routing_key,
        body=encode_message(error_event(reason=reason, body=delivery.body, user=user, filepath=filepath)),
        durable=durable,
    )


def _terminate_process(error: ConnectionLossError) -> None:
    logger.critical("broker connection lost, exiting: %s", error)
    os._exit(1)


class ConnectionWatcher:
    """Ping the broker on a background thread; connection loss ends the process."""

    def __init__(
        self,
        broker: Broker,
        *,
        interval_s: float = 5.0,
        on_loss: Callable[[ConnectionLossError], None] | None = None,
    ) -> None:
        self._broker = broker
        self._interval_s = max(0.01, float(interval_s))
        self._on_loss = on_loss or _terminate_process
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def watch(self) -> ConnectionLossError | None:
        while not self._stop.wait(self._interval_s):
            try:
                self._broker.ping()
            except ConnectionLossError as exc:
                return exc
        return None

    def _run(self) -> None:
        error = self.watch()
        if error is not None:
            self._on_loss(error)

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self._run, name="broker-watcher", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()


def create_broker_from_env(environ: Mapping[str, str] | None = None) -> InMemoryBroker | RedisBroker:
    env = os.environ if environ is None else environ
    backend = env.get("BROKER_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryBroker()
    if backend == "redis":
        dsn = env.get("BROKER_DSN", "").strip()
        if not dsn:
            raise ConfigError("BROKER_DSN must be set when BROKER_BACKEND=redis")
        return RedisBroker(dsn=dsn, namespace=env.get("BROKER_NAMESPACE", "sda"))
    raise ConfigError(f"unsupported broker backend: {backend}")
