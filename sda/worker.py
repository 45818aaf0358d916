from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from sda.broker import Broker, Delivery, consume, send_error
from sda.config import BrokerConfig
from sda.errors import MessageValidationError, PublishError, WorkerError
from sda.messages import decode_body, encode_message, validate_payload

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    processed: int = 0
    acked: int = 0
    requeued: int = 0
    rejected: int = 0
    unacked: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "acked": self.acked,
            "requeued": self.requeued,
            "rejected": self.rejected,
            "unacked": self.unacked,
        }


class WorkerLoop:
    """Sequential receive, validate, process, persist, publish, acknowledge loop.

    Subclasses name the inbound schema and implement the unit of work:

    * ``parse(payload)`` builds the typed message from a validated payload.
    * ``process(message)`` does the work and returns its result.
    * ``completion(message, result)`` returns the outbound payload, or None
      when nothing should be published.
    * ``persist(message, result)`` records the state transition.

    Raising a ``WorkerError`` from any hook ends the delivery according to the
    error's ``requeue`` flag: requeued errors are nacked back onto the queue,
    the others are dropped and reported on the error channel.
    """

    service_name = "worker"
    schema_name = ""
    completion_schema: str | None = None

    def __init__(self, *, broker: Broker, config: BrokerConfig) -> None:
        self.broker = broker
        self.config = config
        self.stats = WorkerRunStats()

    def parse(self, payload: dict[str, Any]) -> Any:
        raise NotImplementedError

    def process(self, message: Any) -> Any:
        raise NotImplementedError

    def completion(self, message: Any, result: Any) -> dict[str, Any] | None:
        return None

    def persist(self, message: Any, result: Any) -> None:
        return None

    def describe(self, message: Any, delivery: Delivery) -> str:
        return (
            f"corr-id: {delivery.correlation_id}, "
            f"filepath: {getattr(message, 'filepath', None)}, "
            f"user: {getattr(message, 'user', None)}, "
            f"accessionid: {getattr(message, 'accession_id', None)}"
        )

    def handle_delivery(self, delivery: Delivery) -> str:
        """Run one delivery through the loop and return the state it ended in."""
        self.stats.processed += 1
        logger.debug("received a message (corr-id: %s, message: %r)", delivery.correlation_id, delivery.body)

        try:
            message = self.parse(decode_body(self.schema_name, delivery.body))
        except MessageValidationError as exc:
            logger.error("validation of incoming message failed (corr-id: %s, error: %s)", delivery.correlation_id, exc)
            return self._reject(delivery, exc, message=None)

        context = self.describe(message, delivery)
        logger.info("received work (%s)", context)

        try:
            result = self.process(message)
            outbound = self.completion(message, result)
            if outbound is not None and self.completion_schema:
                validate_payload(self.completion_schema, outbound)
            self.persist(message, result)
        except WorkerError as exc:
            if exc.requeue:
                logger.error("%s (%s) failed, requeueing (%s, error: %s)", exc.code, exc.error_class, context, exc)
                return self._nack(delivery, requeue=True, context=context)
            logger.error("%s (%s) failed, dropping message (%s, error: %s)", exc.code, exc.error_class, context, exc)
            return self._reject(delivery, exc, message=message)
        except Exception as exc:
            logger.exception("unexpected failure, dropping message (%s)", context)
            return self._reject(delivery, exc, message=message)

        if outbound is not None:
            try:
                self.broker.publish(
                    correlation_id=delivery.correlation_id,
                    exchange=self.config.exchange,
                    routing_key=self.config.routing_key,
                    body=encode_message(outbound),
                    durable=self.config.durable,
                )
            except PublishError as exc:
                logger.error("failed to publish completion, not acknowledging (%s, error: %s)", context, exc)
                self.stats.unacked += 1
                self._nack(delivery, requeue=True, context=context, count=False)
                return "unacknowledged"

        try:
            delivery.ack()
        except Exception as exc:
            logger.error("failed to ack message after work completed (%s, error: %s)", context, exc)
            return "published"
        self.stats.acked += 1
        logger.info("work done (%s)", context)
        return "acknowledged"

    def _nack(self, delivery: Delivery, *, requeue: bool, context: str, count: bool = True) -> str:
        try:
            delivery.nack(requeue=requeue)
        except Exception as exc:
            logger.error("failed to nack message (%s, error: %s)", context, exc)
        if count and requeue:
            self.stats.requeued += 1
        return "requeued" if requeue else "rejected"

    def _reject(self, delivery: Delivery, error: Exception, *, message: Any) -> str:
        context = self.describe(message, delivery)
        self.stats.rejected += 1
        state = self._nack(delivery, requeue=False, context=context)
        try:
            send_error(
                self.broker,
                delivery,
                reason=str(error),
                exchange=self.config.exchange,
                routing_key=self.config.routing_error,
                durable=self.config.durable,
                user=getattr(message, "user", None),
                filepath=getattr(message, "filepath", None),
            )
        except PublishError as exc:
            logger.error("failed to publish to error channel (%s, error: %s)", context, exc)
        return state

    def run_once(self) -> bool:
        delivery = self.broker.get(self.config.queue)
        if delivery is None:
            return False
        self.handle_delivery(delivery)
        return True

    def run_forever(
        self,
        *,
        stop_after_messages: int | None = None,
        stop: threading.Event | None = None,
    ) -> dict[str, int]:
        logger.info("starting %s service on queue %s", self.service_name, self.config.queue)
        handled = 0
        for delivery in consume(self.broker, self.config.queue, poll_interval_s=self.config.poll_interval_s, stop=stop):
            self.handle_delivery(delivery)
            handled += 1
            if stop_after_messages is not None and handled >= max(1, stop_after_messages):
                break
        return self.stats.as_dict()
