import enum
import json
import logging

import pika
from sqlalchemy.exc import SQLAlchemyError

from .effects import fulfil_order
from .errors import MalformedDeliveryError, TransientInfrastructureError
from .models import OrderStatus
from .retry_policy import DEFAULT_MAX_RETRIES, RetryDecision, decide
from .store import CommitResult

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    """What handle() did with a delivery."""

    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    RETRY = "retry"
    FAILED = "failed"
    MALFORMED = "malformed"
    UNKNOWN_ORDER = "unknown_order"


def parse_order_id(body):
    """Extract the order identifier from a delivery body."""
    try:
        payload = json.loads(body)
    except (TypeError, ValueError) as exc:
        raise MalformedDeliveryError(f"Unparsable body: {exc}") from exc

    order_id = payload.get("orderId") if isinstance(payload, dict) else None
    if not isinstance(order_id, str) or not order_id.strip():
        raise MalformedDeliveryError("Delivery carries no orderId")
    return order_id


class MessageProcessor:
    """
    Consumes the work queue and drives each order through
    PENDING -> PROCESSING -> COMPLETED | FAILED.

    Every delivery ends in exactly one broker decision:
      - ack: completed, duplicate, or routed to the failed queue
      - reject without requeue: retry, dead-lettered into the delayed retry queue

    Payload fields other than orderId are ignored; the store is authoritative.
    Store writes always happen before the ack/reject.
    """

    def __init__(
        self,
        store,
        topology,
        max_retries=DEFAULT_MAX_RETRIES,
        effect=fulfil_order,
        prefetch_count=1,
        inactivity_timeout=1.0,
    ):
        self.store = store
        self.topology = topology
        self.max_retries = max_retries
        self.effect = effect
        self.prefetch_count = prefetch_count
        self.inactivity_timeout = inactivity_timeout

    def consume(self, channel, stop_event):
        """
        Pull deliveries from the work queue until stop_event is set.

        The delivery sequence is bound to this channel; after a reconnect the
        supervisor calls consume() again with the new channel.
        """
        channel.basic_qos(prefetch_count=self.prefetch_count)
        logger.info(" [*] Waiting for orders on %s", self.topology.work_queue)

        deliveries = channel.consume(
            self.topology.work_queue, inactivity_timeout=self.inactivity_timeout
        )
        for method, properties, body in deliveries:
            if method is not None:
                self.handle(channel, method, properties, body)
            if stop_event.is_set():
                break

        # Prefetched but unacked deliveries go back to the queue.
        requeued = channel.cancel()
        logger.info("Consumer stopped, %s deliveries returned to the queue", requeued)

    def handle(self, channel, method, properties, body):
        try:
            order_id = parse_order_id(body)
        except MalformedDeliveryError as exc:
            logger.error("Malformed delivery %s: %s", method.delivery_tag, exc)
            self._route_to_failed(channel, method, body, "malformed")
            return Outcome.MALFORMED

        logger.info(" [x] Received order %s", order_id)

        try:
            if self.store.is_processed(order_id):
                logger.info("Order %s already processed. Skipping.", order_id)
                channel.basic_ack(delivery_tag=method.delivery_tag)
                return Outcome.DUPLICATE
            order = self.store.get_order(order_id)
        except SQLAlchemyError as exc:
            raise TransientInfrastructureError(
                f"Store unavailable while checking order {order_id}"
            ) from exc

        if order is None:
            logger.error("Order %s does not exist. Moving to failed queue.", order_id)
            self._route_to_failed(channel, method, body, "unknown-order")
            return Outcome.UNKNOWN_ORDER

        if order.status == OrderStatus.FAILED.value:
            logger.error("Order %s already FAILED. Forwarding to failed queue.", order_id)
            self._route_to_failed(channel, method, body, "already-failed", order.retry_count)
            return Outcome.FAILED

        result = None
        try:
            if self.store.mark_processing(order_id):
                self.effect(order)
                result = self.store.complete(order_id)
        except Exception as exc:
            logger.error("Error processing order %s: %s", order_id, exc)
            return self._handle_failure(channel, method, body, order_id)

        if result is None or result is CommitResult.NOT_OPEN:
            # The order left PENDING/PROCESSING under us.
            return self._settle_concluded(channel, method, body, order_id)

        if result is CommitResult.ALREADY_PROCESSED:
            logger.info("Order %s was completed by another delivery", order_id)
            channel.basic_ack(delivery_tag=method.delivery_tag)
            return Outcome.DUPLICATE

        logger.info("Order %s COMPLETED", order_id)
        channel.basic_ack(delivery_tag=method.delivery_tag)
        return Outcome.COMPLETED

    def _settle_concluded(self, channel, method, body, order_id):
        """Settle a delivery for an order that is no longer open, without reprocessing it."""
        try:
            processed = self.store.is_processed(order_id)
            order = None if processed else self.store.get_order(order_id)
        except SQLAlchemyError as exc:
            raise TransientInfrastructureError(
                f"Store unavailable while re-reading order {order_id}"
            ) from exc

        if processed:
            logger.info("Order %s was completed by another delivery", order_id)
            channel.basic_ack(delivery_tag=method.delivery_tag)
            return Outcome.DUPLICATE

        if order is None:
            logger.error("Order %s disappeared. Moving to failed queue.", order_id)
            self._route_to_failed(channel, method, body, "unknown-order")
            return Outcome.UNKNOWN_ORDER

        if order.status == OrderStatus.FAILED.value:
            logger.error("Order %s was given up concurrently. Forwarding to failed queue.", order_id)
            self._route_to_failed(channel, method, body, "already-failed", order.retry_count)
            return Outcome.FAILED

        # COMPLETED with no ledger entry, or a status this consumer never writes.
        logger.error(
            "Order %s is %s without a ledger entry. Moving to failed queue.", order_id, order.status
        )
        self._route_to_failed(channel, method, body, "inconsistent-state", order.retry_count)
        return Outcome.FAILED

    def _handle_failure(self, channel, method, body, order_id):
        try:
            while True:
                order = self.store.get_order(order_id)
                if order is None:
                    logger.error("Order %s disappeared. Moving to failed queue.", order_id)
                    self._route_to_failed(channel, method, body, "unknown-order")
                    return Outcome.UNKNOWN_ORDER

                if decide(order.retry_count, self.max_retries) is RetryDecision.GIVE_UP:
                    break

                if self.store.increment_retry(order_id, self.max_retries):
                    logger.warning(
                        "Retrying order %s (attempt %s of %s)",
                        order_id,
                        order.retry_count + 1,
                        self.max_retries,
                    )
                    # Dead-letters into the retry queue, back on the work queue after the TTL.
                    channel.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
                    return Outcome.RETRY
                # A concurrent delivery bumped the counter first; read it again.

            if not self.store.mark_failed(order_id) and self.store.is_processed(order_id):
                logger.info("Order %s was completed by another delivery", order_id)
                channel.basic_ack(delivery_tag=method.delivery_tag)
                return Outcome.DUPLICATE
        except SQLAlchemyError as exc:
            raise TransientInfrastructureError(
                f"Store unavailable while recording failure of order {order_id}"
            ) from exc

        logger.error("Max retries reached for %s. Moving to FAILED queue.", order_id)
        self._route_to_failed(channel, method, body, "max-retries-exceeded", order.retry_count)
        return Outcome.FAILED

    def _route_to_failed(self, channel, method, body, reason, retry_count=None):
        """
        Publish the original body to the failed queue, then ack the delivery.

        A plain reject would dead-letter under the retry key and loop back, so
        the failed path is an explicit publish with its own routing key.
        """
        headers = {"x-failure-reason": reason}
        if retry_count is not None:
            headers["x-retry-count"] = retry_count

        channel.basic_publish(
            exchange=self.topology.dead_letter_exchange,
            routing_key=self.topology.failed_key,
            body=body,
            properties=pika.BasicProperties(
                delivery_mode=2,  # Make message persistent
                content_type="application/json",
                headers=headers,
            ),
        )
        channel.basic_ack(delivery_tag=method.delivery_tag)
