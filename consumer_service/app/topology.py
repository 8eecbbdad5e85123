import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Topology:
    """Names and settings of the broker routing graph."""

    exchange: str = "order_exchange"
    dead_letter_exchange: str = "order_dlx"
    work_queue: str = "order_processing_queue"
    retry_queue: str = "order_retry_queue"
    failed_queue: str = "order_failed_queue"

    submitted_key: str = "order.submitted"
    retry_key: str = "order.retry"
    failed_key: str = "order.failed"

    retry_ttl_ms: int = 5000


class TopologyManager:
    """
    Declares the routing graph on a channel.

    main exchange --submitted--> work queue --(reject)--> DLX --retry--> retry queue
    retry queue --(TTL expiry)--> main exchange --submitted--> work queue
    DLX --failed--> failed queue (never consumed here)

    Every declaration is idempotent, so declare() runs on each (re)connect.
    """

    def __init__(self, topology):
        self.topology = topology

    def declare(self, channel):
        t = self.topology

        # 1. Exchanges
        channel.exchange_declare(exchange=t.exchange, exchange_type="direct", durable=True)
        channel.exchange_declare(
            exchange=t.dead_letter_exchange, exchange_type="direct", durable=True
        )

        # 2. Work queue; rejected deliveries dead-letter into the retry path
        channel.queue_declare(
            queue=t.work_queue,
            durable=True,
            arguments={
                "x-dead-letter-exchange": t.dead_letter_exchange,
                "x-dead-letter-routing-key": t.retry_key,
            },
        )
        channel.queue_bind(queue=t.work_queue, exchange=t.exchange, routing_key=t.submitted_key)

        # 3. Retry queue; expired messages go back to the main exchange
        channel.queue_declare(
            queue=t.retry_queue,
            durable=True,
            arguments={
                "x-message-ttl": t.retry_ttl_ms,
                "x-dead-letter-exchange": t.exchange,
                "x-dead-letter-routing-key": t.submitted_key,
            },
        )
        channel.queue_bind(
            queue=t.retry_queue, exchange=t.dead_letter_exchange, routing_key=t.retry_key
        )

        # 4. Failed queue, for operators
        channel.queue_declare(queue=t.failed_queue, durable=True)
        channel.queue_bind(
            queue=t.failed_queue, exchange=t.dead_letter_exchange, routing_key=t.failed_key
        )

        logger.info(
            "Topology declared: %s -> %s, retry after %sms via %s, failures in %s",
            t.exchange,
            t.work_queue,
            t.retry_ttl_ms,
            t.retry_queue,
            t.failed_queue,
        )
