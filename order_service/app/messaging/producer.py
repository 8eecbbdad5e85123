import json
import logging
import threading

import pika

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "order_exchange"
SUBMITTED_ROUTING_KEY = "order.submitted"


class RabbitMQProducer:
    """
    Publishes order events to the main exchange.

    One connection and channel are shared by all request threads, so every
    publish goes through a lock. The connection is (re)opened on demand.
    """

    def __init__(self, url, exchange_name=EXCHANGE_NAME, connection_factory=pika.BlockingConnection):
        self.parameters = pika.URLParameters(url)
        self.parameters.heartbeat = 600
        self.parameters.blocked_connection_timeout = 300
        self.exchange_name = exchange_name
        self._connection_factory = connection_factory
        self._lock = threading.Lock()
        self.connection = None
        self.channel = None

    def connect(self):
        self._reset()
        self.connection = self._connection_factory(self.parameters)
        self.channel = self.connection.channel()
        # Declare the exchange (durable ensures it survives restarts)
        self.channel.exchange_declare(
            exchange=self.exchange_name, exchange_type="direct", durable=True
        )
        # basic_publish raises if the broker does not take the message.
        self.channel.confirm_delivery()
        logger.info("Connected to RabbitMQ exchange %s", self.exchange_name)

    def publish(self, message, routing_key=SUBMITTED_ROUTING_KEY):
        """
        Publish a JSON message, reconnecting once if the connection or the
        channel was closed under us.

        Raises pika.exceptions.AMQPError if the message could not be handed
        to a bound queue.
        """
        with self._lock:
            try:
                self._publish(message, routing_key)
            except (pika.exceptions.UnroutableError, pika.exceptions.NackError):
                # The channel is fine; the broker refused this message.
                raise
            except (pika.exceptions.AMQPConnectionError, pika.exceptions.AMQPChannelError) as e:
                logger.warning("Publish failed on a dead connection or channel, reconnecting: %r", e)
                self._reset()
                try:
                    self._publish(message, routing_key)
                except (pika.exceptions.AMQPConnectionError, pika.exceptions.AMQPChannelError):
                    self._reset()
                    raise
        logger.info(" [x] Sent event '%s': %s", routing_key, message)

    def _publish(self, message, routing_key):
        if (
            self.connection is None
            or self.connection.is_closed
            or self.channel is None
            or self.channel.is_closed
        ):
            self.connect()
        self.channel.basic_publish(
            exchange=self.exchange_name,
            routing_key=routing_key,
            body=json.dumps(message),
            properties=pika.BasicProperties(
                delivery_mode=2,  # Make message persistent
                content_type="application/json",
            ),
            mandatory=True,
        )

    def _reset(self):
        connection, self.connection, self.channel = self.connection, None, None
        if connection is not None and connection.is_open:
            try:
                connection.close()
            except pika.exceptions.AMQPError as e:
                logger.debug("Ignoring error while closing connection: %r", e)

    def close(self):
        """Closes the connection cleanly."""
        self._reset()
