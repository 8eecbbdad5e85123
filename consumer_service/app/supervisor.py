import logging
import threading

import pika
from sqlalchemy.exc import SQLAlchemyError

from .database import create_db_engine
from .errors import TransientInfrastructureError

logger = logging.getLogger(__name__)


class ConnectionSupervisor:
    """
    Owns the broker connection/channel and the store connection pool.

    Connection failures are logged and retried after a fixed delay, forever.
    Components subscribe to (re)connect events instead of reading shared
    connection state:
      - on_store_ready(callback()) runs after every successful store probe
      - on_connect(callback(channel)) runs on every new broker channel
    """

    def __init__(
        self,
        rabbitmq_url,
        database_url,
        reconnect_delay=5.0,
        pool_size=10,
        connection_factory=pika.BlockingConnection,
        engine=None,
    ):
        self.parameters = pika.URLParameters(rabbitmq_url)
        self.parameters.heartbeat = 600
        self.parameters.blocked_connection_timeout = 300
        self.reconnect_delay = reconnect_delay
        self.engine = engine if engine is not None else create_db_engine(database_url, pool_size)

        self._connection_factory = connection_factory
        self._store_listeners = []
        self._connect_listeners = []
        self._stopping = threading.Event()

        self.connection = None
        self.channel = None

    @classmethod
    def from_settings(cls, settings):
        return cls(
            settings.rabbitmq_url,
            settings.database_url,
            reconnect_delay=settings.reconnect_delay_seconds,
            pool_size=settings.db_pool_size,
        )

    def on_store_ready(self, callback):
        self._store_listeners.append(callback)

    def on_connect(self, callback):
        self._connect_listeners.append(callback)

    @property
    def stopping(self):
        return self._stopping

    def stop(self):
        logger.info("Shutdown requested")
        self._stopping.set()

    def wait_for_store(self):
        """Probe the store until it answers, then notify store listeners."""
        while not self._stopping.is_set():
            try:
                with self.engine.connect() as conn:
                    conn.exec_driver_sql("SELECT 1")
                for callback in self._store_listeners:
                    callback()
                logger.info("Connected to the store")
                return True
            except SQLAlchemyError as e:
                logger.warning(
                    "Store not ready, retrying in %ss: %s", self.reconnect_delay, e
                )
                self._pause()
        return False

    def connect_broker(self):
        """Open a connection and channel, then notify connect listeners."""
        while not self._stopping.is_set():
            try:
                self.connection = self._connection_factory(self.parameters)
                self.channel = self.connection.channel()
                # Publishes (the failed path) are confirmed by the broker.
                self.channel.confirm_delivery()
                for callback in self._connect_listeners:
                    callback(self.channel)
                logger.info("Connected to RabbitMQ at %s", self.parameters.host)
                return self.channel
            except pika.exceptions.AMQPError as e:
                logger.warning(
                    "RabbitMQ not ready, retrying in %ss: %r", self.reconnect_delay, e
                )
                self.close_broker()
                self._pause()
        return None

    def close_broker(self):
        connection, self.connection, self.channel = self.connection, None, None
        if connection is not None and connection.is_open:
            try:
                connection.close()
            except pika.exceptions.AMQPError as e:
                logger.debug("Ignoring error while closing connection: %r", e)

    def run(self, consume):
        """
        Keep consume(channel, stop_event) running until stop() is called.

        Any broker failure or transient store failure tears the connection
        down (the broker redelivers unacked deliveries) and starts over.
        """
        while not self._stopping.is_set():
            try:
                if not self.wait_for_store():
                    break
                channel = self.connect_broker()
                if channel is None:
                    break
                consume(channel, self._stopping)
            except (pika.exceptions.AMQPError, TransientInfrastructureError) as e:
                logger.warning(
                    "Connection lost, reconnecting in %ss: %r", self.reconnect_delay, e
                )
                self.close_broker()
                self._pause()
                continue
            self.close_broker()
        self.close_broker()
        self.engine.dispose()
        logger.info("Supervisor stopped")

    def _pause(self):
        # Returns early when stop() is called.
        self._stopping.wait(self.reconnect_delay)
