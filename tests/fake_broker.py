"""In-memory stand-in for a pika BlockingChannel with direct-exchange routing."""

from collections import deque
from dataclasses import dataclass, field

import pika
from pika.exceptions import ChannelClosedByBroker, UnroutableError
from pika.spec import Basic


@dataclass
class Message:
    exchange: str
    routing_key: str
    body: bytes
    properties: pika.BasicProperties = field(default_factory=pika.BasicProperties)


class FakeChannel:
    def __init__(self):
        self.exchanges = {}
        self.queues = {}
        self.arguments = {}
        self.bindings = set()
        self.unacked = {}
        self.acked = []
        self.nacked = []
        self.published = []
        self.declarations = 0
        self.confirming = False
        self.is_open = True
        self._next_tag = 1

    @property
    def is_closed(self):
        return not self.is_open

    # -- topology --------------------------------------------------------

    def exchange_declare(self, exchange, exchange_type="direct", durable=False, **kwargs):
        self.declarations += 1
        existing = self.exchanges.get(exchange)
        if existing is not None and existing != exchange_type:
            raise ChannelClosedByBroker(406, f"PRECONDITION_FAILED - inequivalent type for {exchange}")
        self.exchanges[exchange] = exchange_type

    def queue_declare(self, queue, durable=False, arguments=None, **kwargs):
        self.declarations += 1
        arguments = dict(arguments or {})
        if queue in self.queues and self.arguments[queue] != arguments:
            raise ChannelClosedByBroker(406, f"PRECONDITION_FAILED - inequivalent arg for {queue}")
        self.queues.setdefault(queue, deque())
        self.arguments[queue] = arguments

    def queue_bind(self, queue, exchange, routing_key=None, **kwargs):
        self.bindings.add((exchange, queue, routing_key))

    def basic_qos(self, prefetch_count=0, **kwargs):
        self.prefetch_count = prefetch_count

    def confirm_delivery(self):
        self.confirming = True

    # -- publishing ------------------------------------------------------

    def basic_publish(self, exchange, routing_key, body, properties=None, mandatory=False):
        if isinstance(body, str):
            body = body.encode()
        message = Message(exchange, routing_key, body, properties or pika.BasicProperties())
        self.published.append(message)
        routed = self._route(message)
        if not routed and mandatory:
            raise UnroutableError([message])

    def _route(self, message):
        targets = [
            queue
            for (exchange, queue, key) in self.bindings
            if exchange == message.exchange and key == message.routing_key
        ]
        for queue in targets:
            self.queues[queue].append(message)
        return bool(targets)

    def _dead_letter(self, queue, message):
        arguments = self.arguments.get(queue, {})
        exchange = arguments.get("x-dead-letter-exchange")
        if exchange is None:
            return
        key = arguments.get("x-dead-letter-routing-key", message.routing_key)
        self._route(Message(exchange, key, message.body, message.properties))

    # -- consuming -------------------------------------------------------

    def deliver(self, queue):
        """Hand out the next message of `queue` as (method, properties, body)."""
        if not self.queues[queue]:
            return None, None, None
        message = self.queues[queue].popleft()
        tag = self._next_tag
        self._next_tag += 1
        self.unacked[tag] = (queue, message)
        method = Basic.Deliver(
            delivery_tag=tag, exchange=message.exchange, routing_key=message.routing_key
        )
        return method, message.properties, message.body

    def consume(self, queue, inactivity_timeout=None, **kwargs):
        while True:
            yield self.deliver(queue)

    def cancel(self):
        requeued = len(self.unacked)
        for tag in sorted(self.unacked, reverse=True):
            queue, message = self.unacked.pop(tag)
            self.queues[queue].appendleft(message)
        return requeued

    def basic_get(self, queue, auto_ack=False):
        method, properties, body = self.deliver(queue)
        if method is None:
            return None, None, None
        if auto_ack:
            self.unacked.pop(method.delivery_tag)
        return Basic.GetOk(delivery_tag=method.delivery_tag, routing_key=method.routing_key), properties, body

    def basic_ack(self, delivery_tag=0, multiple=False):
        self.unacked.pop(delivery_tag)
        self.acked.append(delivery_tag)

    def basic_nack(self, delivery_tag=0, multiple=False, requeue=True):
        tags = sorted(self.unacked) if multiple and delivery_tag == 0 else [delivery_tag]
        for tag in reversed(tags):
            queue, message = self.unacked.pop(tag)
            self.nacked.append((tag, requeue))
            if requeue:
                self.queues[queue].appendleft(message)
            else:
                self._dead_letter(queue, message)

    def expire(self, queue):
        """Let every message in a TTL queue expire (dead-lettering it)."""
        if "x-message-ttl" not in self.arguments.get(queue, {}):
            return 0
        expired = 0
        while self.queues[queue]:
            self._dead_letter(queue, self.queues[queue].popleft())
            expired += 1
        return expired

    def depth(self, queue):
        return len(self.queues[queue])


class FakeConnection:
    def __init__(self, channel=None):
        self._channel = channel or FakeChannel()
        self.is_open = True
        self.is_closed = False

    def channel(self):
        return self._channel

    def close(self):
        self.is_open = False
        self.is_closed = True
