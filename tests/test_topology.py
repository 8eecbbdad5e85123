from consumer_service.app.topology import Topology, TopologyManager
from fake_broker import FakeChannel


def test_declares_the_retry_graph(channel, topology):
    assert channel.exchanges == {"order_exchange": "direct", "order_dlx": "direct"}
    assert channel.arguments["order_processing_queue"] == {
        "x-dead-letter-exchange": "order_dlx",
        "x-dead-letter-routing-key": "order.retry",
    }
    assert channel.arguments["order_retry_queue"] == {
        "x-message-ttl": 5000,
        "x-dead-letter-exchange": "order_exchange",
        "x-dead-letter-routing-key": "order.submitted",
    }
    assert channel.arguments["order_failed_queue"] == {}
    assert channel.bindings == {
        ("order_exchange", "order_processing_queue", "order.submitted"),
        ("order_dlx", "order_retry_queue", "order.retry"),
        ("order_dlx", "order_failed_queue", "order.failed"),
    }


def test_declaring_twice_is_harmless(channel, topology):
    bindings = set(channel.bindings)
    arguments = dict(channel.arguments)

    TopologyManager(topology).declare(channel)

    assert channel.bindings == bindings
    assert channel.arguments == arguments


def test_retry_ttl_is_configurable():
    channel = FakeChannel()
    TopologyManager(Topology(retry_ttl_ms=250)).declare(channel)

    assert channel.arguments["order_retry_queue"]["x-message-ttl"] == 250


def test_rejected_delivery_waits_in_retry_queue_then_returns(channel, topology, submit):
    submit("o1")
    method, _, body = channel.deliver(topology.work_queue)

    channel.basic_nack(delivery_tag=method.delivery_tag, requeue=False)

    assert channel.depth(topology.work_queue) == 0
    assert channel.depth(topology.retry_queue) == 1

    assert channel.expire(topology.retry_queue) == 1
    assert channel.depth(topology.retry_queue) == 0
    assert channel.depth(topology.work_queue) == 1
    assert channel.deliver(topology.work_queue)[2] == body


def test_failed_routing_key_bypasses_retry(channel, topology):
    channel.basic_publish(
        exchange=topology.dead_letter_exchange, routing_key=topology.failed_key, body=b"{}"
    )

    assert channel.depth(topology.failed_queue) == 1
    assert channel.depth(topology.retry_queue) == 0
    # Nothing consumes or expires the failed queue.
    assert channel.expire(topology.failed_queue) == 0
    assert channel.depth(topology.failed_queue) == 1

