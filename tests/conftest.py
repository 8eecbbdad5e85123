"""Pytest configuration and fixtures."""

import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from consumer_service.app.models import Order
from consumer_service.app.store import OrderStore
from consumer_service.app.topology import Topology, TopologyManager
from fake_broker import FakeChannel


@pytest.fixture
def engine():
    # One shared in-memory database for every session of a test.
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    store = OrderStore(engine)
    store.create_schema()
    return store


@pytest.fixture
def topology():
    return Topology()


@pytest.fixture
def channel(topology):
    channel = FakeChannel()
    TopologyManager(topology).declare(channel)
    return channel


@pytest.fixture
def add_order(store):
    """Insert an order the way the ingress does (PENDING, retry_count 0 by default)."""

    def _add(order_id="o1", quantity=2, **fields):
        with store.session() as db:
            db.add(
                Order(
                    order_id=order_id,
                    user_id="user123",
                    product_id="prod123",
                    quantity=quantity,
                    **fields,
                )
            )
        return store.get_order(order_id)

    return _add


@pytest.fixture
def submit(channel, topology):
    """Publish a submission event to the main exchange."""

    def _submit(order_id="o1", **payload):
        body = json.dumps({"orderId": order_id, **payload})
        channel.basic_publish(
            exchange=topology.exchange, routing_key=topology.submitted_key, body=body
        )
        return body.encode()

    return _submit
