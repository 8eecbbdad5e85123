import logging

from .errors import SimulatedFailure

logger = logging.getLogger(__name__)


def fulfil_order(order):
    """The business effect. Placeholder for the real work on an order."""
    logger.debug("Fulfilling order %s (%s x %s)", order.order_id, order.quantity, order.product_id)


def make_effect(failure_quantity=None):
    """Return the effect, optionally failing for orders of one quantity."""
    if failure_quantity is None:
        return fulfil_order

    def fulfil_or_fail(order):
        if order.quantity == failure_quantity:
            raise SimulatedFailure(f"Simulated failure for quantity {failure_quantity}")
        fulfil_order(order)

    return fulfil_or_fail
