class MalformedDeliveryError(ValueError):
    """The delivery body is not JSON or carries no order identifier."""


class TransientInfrastructureError(RuntimeError):
    """The store could not be reached outside the business-effect window."""


class SimulatedFailure(RuntimeError):
    """Raised by the fault-injecting effect."""
