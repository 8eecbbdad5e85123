import logging
import signal

from .config import configure_logging, get_settings
from .effects import make_effect
from .processor import MessageProcessor
from .store import OrderStore
from .supervisor import ConnectionSupervisor
from .topology import Topology, TopologyManager

logger = logging.getLogger(__name__)


def build_consumer(settings, supervisor=None):
    """Wire the supervisor, store, topology and processor together."""
    supervisor = supervisor or ConnectionSupervisor.from_settings(settings)
    store = OrderStore(supervisor.engine)
    topology = Topology(retry_ttl_ms=settings.retry_ttl_ms)

    supervisor.on_store_ready(store.create_schema)
    supervisor.on_connect(TopologyManager(topology).declare)

    processor = MessageProcessor(
        store,
        topology,
        max_retries=settings.max_retries,
        effect=make_effect(settings.simulate_failure_quantity),
        prefetch_count=settings.prefetch_count,
    )
    return supervisor, processor


def main():
    settings = get_settings()
    configure_logging(settings.log_level)
    supervisor, processor = build_consumer(settings)

    def shutdown(signum, frame):
        supervisor.stop()

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)

    logger.info(
        "Starting order consumer (max_retries=%s, retry_ttl=%sms)",
        settings.max_retries,
        settings.retry_ttl_ms,
    )
    supervisor.run(processor.consume)


if __name__ == "__main__":
    main()
