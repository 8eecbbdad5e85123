import enum
import logging
from contextlib import contextmanager

from sqlalchemy import insert, select, text, update
from sqlalchemy.exc import IntegrityError

from .database import Base, create_session_factory
from .models import OPEN_STATUSES, Order, OrderStatus, ProcessedMessage

logger = logging.getLogger(__name__)


class CommitResult(str, enum.Enum):
    COMMITTED = "committed"
    ALREADY_PROCESSED = "already_processed"
    NOT_OPEN = "not_open"


class _OrderNotOpen(Exception):
    """Rolls back a success commit whose status guard matched no row."""


class OrderStore:
    """
    Durable store primitives used by the consumer.

    Every write is a single-row conditional UPDATE or a uniqueness-constrained
    INSERT, so concurrent deliveries never need a read-modify-write cycle.
    SQLAlchemy errors propagate to the caller.
    """

    def __init__(self, engine):
        self.engine = engine
        self._session_factory = create_session_factory(engine)

    @contextmanager
    def session(self):
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def create_schema(self):
        """Create the orders and ledger tables if they don't exist."""
        Base.metadata.create_all(bind=self.engine)

    def ping(self):
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def get_order(self, order_id):
        with self.session() as db:
            return db.get(Order, order_id)

    def is_processed(self, order_id):
        with self.session() as db:
            found = db.execute(
                select(ProcessedMessage.id).where(ProcessedMessage.id == order_id)
            ).first()
            return found is not None

    def mark_processing(self, order_id):
        """PENDING/PROCESSING -> PROCESSING. False if the order is terminal or missing."""
        return self._set_status(order_id, OrderStatus.PROCESSING)

    def mark_failed(self, order_id):
        """PENDING/PROCESSING -> FAILED. False if the order is terminal or missing."""
        return self._set_status(order_id, OrderStatus.FAILED)

    def complete(self, order_id):
        """
        Commit a successful effect: ledger insert and COMPLETED status in one
        transaction.

        Returns CommitResult.ALREADY_PROCESSED when the ledger already holds
        the id (another delivery won the race), and CommitResult.NOT_OPEN when
        the order left PENDING/PROCESSING first; nothing is written then.
        """
        try:
            with self.session() as db:
                db.execute(insert(ProcessedMessage).values(id=order_id))
                result = db.execute(
                    update(Order)
                    .where(Order.order_id == order_id, Order.status.in_(OPEN_STATUSES))
                    .values(status=OrderStatus.COMPLETED.value)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise _OrderNotOpen(order_id)
        except IntegrityError:
            logger.info("Ledger already holds order %s", order_id)
            return CommitResult.ALREADY_PROCESSED
        except _OrderNotOpen:
            logger.info("Order %s is no longer open, ledger entry discarded", order_id)
            return CommitResult.NOT_OPEN
        return CommitResult.COMMITTED

    def increment_retry(self, order_id, max_retries):
        """
        Atomically bump retry_count while it is still below max_retries.

        Returns False if the counter had already reached the limit (or the
        order is gone), in which case the caller must re-read and give up.
        """
        with self.session() as db:
            result = db.execute(
                update(Order)
                .where(Order.order_id == order_id, Order.retry_count < max_retries)
                .values(retry_count=Order.retry_count + 1)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def _set_status(self, order_id, status):
        with self.session() as db:
            result = db.execute(
                update(Order)
                .where(Order.order_id == order_id, Order.status.in_(OPEN_STATUSES))
                .values(status=status.value)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1
