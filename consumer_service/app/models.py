import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String

from .database import Base


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Statuses an order may still move forward from.
OPEN_STATUSES = (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value)


def _utcnow():
    return datetime.now(timezone.utc)


class Order(Base):
    """An order record. Created by the ingress, mutated only by the consumer."""

    __tablename__ = "orders"

    order_id = Column(String(64), primary_key=True)
    user_id = Column(String(255), nullable=False)
    product_id = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=_utcnow)


class ProcessedMessage(Base):
    # Idempotency ledger: one row per order whose effect has been committed.
    __tablename__ = "processed_messages"

    id = Column(String(64), primary_key=True)
    processed_at = Column(DateTime, nullable=False, default=_utcnow)
