from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String

from .database import Base  # Import the Base class from our database setup


# Defines the ORM model for an 'Order' stored in the database.
# The consumer service maps the same table; only the consumer changes it after creation.
class Order(Base):
    __tablename__ = "orders"

    order_id = Column(String(64), primary_key=True)  # uuid4, generated here.
    user_id = Column(String(255), nullable=False)
    product_id = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(
        DateTime, nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self):
        return {
            "order_id": self.order_id,
            "user_id": self.user_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "status": self.status,
            "retry_count": self.retry_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
