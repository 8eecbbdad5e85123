import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import lru_cache

import pika
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import get_settings
from .database import Base, engine, get_db
from .messaging.producer import RabbitMQProducer
from .models import Order

logger = logging.getLogger(__name__)


@lru_cache
def get_producer():
    """FastAPI dependency: the process-wide event producer."""
    return RabbitMQProducer(get_settings().rabbitmq_url)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables on startup if they don't exist.
    Base.metadata.create_all(bind=engine)
    yield
    get_producer().close()


app = FastAPI(lifespan=lifespan)


class OrderRequest(BaseModel):
    """Defines the data model for an incoming order request."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    product_id: str = Field(alias="productId", min_length=1)
    quantity: int = Field(gt=0)


@app.exception_handler(RequestValidationError)
async def invalid_input(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid input"})


@app.get("/health", response_class=PlainTextResponse)
def health():
    """Health check endpoint."""
    return "OK"


# Persists the order as PENDING, then hands it to the consumer via the broker.
@app.post("/api/orders", status_code=202)
def create_order(
    req: OrderRequest,
    db: Session = Depends(get_db),
    producer: RabbitMQProducer = Depends(get_producer),
):
    order_id = str(uuid.uuid4())
    created_at = datetime.now(timezone.utc)

    # 1. The record must be durable before the event exists.
    try:
        db.add(
            Order(
                order_id=order_id,
                user_id=req.user_id,
                product_id=req.product_id,
                quantity=req.quantity,
                status="PENDING",
                retry_count=0,
                created_at=created_at,
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not persist order %s", order_id)
        return JSONResponse(status_code=500, content={"error": "Internal Server Error"})

    # 2. Publish the submission event.
    event = {
        "orderId": order_id,
        "userId": req.user_id,
        "productId": req.product_id,
        "quantity": req.quantity,
        "status": "PENDING",
        "timestamp": created_at.isoformat(),
    }
    try:
        producer.publish(event)
    except pika.exceptions.AMQPError:
        logger.exception("Could not queue order %s", order_id)
        return JSONResponse(
            status_code=503,
            content={"error": "Order saved but could not be queued", "orderId": order_id},
        )

    return {"message": "Order received for processing", "orderId": order_id}


# Retrieves a single order by its ID.
@app.get("/api/orders/{order_id}")
def get_order(order_id: str, db: Session = Depends(get_db)):
    order = db.get(Order, order_id)
    if not order:
        return JSONResponse(status_code=404, content={"error": "Order not found"})
    return order.to_dict()
