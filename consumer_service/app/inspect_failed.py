"""Operator tool: look at orders parked in the failed queue without removing them."""

import json
from typing import Optional

import pika
import typer

from .config import get_settings
from .topology import Topology

app = typer.Typer(help="Inspect the order failed queue")


def peek_failed(channel, queue, limit):
    """
    Read up to `limit` messages from `queue` and put them all back.

    Returns a list of (headers, body) tuples in queue order.
    """
    messages = []
    for _ in range(limit):
        method, properties, body = channel.basic_get(queue=queue, auto_ack=False)
        if method is None:
            break
        messages.append((dict(properties.headers or {}), body))

    if messages:
        # delivery_tag=0 with multiple=True covers every unacked get on the channel
        channel.basic_nack(delivery_tag=0, multiple=True, requeue=True)
    return messages


def _describe(body):
    try:
        return json.dumps(json.loads(body), sort_keys=True)
    except ValueError:
        return repr(body)


@app.command()
def peek(
    limit: int = typer.Option(10, min=1, help="Maximum number of messages to show"),
    rabbitmq_url: Optional[str] = typer.Option(None, help="Broker URL (defaults to RABBITMQ_URL)"),
):
    """Print messages from the failed queue and leave them in place."""
    url = rabbitmq_url or get_settings().rabbitmq_url
    queue = Topology().failed_queue

    connection = pika.BlockingConnection(pika.URLParameters(url))
    try:
        channel = connection.channel()
        messages = peek_failed(channel, queue, limit)
    finally:
        connection.close()

    if not messages:
        typer.echo(f"{queue} is empty")
        return

    for headers, body in messages:
        reason = headers.get("x-failure-reason", "unknown")
        retries = headers.get("x-retry-count", "-")
        typer.echo(f"[{reason}] retries={retries} {_describe(body)}")


if __name__ == "__main__":
    app()
