"""Order notification events.

The engine emits these events and never waits for their delivery. The
default publisher writes them to the ``orders.events`` logger as structured
JSON records, where a log shipper or a notification worker can pick them
up. Email delivery itself lives outside this project.
"""

import logging
from dataclasses import asdict, dataclass
from decimal import Decimal

logger = logging.getLogger("orders.events")


@dataclass(frozen=True)
class OrderCreated:
    order_id: str
    buyer_id: str
    total: Decimal


@dataclass(frozen=True)
class OrderCancelled:
    order_id: str
    reason: str


@dataclass(frozen=True)
class OrderStatusChanged:
    order_id: str
    status: str


class LoggingEventPublisher:
    """Publish events as INFO log records named after the event class."""

    def publish(self, event) -> None:
        payload = {k: str(v) for k, v in asdict(event).items()}
        logger.info(type(event).__name__, extra={"event": type(event).__name__, **payload})


def publish_quietly(publisher, event) -> None:
    """Hand ``event`` to ``publisher`` without letting failures escape.

    Notifications are fire-and-forget: a broken sink is logged and the
    order operation that triggered the event still succeeds.
    """
    try:
        publisher.publish(event)
    except Exception:
        logger.exception("event publish failed", extra={"event": type(event).__name__})
