"""
Notification intents and the fire-and-forget dispatcher.

The lifecycle engine decides *what* to tell the customer; the dispatcher hands
the intent to a publisher (the Redis queue in production) on a background task.
A failed publish is logged and counted, never raised to the transition caller.
Rendering happens in the worker, right before the email goes out.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from html import escape
from typing import Awaitable, Callable

from pydantic import BaseModel, Field

from storefront_orders.metrics import notifications_failed_total, notifications_published_total
from storefront_orders.models import Order

logger = logging.getLogger(__name__)


class NotificationTemplate(str, Enum):
    ORDER_PAID = "order_paid"
    ORDER_STATUS = "order_status"
    RETURN_REQUESTED = "return_requested"
    RETURN_APPROVED = "return_approved"
    RETURN_REJECTED = "return_rejected"
    REFUND_CREDITED = "refund_credited"


class Recipient(BaseModel):
    name: str = ""
    email: str


class NotificationIntent(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    template: NotificationTemplate
    order_id: str
    recipient: Recipient
    status: str | None = None
    order: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


Publisher = Callable[[NotificationIntent], Awaitable[None]]


def recipient_for(order: Order) -> Recipient | None:
    if not order.user.email:
        return None
    return Recipient(name=order.user.name, email=order.user.email)


class NotificationDispatcher:
    """Schedules publication of intents without blocking the caller."""

    def __init__(self, publisher: Publisher | None, enabled: bool = True):
        self.publisher = publisher
        self.enabled = enabled and publisher is not None
        self._tasks: set[asyncio.Task] = set()

    def send(self, template: NotificationTemplate, order: Order, recipient: Recipient, status: str | None = None) -> None:
        self.dispatch(NotificationIntent(
            template=template,
            order_id=order.id,
            recipient=recipient,
            status=status,
            order=order.to_document(),
        ))

    def dispatch(self, intent: NotificationIntent) -> None:
        if not self.enabled:
            logger.info("Notifications disabled, dropping %s for order_id=%s", intent.template.value, intent.order_id)
            return
        t = asyncio.create_task(self._publish(intent))
        self._tasks.add(t)
        t.add_done_callback(self._tasks.discard)

    async def _publish(self, intent: NotificationIntent) -> None:
        try:
            await self.publisher(intent)
        except Exception as e:
            notifications_failed_total.labels(stage="publish").inc()
            logger.exception("Failed to publish %s for order_id=%s: %s", intent.template.value, intent.order_id, e)
            return
        notifications_published_total.labels(template=intent.template.value).inc()
        logger.info("Published %s for order_id=%s", intent.template.value, intent.order_id)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight publications (shutdown, tests)."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


# Email rendering (used by the worker)

SUBJECTS: dict[NotificationTemplate, str] = {
    NotificationTemplate.ORDER_PAID: "New order {order_id}",
    NotificationTemplate.ORDER_STATUS: "Order Status Update",
    NotificationTemplate.RETURN_REQUESTED: "Return Request for Order {order_id}",
    NotificationTemplate.RETURN_APPROVED: "Your Return Request Has Been Approved",
    NotificationTemplate.RETURN_REJECTED: "Your Return Request Has Been Rejected",
    NotificationTemplate.REFUND_CREDITED: "Refund Credited",
}

HEADLINES: dict[NotificationTemplate, str] = {
    NotificationTemplate.ORDER_PAID: "Thanks for shopping with us. We have finished processing your order.",
    NotificationTemplate.RETURN_REQUESTED: "We received your return request and will review it shortly.",
    NotificationTemplate.RETURN_APPROVED: "Your return has been approved. Your refund will be credited soon.",
    NotificationTemplate.RETURN_REJECTED: "Unfortunately your return request was rejected.",
    NotificationTemplate.REFUND_CREDITED: "Your refund has been credited to your original payment method.",
}


def _items_table(order: dict) -> str:
    rows = "".join(
        f"<tr><td>{escape(str(item.get('name', '')))}</td>"
        f"<td align=\"center\">{item.get('quantity', 0)}</td>"
        f"<td align=\"right\">{float(item.get('price', 0)):.2f}</td></tr>"
        for item in order.get("orderItems", [])
    )
    return (
        "<table width=\"100%\"><thead><tr><td><strong>Product</strong></td>"
        "<td><strong>Quantity</strong></td><td align=\"right\"><strong>Price</strong></td></tr></thead>"
        f"<tbody>{rows}</tbody>"
        f"<tfoot><tr><td colspan=\"2\">Total Price:</td>"
        f"<td align=\"right\"><strong>{float(order.get('totalPrice', 0)):.2f}</strong></td></tr></tfoot></table>"
    )


def render_email(intent: NotificationIntent) -> tuple[str, str, str]:
    """Returns (subject, html, text) for an intent."""
    subject = SUBJECTS[intent.template].format(order_id=intent.order_id)
    if intent.template == NotificationTemplate.ORDER_STATUS:
        headline = f"Your order is now {intent.status}!"
    else:
        headline = HEADLINES[intent.template]
    if intent.template == NotificationTemplate.RETURN_REQUESTED and intent.order.get("returnReason"):
        headline += f" Reason: {intent.order['returnReason']}"

    html = (
        f"<h1>{escape(subject)}</h1>"
        f"<p>Hi {escape(intent.recipient.name)},</p>"
        f"<p>{escape(headline)}</p>"
        f"<h2>[Order {escape(intent.order_id)}]</h2>"
        f"{_items_table(intent.order)}"
        "<hr/><p>Thanks for shopping with us.</p>"
    )
    text = f"{subject}\n\nHi {intent.recipient.name},\n\n{headline}\n\nOrder {intent.order_id}\n"
    return subject, html, text
