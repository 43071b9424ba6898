from conftest import CUSTOMER, make_order
from storefront_orders.lifecycle import derive_notification
from storefront_orders.models import UserRef
from storefront_orders.notifications import (
    NotificationDispatcher,
    NotificationIntent,
    NotificationTemplate,
    Recipient,
    recipient_for,
    render_email,
)
from storefront_orders.order_state import FulfillmentFlag, Transition


def intent_for(template, status=None, **order_fields) -> NotificationIntent:
    order = make_order(**order_fields)
    return NotificationIntent(
        template=template,
        order_id=order.id,
        recipient=Recipient(name="Asha Rao", email="asha@example.com"),
        status=status,
        order=order.to_document(),
    )


def test_status_email():
    subject, html, text = render_email(intent_for(NotificationTemplate.ORDER_STATUS, status="dispatched"))
    assert subject == "Order Status Update"
    assert "Your order is now dispatched!" in html
    assert "Running Shoes" in html
    assert "1180.00" in html
    assert text.startswith("Order Status Update")


def test_paid_email_names_the_order():
    subject, _, text = render_email(intent_for(NotificationTemplate.ORDER_PAID))
    assert subject == "New order ord-1"
    assert "Hi Asha Rao" in text


def test_return_request_email_includes_reason():
    intent = intent_for(NotificationTemplate.RETURN_REQUESTED, return_requested=True, return_reason="Too <small>")
    _, html, text = render_email(intent)
    assert "Reason: Too &lt;small&gt;" in html
    assert "Reason: Too <small>" in text


def test_no_email_without_address():
    order = make_order()
    order.user = UserRef(id=CUSTOMER.user_id, name="Asha")
    assert recipient_for(order) is None
    assert derive_notification(order, Transition.pay()) is None


def test_unset_request_sends_nothing():
    order = make_order(is_paid=True, is_packing=True)
    t = Transition.set_fulfillment_flag(FulfillmentFlag.IS_PACKING, False)
    assert derive_notification(order, t) is None


def test_cancellation_sends_nothing():
    assert derive_notification(make_order(), Transition.cancel_system()) is None


async def test_disabled_dispatcher_drops_intents(publisher):
    dispatcher = NotificationDispatcher(publisher, enabled=False)
    dispatcher.dispatch(intent_for(NotificationTemplate.ORDER_PAID))
    assert dispatcher.pending == 0
    await dispatcher.drain()
    assert publisher.intents == []


async def test_publish_failure_is_contained():
    calls = []

    async def failing(intent):
        calls.append(intent.id)
        raise ConnectionError("redis unavailable")

    dispatcher = NotificationDispatcher(failing)
    dispatcher.send(NotificationTemplate.ORDER_PAID, make_order(), Recipient(name="A", email="a@example.com"))
    assert dispatcher.pending == 1
    await dispatcher.drain()
    assert len(calls) == 1
    assert dispatcher.pending == 0
