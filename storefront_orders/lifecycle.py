"""
Lifecycle engine: load -> guard -> mutate -> conditional save -> notify.

Every caller (HTTP handlers, the sweeper, the lazy check on fetch) goes
through apply_transition(), so one rule set protects all of them. Saves are
conditional on the loaded version; on a conflict the whole cycle reruns
against fresh state, so the loser of a race fails with the precise denial
instead of overwriting the winner.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable

from storefront_orders.metrics import (
    order_transition_conflicts_total,
    order_transitions_denied_total,
    order_transitions_total,
    orders_auto_cancelled_total,
)
from storefront_orders.models import (
    SYSTEM_ACTOR,
    Actor,
    ActorRole,
    CancelledBy,
    Order,
    OrderDraft,
    ReturnStatus,
    UserRef,
)
from storefront_orders.notifications import (
    NotificationDispatcher,
    NotificationIntent,
    NotificationTemplate,
    recipient_for,
)
from storefront_orders.order_state import (
    FLAG_ATTRIBUTES,
    DenialReason,
    FulfillmentFlag,
    LifecyclePolicy,
    Transition,
    TransitionDenied,
    TransitionKind,
    can_view,
    check_transition,
    is_auto_cancel_eligible,
    refund_eligible_at,
)
from storefront_orders.store import ConflictError, OrderStore

logger = logging.getLogger(__name__)

STATUS_PHRASES: dict[FulfillmentFlag, str] = {
    FulfillmentFlag.IS_PACKING: "being packed",
    FulfillmentFlag.IS_DISPATCHED: "dispatched",
    FulfillmentFlag.OUT_FOR_DELIVERY: "out for delivery",
    FulfillmentFlag.IS_DELIVERED: "delivered",
}

RETURN_TEMPLATES: dict[ReturnStatus, tuple[NotificationTemplate, str]] = {
    ReturnStatus.APPROVED: (NotificationTemplate.RETURN_APPROVED, "approved"),
    ReturnStatus.REJECTED: (NotificationTemplate.RETURN_REJECTED, "rejected"),
}

DEFAULT_RETURN_REASON = "Not specified"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def apply_change(order: Order, transition: Transition, now: datetime) -> Order:
    """Return a copy of order with the (already permitted) transition applied."""
    kind = transition.kind
    update: dict = {"updated_at": now}

    if kind == TransitionKind.PAY:
        update.update(is_paid=True, paid_at=now, payment_result=transition.payment_result)
    elif kind in (TransitionKind.CANCEL_ADMIN, TransitionKind.CANCEL_SYSTEM):
        cancelled_by = CancelledBy.ADMIN if kind == TransitionKind.CANCEL_ADMIN else CancelledBy.SYSTEM
        update.update(is_cancelled=True, cancelled_by=cancelled_by, cancelled_at=now)
    elif kind == TransitionKind.SET_FULFILLMENT_FLAG:
        # Flags only move forward; the guard refuses value=False
        flag_attr, at_attr = FLAG_ATTRIBUTES[transition.flag]
        update[flag_attr] = True
        update[at_attr] = now
    elif kind == TransitionKind.REQUEST_RETURN:
        update.update(
            return_requested=True,
            return_reason=(transition.reason or "").strip() or DEFAULT_RETURN_REASON,
            return_status=ReturnStatus.PENDING,
            returned_at=now,
        )
    elif kind == TransitionKind.SET_RETURN_STATUS:
        update.update(return_status=transition.return_status, returned_at=now)
    elif kind == TransitionKind.MARK_REFUND_CREDITED:
        update.update(refund_credited=True, refund_credited_at=now)
    else:
        raise ValueError(f"Unknown transition kind: {kind}")

    return order.model_copy(update=update)


def derive_notification(order: Order, transition: Transition) -> NotificationIntent | None:
    """The email (if any) a successful transition should trigger."""
    recipient = recipient_for(order)
    if recipient is None:
        return None

    kind = transition.kind
    template: NotificationTemplate | None = None
    status: str | None = None
    if kind == TransitionKind.PAY:
        template = NotificationTemplate.ORDER_PAID
    elif kind == TransitionKind.SET_FULFILLMENT_FLAG:
        if transition.value is False:
            return None
        template, status = NotificationTemplate.ORDER_STATUS, STATUS_PHRASES[transition.flag]
    elif kind == TransitionKind.REQUEST_RETURN:
        template = NotificationTemplate.RETURN_REQUESTED
    elif kind == TransitionKind.SET_RETURN_STATUS:
        if transition.return_status not in RETURN_TEMPLATES:
            return None
        template, status = RETURN_TEMPLATES[transition.return_status]
    elif kind == TransitionKind.MARK_REFUND_CREDITED:
        template = NotificationTemplate.REFUND_CREDITED

    if template is None:
        return None
    return NotificationIntent(
        template=template,
        order_id=order.id,
        recipient=recipient,
        status=status,
        order=order.to_document(),
    )


class LifecycleEngine:
    def __init__(
        self,
        store: OrderStore,
        dispatcher: NotificationDispatcher,
        policy: LifecyclePolicy,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.policy = policy
        self.max_attempts = max(1, max_attempts)
        self.clock = clock

    async def apply_transition(
        self,
        order_id: str,
        transition: Transition,
        actor: Actor,
        now: datetime | None = None,
    ) -> Order:
        """
        Apply one guarded transition. Raises OrderNotFoundError, TransitionDenied,
        or ConflictError once max_attempts conflicting writes have been seen.
        now pins the time the guards and timestamps use; default is the engine clock.
        """
        kind = transition.kind.value
        for attempt in range(1, self.max_attempts + 1):
            order = await self.store.load(order_id)
            at = now or self.clock()
            reason = check_transition(order, transition, actor, at, self.policy)
            if reason is not None:
                order_transitions_denied_total.labels(kind=kind, reason=reason.value).inc()
                logger.info("Denied %s on order_id=%s by %s: %s", kind, order_id, actor.role.value, reason.value)
                raise TransitionDenied(reason, transition.kind)

            updated = apply_change(order, transition, at)
            try:
                saved = await self.store.save(updated, expected_version=order.version)
            except ConflictError:
                order_transition_conflicts_total.inc()
                logger.warning(
                    "Conflict applying %s to order_id=%s (attempt %d/%d), reloading",
                    kind, order_id, attempt, self.max_attempts,
                )
                continue

            order_transitions_total.labels(kind=kind).inc()
            if transition.kind == TransitionKind.CANCEL_SYSTEM:
                orders_auto_cancelled_total.inc()
            logger.info("Applied %s to order_id=%s by %s (version %d)", kind, order_id, actor.role.value, saved.version)
            self._notify(saved, transition)
            return saved

        logger.error("Giving up on %s for order_id=%s after %d conflicting writes", kind, order_id, self.max_attempts)
        raise ConflictError(order_id)

    def _notify(self, order: Order, transition: Transition) -> None:
        try:
            intent = derive_notification(order, transition)
            if intent is not None:
                self.dispatcher.dispatch(intent)
        except Exception as e:
            # The transition is already committed
            logger.exception("Failed to dispatch notification for order_id=%s: %s", order.id, e)

    async def create_order(self, draft: OrderDraft, actor: Actor) -> Order:
        if actor.role != ActorRole.CUSTOMER or not actor.user_id:
            raise TransitionDenied(DenialReason.ACTOR_NOT_PERMITTED)
        now = self.clock()
        order = Order(
            **draft.model_dump(),
            id=uuid.uuid4().hex,
            user=UserRef(id=actor.user_id, name=actor.name or "", email=actor.email),
            created_at=now,
            updated_at=now,
        )
        created = await self.store.create(order)
        logger.info("Created order_id=%s for user_id=%s total=%.2f", created.id, actor.user_id, created.total_price)
        return created

    async def get_order(self, order_id: str, actor: Actor) -> Order:
        """Owner/admin read. Unpaid orders past the deadline are cancelled on the way out."""
        order = await self.store.load(order_id)
        if not can_view(order, actor):
            raise TransitionDenied(DenialReason.NOT_ORDER_OWNER)
        if not is_auto_cancel_eligible(order, self.clock(), self.policy):
            return order
        try:
            return await self.apply_transition(order_id, Transition.cancel_system(), SYSTEM_ACTOR)
        except TransitionDenied:
            # Lost a race (typically to a payment); return whatever won
            return await self.store.load(order_id)

    async def list_orders(self) -> list[Order]:
        return await self.store.list_all()

    async def list_orders_for_user(self, user_id: str) -> list[Order]:
        return await self.store.list_for_user(user_id)

    async def delete_order(self, order_id: str) -> None:
        await self.store.delete(order_id)
        logger.info("Deleted order_id=%s", order_id)

    async def summary(self) -> dict:
        return await self.store.summary()

    def refund_eligible_at(self, order: Order) -> datetime | None:
        return refund_eligible_at(order, self.policy)
