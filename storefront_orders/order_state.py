"""
Order lifecycle state machine. Guards decide whether a transition is legal
for the current order snapshot and the acting role. Pure: no I/O.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from storefront_orders.models import Actor, ActorRole, Order, PaymentResult, ReturnStatus


class TransitionKind(str, Enum):
    PAY = "Pay"
    CANCEL_ADMIN = "CancelAdmin"
    CANCEL_SYSTEM = "CancelSystem"
    SET_FULFILLMENT_FLAG = "SetFulfillmentFlag"
    REQUEST_RETURN = "RequestReturn"
    SET_RETURN_STATUS = "SetReturnStatus"
    MARK_REFUND_CREDITED = "MarkRefundCredited"


class FulfillmentFlag(str, Enum):
    IS_PACKING = "isPacking"
    IS_DISPATCHED = "isDispatched"
    OUT_FOR_DELIVERY = "outForDelivery"
    IS_DELIVERED = "isDelivered"


# Stage order; each flag -> (order attribute, timestamp attribute)
FULFILLMENT_STAGES: list[FulfillmentFlag] = [
    FulfillmentFlag.IS_PACKING,
    FulfillmentFlag.IS_DISPATCHED,
    FulfillmentFlag.OUT_FOR_DELIVERY,
    FulfillmentFlag.IS_DELIVERED,
]

FLAG_ATTRIBUTES: dict[FulfillmentFlag, tuple[str, str]] = {
    FulfillmentFlag.IS_PACKING: ("is_packing", "packed_at"),
    FulfillmentFlag.IS_DISPATCHED: ("is_dispatched", "dispatched_at"),
    FulfillmentFlag.OUT_FOR_DELIVERY: ("out_for_delivery", "out_for_delivery_at"),
    FulfillmentFlag.IS_DELIVERED: ("is_delivered", "delivered_at"),
}


class DenialReason(str, Enum):
    ACTOR_NOT_PERMITTED = "ActorNotPermitted"
    NOT_ORDER_OWNER = "NotOrderOwner"
    ALREADY_PAID = "AlreadyPaid"
    ORDER_CANCELLED = "OrderCancelled"
    ALREADY_CANCELLED = "AlreadyCancelled"
    CANNOT_CANCEL_PAID_ORDER = "CannotCancelPaidOrder"
    NOT_ELIGIBLE = "NotEligible"
    ORDER_NOT_PAYABLE = "OrderNotPayable"
    ALREADY_DELIVERED = "AlreadyDelivered"
    FLAG_ALREADY_SET = "FlagAlreadySet"
    FULFILLMENT_OUT_OF_ORDER = "FulfillmentOutOfOrder"
    FLAG_IS_MONOTONIC = "FlagIsMonotonic"
    NOT_DELIVERED = "NotDelivered"
    ALREADY_REQUESTED = "AlreadyRequested"
    RETURN_WINDOW_EXPIRED = "ReturnWindowExpired"
    NO_RETURN_REQUEST = "NoReturnRequest"
    RETURN_ALREADY_DECIDED = "ReturnAlreadyDecided"
    NOT_APPROVED = "NotApproved"
    ALREADY_CREDITED = "AlreadyCredited"
    REFUND_NOT_DUE = "RefundNotDue"


DENIAL_MESSAGES: dict[DenialReason, str] = {
    DenialReason.ACTOR_NOT_PERMITTED: "You are not allowed to perform this action",
    DenialReason.NOT_ORDER_OWNER: "This order belongs to another customer",
    DenialReason.ALREADY_PAID: "Order already paid",
    DenialReason.ORDER_CANCELLED: "Order is cancelled",
    DenialReason.ALREADY_CANCELLED: "Order already cancelled",
    DenialReason.CANNOT_CANCEL_PAID_ORDER: "Cannot cancel a paid order",
    DenialReason.NOT_ELIGIBLE: "Order is not yet eligible for automatic cancellation",
    DenialReason.ORDER_NOT_PAYABLE: "Order has not been paid",
    DenialReason.ALREADY_DELIVERED: "Order already delivered",
    DenialReason.FLAG_ALREADY_SET: "Order status already has this value",
    DenialReason.FULFILLMENT_OUT_OF_ORDER: "Fulfillment steps must be applied in order",
    DenialReason.FLAG_IS_MONOTONIC: "Fulfillment steps cannot be undone",
    DenialReason.NOT_DELIVERED: "Order not yet delivered",
    DenialReason.ALREADY_REQUESTED: "Return already requested",
    DenialReason.RETURN_WINDOW_EXPIRED: "Return window has expired",
    DenialReason.NO_RETURN_REQUEST: "No return was requested for this order",
    DenialReason.RETURN_ALREADY_DECIDED: "Return request has already been decided",
    DenialReason.NOT_APPROVED: "Return has not been approved",
    DenialReason.ALREADY_CREDITED: "Refund already credited",
    DenialReason.REFUND_NOT_DUE: "Refund grace period has not elapsed",
}

AUTHORIZATION_REASONS = frozenset({DenialReason.ACTOR_NOT_PERMITTED, DenialReason.NOT_ORDER_OWNER})


class TransitionDenied(Exception):
    """Raised when a guard rejects a transition. Carries the precise reason."""
    def __init__(self, reason: DenialReason, kind: "TransitionKind | None" = None):
        self.reason = reason
        self.kind = kind
        super().__init__(DENIAL_MESSAGES[reason])

    @property
    def message(self) -> str:
        return DENIAL_MESSAGES[self.reason]


@dataclass(frozen=True)
class LifecyclePolicy:
    unpaid_order_timeout: timedelta = timedelta(minutes=15)
    refund_grace: timedelta = timedelta(days=3)
    return_window: timedelta | None = None

    @classmethod
    def from_settings(cls, s) -> "LifecyclePolicy":
        return cls(
            unpaid_order_timeout=timedelta(seconds=s.unpaid_order_timeout_seconds),
            refund_grace=timedelta(seconds=s.refund_grace_seconds),
            return_window=timedelta(days=s.return_window_days) if s.return_window_days > 0 else None,
        )


@dataclass(frozen=True)
class Transition:
    kind: TransitionKind
    flag: FulfillmentFlag | None = None
    value: bool | None = None
    reason: str | None = None
    return_status: ReturnStatus | None = None
    payment_result: PaymentResult | None = None

    @classmethod
    def pay(cls, payment_result: PaymentResult | None = None) -> "Transition":
        return cls(TransitionKind.PAY, payment_result=payment_result)

    @classmethod
    def cancel_admin(cls) -> "Transition":
        return cls(TransitionKind.CANCEL_ADMIN)

    @classmethod
    def cancel_system(cls) -> "Transition":
        return cls(TransitionKind.CANCEL_SYSTEM)

    @classmethod
    def set_fulfillment_flag(cls, flag: FulfillmentFlag, value: bool = True) -> "Transition":
        return cls(TransitionKind.SET_FULFILLMENT_FLAG, flag=flag, value=value)

    @classmethod
    def request_return(cls, reason: str | None) -> "Transition":
        return cls(TransitionKind.REQUEST_RETURN, reason=reason)

    @classmethod
    def set_return_status(cls, status: ReturnStatus) -> "Transition":
        if status == ReturnStatus.PENDING:
            raise ValueError("Return status can only be set to Approved or Rejected")
        return cls(TransitionKind.SET_RETURN_STATUS, return_status=status)

    @classmethod
    def mark_refund_credited(cls) -> "Transition":
        return cls(TransitionKind.MARK_REFUND_CREDITED)


# Transition kind -> roles allowed to request it
ALLOWED_ACTORS: dict[TransitionKind, frozenset[ActorRole]] = {
    TransitionKind.PAY: frozenset({ActorRole.CUSTOMER, ActorRole.SYSTEM}),
    TransitionKind.CANCEL_ADMIN: frozenset({ActorRole.ADMIN}),
    TransitionKind.CANCEL_SYSTEM: frozenset({ActorRole.SYSTEM}),
    TransitionKind.SET_FULFILLMENT_FLAG: frozenset({ActorRole.ADMIN}),
    TransitionKind.REQUEST_RETURN: frozenset({ActorRole.CUSTOMER}),
    TransitionKind.SET_RETURN_STATUS: frozenset({ActorRole.ADMIN}),
    TransitionKind.MARK_REFUND_CREDITED: frozenset({ActorRole.ADMIN, ActorRole.SYSTEM}),
}


def check_actor(order: Order, transition: Transition, actor: Actor) -> DenialReason | None:
    if actor.role not in ALLOWED_ACTORS[transition.kind]:
        return DenialReason.ACTOR_NOT_PERMITTED
    if actor.role == ActorRole.CUSTOMER and actor.user_id != order.user.id:
        return DenialReason.NOT_ORDER_OWNER
    return None


def can_view(order: Order, actor: Actor) -> bool:
    if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
        return True
    return actor.user_id == order.user.id


def guard_pay(order: Order) -> DenialReason | None:
    if order.is_paid:
        return DenialReason.ALREADY_PAID
    if order.is_cancelled:
        return DenialReason.ORDER_CANCELLED
    return None


def guard_cancel_admin(order: Order) -> DenialReason | None:
    if order.is_cancelled:
        return DenialReason.ALREADY_CANCELLED
    if order.is_delivered:
        return DenialReason.ALREADY_DELIVERED
    if order.is_paid:
        return DenialReason.CANNOT_CANCEL_PAID_ORDER
    return None


def guard_cancel_system(order: Order, now: datetime, policy: LifecyclePolicy) -> DenialReason | None:
    if order.is_cancelled:
        return DenialReason.ALREADY_CANCELLED
    if order.is_paid:
        return DenialReason.CANNOT_CANCEL_PAID_ORDER
    if now - order.created_at < policy.unpaid_order_timeout:
        return DenialReason.NOT_ELIGIBLE
    return None


def is_auto_cancel_eligible(order: Order, now: datetime, policy: LifecyclePolicy) -> bool:
    return guard_cancel_system(order, now, policy) is None


def fulfillment_stage(order: Order) -> int:
    """Index of the most advanced fulfillment flag set, or -1 if none."""
    stage = -1
    for i, flag in enumerate(FULFILLMENT_STAGES):
        if getattr(order, FLAG_ATTRIBUTES[flag][0]):
            stage = i
    return stage


def guard_fulfillment(order: Order, flag: FulfillmentFlag, value: bool) -> DenialReason | None:
    if order.is_cancelled:
        return DenialReason.ORDER_CANCELLED
    if not order.is_paid:
        return DenialReason.ORDER_NOT_PAYABLE
    if order.is_delivered:
        return DenialReason.ALREADY_DELIVERED
    if not value:
        return DenialReason.FLAG_IS_MONOTONIC
    attr, _ = FLAG_ATTRIBUTES[flag]
    if getattr(order, attr):
        return DenialReason.FLAG_ALREADY_SET
    if FULFILLMENT_STAGES.index(flag) != fulfillment_stage(order) + 1:
        return DenialReason.FULFILLMENT_OUT_OF_ORDER
    return None


def guard_request_return(order: Order, now: datetime, policy: LifecyclePolicy) -> DenialReason | None:
    if not order.is_delivered:
        return DenialReason.NOT_DELIVERED
    if order.is_cancelled:
        return DenialReason.ORDER_CANCELLED
    if order.return_requested:
        return DenialReason.ALREADY_REQUESTED
    if (
        policy.return_window is not None
        and order.delivered_at is not None
        and now - order.delivered_at > policy.return_window
    ):
        return DenialReason.RETURN_WINDOW_EXPIRED
    return None


def guard_set_return_status(order: Order) -> DenialReason | None:
    if not order.return_requested:
        return DenialReason.NO_RETURN_REQUEST
    if order.return_status not in (None, ReturnStatus.PENDING):
        return DenialReason.RETURN_ALREADY_DECIDED
    return None


def refund_eligible_at(order: Order, policy: LifecyclePolicy) -> datetime | None:
    if order.return_status != ReturnStatus.APPROVED or order.returned_at is None:
        return None
    return order.returned_at + policy.refund_grace


def guard_refund_credited(
    order: Order,
    actor: Actor,
    now: datetime,
    policy: LifecyclePolicy,
) -> DenialReason | None:
    if order.return_status != ReturnStatus.APPROVED:
        return DenialReason.NOT_APPROVED
    if order.refund_credited:
        return DenialReason.ALREADY_CREDITED
    if actor.role == ActorRole.SYSTEM:
        due = refund_eligible_at(order, policy)
        if due is not None and now < due:
            return DenialReason.REFUND_NOT_DUE
    return None


def check_transition(
    order: Order,
    transition: Transition,
    actor: Actor,
    now: datetime,
    policy: LifecyclePolicy,
) -> DenialReason | None:
    """None if the transition is permitted, otherwise the first violated rule."""
    denied = check_actor(order, transition, actor)
    if denied is not None:
        return denied

    kind = transition.kind
    if kind == TransitionKind.PAY:
        return guard_pay(order)
    if kind == TransitionKind.CANCEL_ADMIN:
        return guard_cancel_admin(order)
    if kind == TransitionKind.CANCEL_SYSTEM:
        return guard_cancel_system(order, now, policy)
    if kind == TransitionKind.SET_FULFILLMENT_FLAG:
        value = True if transition.value is None else transition.value
        return guard_fulfillment(order, transition.flag, value)
    if kind == TransitionKind.REQUEST_RETURN:
        return guard_request_return(order, now, policy)
    if kind == TransitionKind.SET_RETURN_STATUS:
        return guard_set_return_status(order)
    if kind == TransitionKind.MARK_REFUND_CREDITED:
        return guard_refund_credited(order, actor, now, policy)
    raise ValueError(f"Unknown transition kind: {kind}")


def return_phase(order: Order) -> str:
    """NoReturn -> Requested -> Rejected | RefundPending -> RefundCredited."""
    if not order.return_requested:
        return "NoReturn"
    if order.return_status == ReturnStatus.REJECTED:
        return "Rejected"
    if order.return_status == ReturnStatus.APPROVED:
        return "RefundCredited" if order.refund_credited else "RefundPending"
    return "Requested"
