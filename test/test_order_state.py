"""Guard table: which transitions are legal from which order state, and why not."""
from datetime import timedelta

import pytest

from conftest import ADMIN, CUSTOMER, OTHER_CUSTOMER, T0, make_order
from storefront_orders.models import SYSTEM_ACTOR, ReturnStatus
from storefront_orders.order_state import (
    DenialReason,
    FulfillmentFlag,
    LifecyclePolicy,
    Transition,
    TransitionDenied,
    check_transition,
    fulfillment_stage,
    is_auto_cancel_eligible,
    refund_eligible_at,
    return_phase,
)

POLICY = LifecyclePolicy(unpaid_order_timeout=timedelta(minutes=15), refund_grace=timedelta(days=3))
LATER = T0 + timedelta(hours=1)

PAID = {"is_paid": True, "paid_at": T0}
DELIVERED = {
    **PAID,
    "is_packing": True,
    "is_dispatched": True,
    "out_for_delivery": True,
    "is_delivered": True,
    "delivered_at": T0,
}


def check(order, transition, actor, now=LATER, policy=POLICY):
    return check_transition(order, transition, actor, now, policy)


class TestActors:
    @pytest.mark.parametrize("transition,actor", [
        (Transition.cancel_admin(), CUSTOMER),
        (Transition.cancel_system(), ADMIN),
        (Transition.set_fulfillment_flag(FulfillmentFlag.IS_PACKING), CUSTOMER),
        (Transition.request_return("too small"), ADMIN),
        (Transition.set_return_status(ReturnStatus.APPROVED), CUSTOMER),
        (Transition.mark_refund_credited(), CUSTOMER),
        (Transition.pay(), ADMIN),
    ])
    def test_wrong_role_is_not_permitted(self, transition, actor):
        assert check(make_order(), transition, actor) == DenialReason.ACTOR_NOT_PERMITTED

    def test_customer_must_own_the_order(self):
        assert check(make_order(), Transition.pay(), OTHER_CUSTOMER) == DenialReason.NOT_ORDER_OWNER

    def test_actor_checked_before_state(self):
        order = make_order(**PAID)
        assert check(order, Transition.pay(), OTHER_CUSTOMER) == DenialReason.NOT_ORDER_OWNER

    def test_system_may_pay(self):
        assert check(make_order(), Transition.pay(), SYSTEM_ACTOR) is None


class TestPay:
    def test_unpaid_order_can_be_paid(self):
        assert check(make_order(), Transition.pay(), CUSTOMER) is None

    def test_already_paid(self):
        assert check(make_order(**PAID), Transition.pay(), CUSTOMER) == DenialReason.ALREADY_PAID

    def test_cancelled(self):
        order = make_order(is_cancelled=True, cancelled_by="system", cancelled_at=T0)
        assert check(order, Transition.pay(), CUSTOMER) == DenialReason.ORDER_CANCELLED


class TestCancel:
    def test_admin_cancels_unpaid(self):
        assert check(make_order(), Transition.cancel_admin(), ADMIN) is None

    def test_admin_cannot_cancel_paid(self):
        assert check(make_order(**PAID), Transition.cancel_admin(), ADMIN) == DenialReason.CANNOT_CANCEL_PAID_ORDER

    def test_admin_cannot_cancel_delivered(self):
        assert check(make_order(**DELIVERED), Transition.cancel_admin(), ADMIN) == DenialReason.ALREADY_DELIVERED

    def test_cancel_twice(self):
        order = make_order(is_cancelled=True, cancelled_by="admin", cancelled_at=T0)
        assert check(order, Transition.cancel_admin(), ADMIN) == DenialReason.ALREADY_CANCELLED
        assert check(order, Transition.cancel_system(), SYSTEM_ACTOR) == DenialReason.ALREADY_CANCELLED

    def test_system_cannot_cancel_paid(self):
        order = make_order(**PAID)
        assert check(order, Transition.cancel_system(), SYSTEM_ACTOR) == DenialReason.CANNOT_CANCEL_PAID_ORDER

    def test_system_cancel_waits_for_timeout(self):
        order = make_order()
        just_before = T0 + timedelta(minutes=15) - timedelta(seconds=1)
        at_deadline = T0 + timedelta(minutes=15)
        assert check(order, Transition.cancel_system(), SYSTEM_ACTOR, now=just_before) == DenialReason.NOT_ELIGIBLE
        assert check(order, Transition.cancel_system(), SYSTEM_ACTOR, now=at_deadline) is None

    def test_auto_cancel_eligibility(self):
        assert not is_auto_cancel_eligible(make_order(), T0 + timedelta(minutes=5), POLICY)
        assert is_auto_cancel_eligible(make_order(), T0 + timedelta(minutes=20), POLICY)
        assert not is_auto_cancel_eligible(make_order(**PAID), T0 + timedelta(days=1), POLICY)


class TestFulfillment:
    def test_requires_payment(self):
        t = Transition.set_fulfillment_flag(FulfillmentFlag.IS_PACKING)
        assert check(make_order(), t, ADMIN) == DenialReason.ORDER_NOT_PAYABLE

    def test_cancelled_order(self):
        order = make_order(is_cancelled=True, cancelled_by="system", cancelled_at=T0)
        t = Transition.set_fulfillment_flag(FulfillmentFlag.IS_PACKING)
        assert check(order, t, ADMIN) == DenialReason.ORDER_CANCELLED

    def test_stages_in_order(self):
        order = make_order(**PAID)
        assert check(order, Transition.set_fulfillment_flag(FulfillmentFlag.IS_PACKING), ADMIN) is None
        assert (
            check(order, Transition.set_fulfillment_flag(FulfillmentFlag.IS_DELIVERED), ADMIN)
            == DenialReason.FULFILLMENT_OUT_OF_ORDER
        )

    def test_flag_already_set(self):
        order = make_order(**PAID, is_packing=True, packed_at=T0)
        t = Transition.set_fulfillment_flag(FulfillmentFlag.IS_PACKING)
        assert check(order, t, ADMIN) == DenialReason.FLAG_ALREADY_SET

    @pytest.mark.parametrize("flag", [FulfillmentFlag.IS_DISPATCHED, FulfillmentFlag.IS_PACKING, FulfillmentFlag.IS_DELIVERED])
    def test_flags_cannot_be_unset(self, flag):
        order = make_order(**PAID, is_packing=True, packed_at=T0, is_dispatched=True, dispatched_at=T0)
        assert fulfillment_stage(order) == 1
        t = Transition.set_fulfillment_flag(flag, False)
        assert check(order, t, ADMIN) == DenialReason.FLAG_IS_MONOTONIC

    def test_delivered_is_final(self):
        order = make_order(**DELIVERED)
        t = Transition.set_fulfillment_flag(FulfillmentFlag.IS_DELIVERED, False)
        assert check(order, t, ADMIN) == DenialReason.ALREADY_DELIVERED


class TestReturns:
    def test_not_delivered(self):
        order = make_order(**PAID)
        assert check(order, Transition.request_return("broken"), CUSTOMER) == DenialReason.NOT_DELIVERED

    def test_delivered_order_can_be_returned(self):
        assert check(make_order(**DELIVERED), Transition.request_return("broken"), CUSTOMER) is None

    def test_already_requested(self):
        order = make_order(**DELIVERED, return_requested=True, return_status=ReturnStatus.PENDING)
        assert check(order, Transition.request_return("again"), CUSTOMER) == DenialReason.ALREADY_REQUESTED

    def test_return_window(self):
        policy = LifecyclePolicy(return_window=timedelta(days=7))
        order = make_order(**DELIVERED)
        t = Transition.request_return("late")
        assert check(order, t, CUSTOMER, now=T0 + timedelta(days=6), policy=policy) is None
        assert (
            check(order, t, CUSTOMER, now=T0 + timedelta(days=8), policy=policy)
            == DenialReason.RETURN_WINDOW_EXPIRED
        )

    def test_decide_without_request(self):
        t = Transition.set_return_status(ReturnStatus.APPROVED)
        assert check(make_order(**DELIVERED), t, ADMIN) == DenialReason.NO_RETURN_REQUEST

    def test_decision_is_final(self):
        order = make_order(**DELIVERED, return_requested=True, return_status=ReturnStatus.REJECTED)
        t = Transition.set_return_status(ReturnStatus.APPROVED)
        assert check(order, t, ADMIN) == DenialReason.RETURN_ALREADY_DECIDED

    def test_pending_is_not_a_decision(self):
        with pytest.raises(ValueError):
            Transition.set_return_status(ReturnStatus.PENDING)


class TestRefunds:
    approved = {
        **DELIVERED,
        "return_requested": True,
        "return_status": ReturnStatus.APPROVED,
        "returned_at": T0,
    }

    def test_not_approved(self):
        order = make_order(**DELIVERED, return_requested=True, return_status=ReturnStatus.PENDING)
        assert check(order, Transition.mark_refund_credited(), ADMIN) == DenialReason.NOT_APPROVED

    def test_already_credited(self):
        order = make_order(**self.approved, refund_credited=True)
        assert check(order, Transition.mark_refund_credited(), ADMIN) == DenialReason.ALREADY_CREDITED

    def test_admin_credits_any_time(self):
        assert check(make_order(**self.approved), Transition.mark_refund_credited(), ADMIN) is None

    def test_system_waits_for_grace(self):
        order = make_order(**self.approved)
        t = Transition.mark_refund_credited()
        assert check(order, t, SYSTEM_ACTOR, now=T0 + timedelta(days=2)) == DenialReason.REFUND_NOT_DUE
        assert check(order, t, SYSTEM_ACTOR, now=T0 + timedelta(days=3)) is None
        assert refund_eligible_at(order, POLICY) == T0 + timedelta(days=3)

    def test_return_phase(self):
        assert return_phase(make_order(**DELIVERED)) == "NoReturn"
        assert return_phase(make_order(**DELIVERED, return_requested=True)) == "Requested"
        assert return_phase(make_order(**self.approved)) == "RefundPending"
        assert return_phase(make_order(**self.approved, refund_credited=True)) == "RefundCredited"
        rejected = {**self.approved, "return_status": ReturnStatus.REJECTED}
        assert return_phase(make_order(**rejected)) == "Rejected"
        assert refund_eligible_at(make_order(**rejected), POLICY) is None


def test_denial_carries_message():
    exc = TransitionDenied(DenialReason.CANNOT_CANCEL_PAID_ORDER)
    assert exc.message == "Cannot cancel a paid order"
    assert str(exc) == "Cannot cancel a paid order"
