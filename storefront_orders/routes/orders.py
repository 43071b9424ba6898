from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from storefront_orders.lifecycle import LifecycleEngine
from storefront_orders.models import Actor, ActorRole, Order, OrderDraft, PaymentResult, ReturnStatus
from storefront_orders.order_state import (
    DenialReason,
    FulfillmentFlag,
    Transition,
    TransitionDenied,
    return_phase,
)

router = APIRouter(prefix="/api/orders", tags=["orders"])

FulfillmentField = Literal["isPacking", "isDispatched", "outForDelivery", "isDelivered"]


class StatusUpdateBody(BaseModel):
    field: FulfillmentField = Field(..., description="Fulfillment flag to change")
    value: bool = Field(default=True, description="New flag value")


class ReturnRequestBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    return_reason: str | None = Field(default=None, alias="returnReason", max_length=1000)


class ReturnStatusBody(BaseModel):
    field: Literal["returnStatus"] = "returnStatus"
    value: Literal["Approved", "Rejected"]


def get_engine(request: Request) -> LifecycleEngine:
    return request.app.state.engine


def get_actor(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_role: Annotated[str | None, Header()] = None,
    x_user_name: Annotated[str | None, Header()] = None,
    x_user_email: Annotated[str | None, Header()] = None,
) -> Actor:
    """Caller identity as forwarded by the auth gateway."""
    if not x_user_id or x_user_role not in (ActorRole.CUSTOMER.value, ActorRole.ADMIN.value):
        raise HTTPException(status_code=401, detail="Missing or invalid caller identity")
    return Actor(role=ActorRole(x_user_role), user_id=x_user_id, name=x_user_name, email=x_user_email)


def require_admin(actor: Annotated[Actor, Depends(get_actor)]) -> Actor:
    if actor.role != ActorRole.ADMIN:
        raise TransitionDenied(DenialReason.ACTOR_NOT_PERMITTED)
    return actor


EngineDep = Annotated[LifecycleEngine, Depends(get_engine)]
ActorDep = Annotated[Actor, Depends(get_actor)]
AdminDep = Annotated[Actor, Depends(require_admin)]


def serialize(order: Order, engine: LifecycleEngine) -> dict:
    body = order.to_document()
    eligible_at = engine.refund_eligible_at(order)
    body["refundEligibleAt"] = eligible_at.isoformat() if eligible_at else None
    body["returnPhase"] = return_phase(order)
    return body


def _reply(message: str, order: Order, engine: LifecycleEngine, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message, "order": serialize(order, engine)})


@router.post("")
async def create_order(body: OrderDraft, engine: EngineDep, actor: ActorDep) -> JSONResponse:
    order = await engine.create_order(body, actor)
    return _reply("New Order Created", order, engine, status_code=201)


@router.get("")
async def list_orders(engine: EngineDep, _admin: AdminDep) -> list[dict]:
    return [serialize(o, engine) for o in await engine.list_orders()]


@router.get("/summary")
async def orders_summary(engine: EngineDep, _admin: AdminDep) -> dict:
    return await engine.summary()


@router.get("/mine")
async def my_orders(engine: EngineDep, actor: ActorDep) -> list[dict]:
    return [serialize(o, engine) for o in await engine.list_orders_for_user(actor.user_id)]


@router.get("/{order_id}")
async def get_order(order_id: str, engine: EngineDep, actor: ActorDep) -> dict:
    order = await engine.get_order(order_id, actor)
    return serialize(order, engine)


@router.put("/{order_id}/pay")
async def pay_order(
    order_id: str,
    engine: EngineDep,
    actor: ActorDep,
    body: PaymentResult | None = None,
) -> JSONResponse:
    order = await engine.apply_transition(order_id, Transition.pay(body), actor)
    return _reply("Order Paid", order, engine)


@router.put("/{order_id}/cancel")
async def cancel_order(order_id: str, engine: EngineDep, actor: ActorDep) -> JSONResponse:
    order = await engine.apply_transition(order_id, Transition.cancel_admin(), actor)
    return _reply("Order cancelled by admin", order, engine)


@router.put("/{order_id}/status")
@router.put("/{order_id}/statusmessage")
async def update_status(order_id: str, body: StatusUpdateBody, engine: EngineDep, actor: ActorDep) -> JSONResponse:
    transition = Transition.set_fulfillment_flag(FulfillmentFlag(body.field), body.value)
    order = await engine.apply_transition(order_id, transition, actor)
    return _reply("Order status updated successfully", order, engine)


@router.put("/{order_id}/return")
async def request_return(order_id: str, body: ReturnRequestBody, engine: EngineDep, actor: ActorDep) -> JSONResponse:
    order = await engine.apply_transition(order_id, Transition.request_return(body.return_reason), actor)
    return _reply("Return request submitted", order, engine)


@router.put("/{order_id}/returnStatus")
async def set_return_status(order_id: str, body: ReturnStatusBody, engine: EngineDep, actor: ActorDep) -> JSONResponse:
    transition = Transition.set_return_status(ReturnStatus(body.value))
    order = await engine.apply_transition(order_id, transition, actor)
    return _reply(f"Return status updated to {body.value}", order, engine)


@router.put("/{order_id}/refund-credited")
async def refund_credited(order_id: str, engine: EngineDep, actor: ActorDep) -> JSONResponse:
    order = await engine.apply_transition(order_id, Transition.mark_refund_credited(), actor)
    return _reply("Refund credited", order, engine)


@router.delete("/{order_id}")
async def delete_order(order_id: str, engine: EngineDep, _admin: AdminDep) -> dict:
    await engine.delete_order(order_id)
    return {"message": "Order Deleted"}
