from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from storefront_orders.queue import replay_dlq_to_main
from storefront_orders.redis_client import get_redis
from storefront_orders.routes.orders import AdminDep

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/notifications/dlq/replay")
async def dlq_replay(request: Request, _admin: AdminDep, limit: int = Query(default=100, ge=1, le=1000)) -> JSONResponse:
    """
    Replay notifications from the Redis DLQ to the main queue.
    Each DLQ message is re-queued with its attempt count reset.
    Returns number of messages replayed.
    """
    r = request.app.state.redis
    if r is None:
        r = await get_redis(request.app.state.settings.redis_url)
    replayed = await replay_dlq_to_main(limit=limit, r=r)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )


@router.post("/sweep")
async def run_sweep(request: Request, _admin: AdminDep) -> JSONResponse:
    """Run one auto-cancel / refund sweep now instead of waiting for the next tick."""
    result = await request.app.state.sweeper.run_once()
    return JSONResponse(status_code=200, content={"status": "ok", **result})
