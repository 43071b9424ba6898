import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from storefront_orders.config import Settings, settings as default_settings
from storefront_orders.lifecycle import LifecycleEngine
from storefront_orders.metrics import get_metrics_bytes, get_metrics_content_type, notification_queue_depth
from storefront_orders.notifications import NotificationDispatcher, Publisher
from storefront_orders.order_state import AUTHORIZATION_REASONS, LifecyclePolicy, TransitionDenied
from storefront_orders.routes import admin, orders
from storefront_orders.store import ConflictError, InMemoryOrderStore, OrderNotFoundError, OrderStore
from storefront_orders.sweeper import OrderSweeper

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings = default_settings,
    store: OrderStore | None = None,
    publisher: Publisher | None = None,
) -> FastAPI:
    """
    Build the API. store/publisher default to what settings select
    (Postgres or in-memory orders, Redis notification queue).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        order_store = store
        if order_store is None and settings.order_store == "postgres":
            from storefront_orders.db import PostgresOrderStore, get_pool, init_schema
            pool = await get_pool(settings.database_url)
            await init_schema(pool)
            order_store = PostgresOrderStore(pool)
        elif order_store is None:
            order_store = InMemoryOrderStore()

        notify = publisher
        redis_conn = None
        if notify is None and settings.notifications_enabled:
            from storefront_orders.queue import redis_publisher
            from storefront_orders.redis_client import get_redis
            redis_conn = await get_redis(settings.redis_url)
            notify = redis_publisher(redis_conn)

        policy = LifecyclePolicy.from_settings(settings)
        dispatcher = NotificationDispatcher(notify, enabled=settings.notifications_enabled)
        engine = LifecycleEngine(order_store, dispatcher, policy, max_attempts=settings.transition_max_attempts)
        sweeper = OrderSweeper(
            engine,
            order_store,
            policy,
            interval_seconds=settings.sweep_interval_seconds,
            auto_credit_refunds=settings.auto_credit_refunds,
        )
        app.state.settings = settings
        app.state.redis = redis_conn
        app.state.store = order_store
        app.state.dispatcher = dispatcher
        app.state.engine = engine
        app.state.sweeper = sweeper
        if settings.sweeper_enabled:
            sweeper.start()
        logger.info("Order service ready (store=%s, sweeper=%s)", type(order_store).__name__, settings.sweeper_enabled)

        yield

        await sweeper.stop()
        await dispatcher.drain(timeout=10)
        if redis_conn is not None:
            from storefront_orders.redis_client import close_redis
            await close_redis()
        if store is None and settings.order_store == "postgres":
            from storefront_orders.db import close_pool
            await close_pool()

    app = FastAPI(title="Storefront Orders", lifespan=lifespan)
    app.include_router(orders.router)
    app.include_router(admin.router)

    @app.exception_handler(OrderNotFoundError)
    async def order_not_found(request: Request, exc: OrderNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"message": "Order Not Found", "reason": "NotFound"})

    @app.exception_handler(TransitionDenied)
    async def transition_denied(request: Request, exc: TransitionDenied) -> JSONResponse:
        status_code = 403 if exc.reason in AUTHORIZATION_REASONS else 400
        return JSONResponse(status_code=status_code, content={"message": exc.message, "reason": exc.reason.value})

    @app.exception_handler(ConflictError)
    async def conflict(request: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"message": "Order was modified concurrently, please retry", "reason": "Conflict"},
        )

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics(request: Request) -> Response:
        """Prometheus scrape endpoint: transition counters, sweeper outcomes, notification queue depth."""
        redis_conn = getattr(request.app.state, "redis", None)
        if redis_conn is not None:
            try:
                from storefront_orders.queue import queue_depth
                waiting, _dead = await queue_depth(redis_conn)
                notification_queue_depth.set(waiting)
            except Exception as e:
                logger.debug("Could not read notification queue depth: %s", e)
        return Response(
            content=get_metrics_bytes(),
            media_type=get_metrics_content_type(),
        )

    return app


logging.basicConfig(
    level=default_settings.log_level,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)

app = create_app()
