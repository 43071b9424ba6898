"""
Background sweeper: on a fixed interval, cancel unpaid orders past the payment
deadline and credit refunds whose grace period has elapsed. Both go through
the lifecycle engine as the system actor, so a concurrent payment or admin
action is resolved by the same guards. One failing order never stops a sweep.
"""
import asyncio
import logging
from datetime import datetime

from storefront_orders.lifecycle import LifecycleEngine
from storefront_orders.metrics import refunds_auto_credited_total, sweep_failures_total
from storefront_orders.models import SYSTEM_ACTOR
from storefront_orders.order_state import LifecyclePolicy, Transition, TransitionDenied
from storefront_orders.store import ConflictError, OrderNotFoundError, OrderStore

logger = logging.getLogger(__name__)

GRACEFUL_SHUTDOWN_WAIT_SEC = 30


class OrderSweeper:
    def __init__(
        self,
        engine: LifecycleEngine,
        store: OrderStore,
        policy: LifecyclePolicy,
        interval_seconds: float = 30,
        auto_credit_refunds: bool = True,
    ):
        self.engine = engine
        self.store = store
        self.policy = policy
        self.interval_seconds = interval_seconds
        self.auto_credit_refunds = auto_credit_refunds
        self._shutdown = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def sweep_unpaid(self, now: datetime | None = None) -> int:
        """Cancel every unpaid order created at or before now - timeout. Returns count cancelled."""
        now = now or self.engine.clock()
        cutoff = now - self.policy.unpaid_order_timeout
        candidates = await self.store.find_unpaid_created_before(cutoff)
        cancelled = 0
        for order in candidates:
            if await self._apply(order.id, Transition.cancel_system(), "unpaid", now):
                cancelled += 1
                logger.info("Auto-cancelled unpaid order_id=%s created_at=%s", order.id, order.created_at.isoformat())
        if candidates:
            logger.info("Unpaid sweep: %d candidate(s), %d cancelled", len(candidates), cancelled)
        return cancelled

    async def sweep_refunds(self, now: datetime | None = None) -> int:
        """Credit every approved refund whose grace period ended. Returns count credited."""
        now = now or self.engine.clock()
        cutoff = now - self.policy.refund_grace
        candidates = await self.store.find_refunds_due(cutoff)
        credited = 0
        for order in candidates:
            if await self._apply(order.id, Transition.mark_refund_credited(), "refunds", now):
                credited += 1
                refunds_auto_credited_total.inc()
                logger.info("Auto-credited refund for order_id=%s", order.id)
        if candidates:
            logger.info("Refund sweep: %d candidate(s), %d credited", len(candidates), credited)
        return credited

    async def _apply(self, order_id: str, transition: Transition, sweep: str, now: datetime) -> bool:
        try:
            await self.engine.apply_transition(order_id, transition, SYSTEM_ACTOR, now=now)
            return True
        except TransitionDenied as e:
            # State moved on since the query (paid, cancelled by admin, ...)
            logger.info("Skipped order_id=%s in %s sweep: %s", order_id, sweep, e.reason.value)
        except OrderNotFoundError:
            logger.info("Skipped order_id=%s in %s sweep: deleted", order_id, sweep)
        except ConflictError:
            sweep_failures_total.labels(sweep=sweep).inc()
            logger.warning("Gave up on order_id=%s in %s sweep: persistent write conflict", order_id, sweep)
        except Exception as e:
            sweep_failures_total.labels(sweep=sweep).inc()
            logger.exception("Failed to sweep order_id=%s (%s): %s", order_id, sweep, e)
        return False

    async def run_once(self, now: datetime | None = None) -> dict:
        cancelled = await self.sweep_unpaid(now)
        credited = await self.sweep_refunds(now) if self.auto_credit_refunds else 0
        return {"cancelled": cancelled, "refundsCredited": credited}

    async def run(self) -> None:
        logger.info(
            "Sweeper started (interval=%ss, unpaid_timeout=%ss, auto_credit_refunds=%s)",
            self.interval_seconds,
            int(self.policy.unpaid_order_timeout.total_seconds()),
            self.auto_credit_refunds,
        )
        while not self._shutdown.is_set():
            try:
                await self.run_once()
            except Exception as e:
                # Store unreachable etc.; try again next tick
                logger.exception("Sweep failed: %s", e)
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Sweeper stopped.")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._shutdown.clear()
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._shutdown.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._task, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC)
        except asyncio.TimeoutError:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
