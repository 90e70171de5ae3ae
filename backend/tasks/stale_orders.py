"""
Stale Order Sweep - The Safety Net
==================================
Background task that finds orders stuck in PROCESSING (paid, never delivered)
and pushes them forward.

Per stale order:
- Try to finalize (leads may have landed without anyone calling finalize)
- Still no leads -> count the attempt and re-enqueue lead acquisition
- Attempts exhausted -> mark FAILED and log for manual follow-up

Features:
- Interval, threshold, batch size and attempt ceiling come from Settings
- One bad order never stops the cycle
"""

import asyncio
from datetime import timedelta
from typing import Optional

import structlog
from pydantic import BaseModel

from pipeline.agents.delivery_finalizer import DeliveryFinalizer
from pipeline.agents.lead_acquisition import LeadAcquisitionTrigger
from pipeline.stores import IOrderStore
from schemas.orders import Order, OrderStatus, utcnow

logger = structlog.get_logger().bind(component="stale_sweep")


class SweepReport(BaseModel):
    """Outcome counts for one sweep cycle"""
    examined: int = 0
    finalized: int = 0
    retriggered: int = 0
    failed: int = 0
    errors: int = 0


class StaleOrderSweeper:
    """
    Usage:
        sweeper = StaleOrderSweeper(orders, finalizer, acquisition)
        report = await sweeper.sweep_once()
    """

    def __init__(
        self,
        order_store: IOrderStore,
        finalizer: DeliveryFinalizer,
        acquisition: LeadAcquisitionTrigger,
        threshold_minutes: int = 60,
        batch_size: int = 10,
        max_attempts: int = 3,
    ):
        self.orders = order_store
        self.finalizer = finalizer
        self.acquisition = acquisition
        self.threshold = timedelta(minutes=threshold_minutes)
        self.batch_size = batch_size
        self.max_attempts = max_attempts

    async def sweep_once(self) -> SweepReport:
        report = SweepReport()
        stale = await self.orders.find_stale(utcnow() - self.threshold, limit=self.batch_size)
        if not stale:
            return report

        logger.warning("stale_orders_found", count=len(stale))

        for order in stale:
            report.examined += 1
            try:
                await self._process(order, report)
            except Exception as e:
                report.errors += 1
                logger.error("stale_order_processing_failed", order_id=order.id, error=str(e), exc_info=True)

        logger.info("stale_sweep_complete", **report.model_dump())
        return report

    async def _process(self, order: Order, report: SweepReport) -> None:
        result = await self.finalizer.finalize(order.id)
        if result.outcome != "awaiting_leads":
            report.finalized += 1
            logger.info("stale_order_finalized", order_id=order.id, outcome=result.outcome)
            return

        attempts = order.finalize_attempts + 1
        if attempts >= self.max_attempts:
            await self.orders.update(
                order.id,
                finalize_attempts=attempts,
                status=OrderStatus.FAILED,
            )
            report.failed += 1
            logger.critical(
                "stale_order_failed_manual_intervention",
                order_id=order.id,
                attempts=attempts,
                customer_email=order.customer_email,
            )
            return

        await self.orders.update(order.id, finalize_attempts=attempts)
        retriggered = await self.acquisition.trigger(order)
        if retriggered:
            report.retriggered += 1
        logger.warning("stale_order_retriggered", order_id=order.id, attempt=attempts, enqueued=retriggered)


async def stale_order_loop(
    sweeper: StaleOrderSweeper,
    interval_seconds: int = 300,
    enabled: bool = True,
    max_cycles: Optional[int] = None,
):
    """Run sweep_once every `interval_seconds` until cancelled."""
    logger.info("stale_sweep_started", interval=interval_seconds, enabled=enabled)

    if not enabled:
        logger.info("stale_sweep_disabled_via_config")
        return

    cycles = 0
    while max_cycles is None or cycles < max_cycles:
        try:
            await sweeper.sweep_once()
        except Exception as e:
            logger.error("stale_sweep_error", error=str(e), exc_info=True)

        cycles += 1
        await asyncio.sleep(interval_seconds)
