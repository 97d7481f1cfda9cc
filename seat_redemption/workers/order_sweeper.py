"""
Order sweeper background worker.

Each pass:
- expires ``created``/``pending_payment`` orders past their lifetime
- pulls gateway status for pending orders (when active query is enabled)
- retries fulfillment for paid orders that never completed it
"""
import asyncio
import signal
import time
from typing import Any, Dict

import structlog

from seat_redemption.config import get_settings
from seat_redemption.monitoring.logging import setup_logging
from seat_redemption.monitoring.metrics import metrics
from seat_redemption.services import EngineServices, build_services

logger = structlog.get_logger(__name__)


async def run_sweep(services: EngineServices) -> Dict[str, Any]:
    """
    Run one sweeper pass.

    Returns:
        Dict[str, Any]: Counts of expired, reconciled and re-fulfilled orders
    """
    started = time.time()
    try:
        expired = await services.orders.expire_stale_orders()
        reconciled = await services.reconciler.reconcile_pending()
        fulfilled = await services.orders.retry_unfulfilled()
    except Exception as e:
        logger.error("order_sweep_failed", error=str(e))
        metrics.record_sweeper_run("error", 0, time.time())
        raise

    metrics.record_sweeper_run("success", expired, time.time())
    result = {"expired": expired, "reconciled": reconciled, "fulfilled": fulfilled}
    logger.info("order_sweep_completed", duration_seconds=time.time() - started, **result)
    return result


async def start_order_sweeper(interval_seconds: float = 60.0, services: EngineServices | None = None) -> None:
    """
    Start the order sweeper.

    Args:
        interval_seconds: Seconds between passes
        services: Engine services to sweep with (built from settings when omitted)
    """
    setup_logging(component="sweeper")
    owned = services is None
    services = services or build_services()
    await services.start()

    logger.info("order_sweeper_starting", interval_seconds=interval_seconds)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("order_sweeper_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_sweep(services)
            except Exception as e:
                logger.error("order_sweep_execution_error", error=str(e))
                # Keep sweeping; the next pass re-reads everything

            waited = 0.0
            while waited < interval_seconds and running:
                step = min(interval_seconds - waited, 1.0)
                await asyncio.sleep(step)
                waited += step

    finally:
        if owned:
            await services.close()
        logger.info("order_sweeper_stopped")


def main() -> None:
    import argparse

    settings = get_settings()
    parser = argparse.ArgumentParser(description="Order sweeper worker")
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.sweeper_interval_seconds,
        help="Seconds between sweeper passes",
    )
    args = parser.parse_args()

    asyncio.run(start_order_sweeper(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
