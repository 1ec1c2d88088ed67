"""
Reconciliation background worker.

Runs the daily reconciliation of the previous UTC day at a scheduled hour.
"""
import argparse
import asyncio
import signal
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from checkout_platform.config import get_settings
from checkout_platform.core.reconciliation import ReconciliationEngine
from checkout_platform.database.models import utcnow
from checkout_platform.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_daily_reconciliation(
    engine: Optional[ReconciliationEngine] = None, repair: bool = False
) -> dict[str, Any]:
    """
    Run reconciliation for yesterday's sales.
    """
    logger.info("daily_reconciliation_started", repair=repair)

    engine = engine or ReconciliationEngine()
    result = await engine.reconcile_yesterday(repair=repair)

    logger.info(
        "daily_reconciliation_completed",
        date=result["date"],
        discrepancy_cents=result["discrepancy_cents"],
        discrepancy_count=result["discrepancy_count"],
        total_discrepancies=len(result["discrepancies"]),
    )

    if result["discrepancies"]:
        logger.warning(
            "reconciliation_discrepancies_detected",
            date=result["date"],
            discrepancy_cents=result["discrepancy_cents"],
            discrepancy_count=result["discrepancy_count"],
            kinds=sorted({item["type"] for item in result["discrepancies"]}),
        )

    return result


def seconds_until_next_run(target_hour: int, now: Optional[datetime] = None) -> float:
    """
    Seconds until the next run at target_hour (UTC).

    Args:
        target_hour: Hour of day to run (24-hour format)
        now: Current naive UTC time

    Returns:
        float: Seconds until next run
    """
    now = now or utcnow()
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)

    # If we've passed today's run time, schedule for tomorrow
    if now >= next_run:
        next_run += timedelta(days=1)

    return (next_run - now).total_seconds()


async def start_reconciliation_worker(
    target_hour: Optional[int] = None, repair: bool = False
) -> None:
    """
    Start the reconciliation worker.

    Runs daily at the given hour, defaulting to the configured one.
    """
    setup_logging()

    if target_hour is None:
        target_hour = get_settings().reconciliation_hour

    logger.info("reconciliation_worker_starting", target_hour=target_hour, repair=repair)

    engine = ReconciliationEngine()
    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            seconds_until = seconds_until_next_run(target_hour)
            logger.info("reconciliation_next_run_scheduled", seconds_until=seconds_until)

            # Sleep in short steps so a shutdown signal is noticed
            while seconds_until > 0 and running:
                sleep_time = min(seconds_until, 60)
                await asyncio.sleep(sleep_time)
                seconds_until -= sleep_time

            if not running:
                break

            try:
                await run_daily_reconciliation(engine, repair=repair)
            except Exception as e:
                # One failed day must not stop the schedule
                logger.error("reconciliation_execution_error", error=str(e))

    finally:
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Reconciliation worker")
    parser.add_argument(
        "--hour", type=int, default=None, help="Hour of day (UTC) to run reconciliation (0-23)"
    )
    parser.add_argument(
        "--repair", action="store_true", help="Apply missed status transitions"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(target_hour=args.hour, repair=args.repair))


if __name__ == "__main__":
    main()
