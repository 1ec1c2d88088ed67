"""
Outbox publisher background worker.

Continuously polls the outbox table and delivers sale events to the
producers' webhook subscriptions.
"""
import asyncio
import signal
import sys
from typing import Any

import structlog

from checkout_platform.core.outbox import OutboxPublisher
from checkout_platform.integrations.notification_sink import ProducerWebhookDispatcher
from checkout_platform.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_publisher(batch_size: int = 100, poll_interval_seconds: float = 1.0) -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until stopped.
    """
    setup_logging()

    logger.info("outbox_publisher_worker_starting")

    dispatcher = ProducerWebhookDispatcher()
    publisher = OutboxPublisher(
        publisher_func=dispatcher.publish,
        batch_size=batch_size,
        poll_interval_seconds=poll_interval_seconds,
    )

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
