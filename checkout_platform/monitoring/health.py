"""
Health checks for the API's monitoring endpoints.

/health runs every probe; readiness only needs what a checkout cannot
work without (database and Redis), so a Stripe blip does not take every
replica out of rotation at once.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable

import redis.asyncio as aioredis
import stripe
import structlog
from sqlalchemy import func, select, text

from checkout_platform.config import get_settings
from checkout_platform.database.connection import get_session_factory
from checkout_platform.database.models import OutboxEvent

logger = structlog.get_logger(__name__)

PROBE_TIMEOUT_SECONDS = 5.0
OUTBOX_BACKLOG_LIMIT = 1000

Probe = Callable[[], Awaitable[Dict[str, Any]]]


class HealthCheckError(Exception):
    """Raised when a dependency probe fails."""


class HealthCheck:
    """Probes for the database, Redis, Stripe and the outbox backlog."""

    def __init__(self) -> None:
        self.settings = get_settings()
        self.probes: Dict[str, Probe] = {
            "database": self.check_database,
            "redis": self.check_redis,
            "stripe": self.check_stripe,
            "outbox": self.check_outbox,
        }

    async def check_database(self) -> Dict[str, Any]:
        async with get_session_factory()() as db:
            await db.execute(text("SELECT 1"))
        return {"status": "healthy", "message": "Database connection successful"}

    async def check_redis(self) -> Dict[str, Any]:
        redis_client = aioredis.from_url(self.settings.redis_url, decode_responses=True)
        try:
            await redis_client.ping()
        finally:
            await redis_client.aclose()
        return {"status": "healthy", "message": "Redis connection successful"}

    async def check_stripe(self) -> Dict[str, Any]:
        stripe.api_key = self.settings.stripe_secret_key
        # Cheapest authenticated call
        await asyncio.get_running_loop().run_in_executor(None, stripe.Balance.retrieve)
        return {
            "status": "healthy",
            "message": "Stripe API connection successful",
            "test_mode": self.settings.is_test_mode,
        }

    async def check_outbox(self) -> Dict[str, Any]:
        """Unpublished events mean producer webhooks are running late."""
        async with get_session_factory()() as db:
            pending = await db.scalar(
                select(func.count())
                .select_from(OutboxEvent)
                .where(OutboxEvent.published.is_(False))
            )
        if pending > OUTBOX_BACKLOG_LIMIT:
            raise HealthCheckError(f"{pending} outbox events waiting to be published")
        return {"status": "healthy", "pending_events": pending}

    async def _run_probe(self, service: str) -> Dict[str, Any]:
        try:
            result = await asyncio.wait_for(self.probes[service](), PROBE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", service=service)
            return {"status": "unhealthy", "error": f"timed out after {PROBE_TIMEOUT_SECONDS}s"}
        except Exception as e:
            logger.error("health_check_failed", service=service, error=str(e))
            return {"status": "unhealthy", "error": str(e)}
        return result

    async def run(self, services: Iterable[str]) -> Dict[str, Any]:
        names = list(services)
        results = await asyncio.gather(*(self._run_probe(name) for name in names))
        checks = dict(zip(names, results))
        healthy = all(check["status"] == "healthy" for check in checks.values())
        return {"status": "healthy" if healthy else "unhealthy", "checks": checks}

    async def check_all(self) -> Dict[str, Any]:
        return await self.run(self.probes)

    async def liveness(self) -> Dict[str, Any]:
        """The process is up; dependencies are not consulted."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        return await self.run(("database", "redis"))
