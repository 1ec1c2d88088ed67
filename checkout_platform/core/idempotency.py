"""
Idempotency for checkout creation.

This module implements a two-tier idempotency system:
1. Redis cache for fast lookups (primary)
2. The sales table's unique idempotency_key for persistence
"""
import hashlib
import json
from typing import Any, Callable, Dict, Optional, Sequence

import redis.asyncio as aioredis
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_platform.config import get_settings
from checkout_platform.database.models import Sale
from checkout_platform.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class IdempotencyError(Exception):
    """Raised when idempotency validation fails."""

    pass


class IdempotencyManager:
    """
    Manages idempotency keys and cached checkout responses.

    Implements a two-tier system:
    - Redis for fast cache lookups
    - The database for durable storage
    """

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        """
        Initialize idempotency manager.

        Args:
            redis_client: Optional Redis client (creates one if not provided)
        """
        self.settings = get_settings()
        self.redis_client = redis_client

    def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def generate_key(
        buyer_email: str,
        product_ref: str,
        order_bump_ids: Sequence[int] = (),
        coupon_code: Optional[str] = None,
        session_id: Optional[str] = None,
        client_key: Optional[str] = None,
    ) -> str:
        """
        Generate the idempotency key for a checkout request.

        A client-supplied key wins. Otherwise the key is derived from the
        request contents so that a double-submitted form maps to one sale.

        Format: checkout:{client|auto}:{hash}
        """
        if client_key:
            digest = hashlib.sha256(client_key.encode()).hexdigest()[:32]
            return f"checkout:client:{digest}"

        parts = [
            buyer_email.strip().lower(),
            product_ref,
            ",".join(str(bump_id) for bump_id in sorted(set(order_bump_ids))),
            (coupon_code or "").strip().upper(),
            session_id or "",
        ]
        digest = hashlib.sha256("|".join(parts).encode()).hexdigest()[:32]
        return f"checkout:auto:{digest}"

    async def check_idempotency(
        self,
        idempotency_key: str,
        db: AsyncSession,
        serializer: Callable[[Sale], Dict[str, Any]],
    ) -> Optional[Dict[str, Any]]:
        """
        Check if a checkout with this idempotency key already exists.

        First checks Redis cache, then falls back to database.

        Args:
            idempotency_key: The idempotency key to check
            db: Database session
            serializer: Builds the response for a sale found in the database

        Returns:
            Optional[Dict[str, Any]]: Original checkout response, None if new
        """
        try:
            redis = self._ensure_redis()
            cached_response = await redis.get(f"idempotency:{idempotency_key}")
            if cached_response:
                logger.info(
                    "idempotency_cache_hit",
                    idempotency_key=idempotency_key,
                    source="redis",
                )
                metrics.record_idempotency_cache_hit("redis")
                return json.loads(cached_response)
        except Exception as e:
            logger.warning(
                "redis_cache_error",
                error=str(e),
                idempotency_key=idempotency_key,
            )

        try:
            stmt = select(Sale).where(Sale.idempotency_key == idempotency_key)
            result = await db.execute(stmt)
            sale = result.scalar_one_or_none()
        except Exception as e:
            logger.error(
                "database_idempotency_check_error",
                error=str(e),
                idempotency_key=idempotency_key,
            )
            raise IdempotencyError(f"Failed to check idempotency: {str(e)}") from e

        if sale is None:
            metrics.record_idempotency_cache_hit("miss")
            logger.info("idempotency_cache_miss", idempotency_key=idempotency_key)
            return None

        logger.info(
            "idempotency_cache_hit",
            idempotency_key=idempotency_key,
            source="database",
        )
        metrics.record_idempotency_cache_hit("database")
        response = serializer(sale)
        await self.store_response(idempotency_key, response)
        return response

    async def store_response(
        self, idempotency_key: str, response: Dict[str, Any]
    ) -> None:
        """
        Store checkout response in cache for idempotency.

        Args:
            idempotency_key: The idempotency key
            response: Checkout response to cache
        """
        try:
            redis = self._ensure_redis()
            await redis.setex(
                f"idempotency:{idempotency_key}",
                self.settings.idempotency_cache_ttl,
                json.dumps(response),
            )
            logger.info("idempotency_response_cached", idempotency_key=idempotency_key)
        except Exception as e:
            logger.warning(
                "idempotency_cache_store_error",
                error=str(e),
                idempotency_key=idempotency_key,
            )

    async def invalidate(self, idempotency_key: str) -> None:
        """
        Invalidate cached response for an idempotency key.

        Args:
            idempotency_key: The idempotency key to invalidate
        """
        try:
            redis = self._ensure_redis()
            await redis.delete(f"idempotency:{idempotency_key}")
            logger.info("idempotency_cache_invalidated", idempotency_key=idempotency_key)
        except Exception as e:
            logger.warning(
                "idempotency_cache_invalidate_error",
                error=str(e),
                idempotency_key=idempotency_key,
            )

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
