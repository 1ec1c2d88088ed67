"""Per-user balances derived from sale split lines."""
from typing import Any, Dict

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_platform.database.models import SaleSplit

logger = structlog.get_logger(__name__)

SPLIT_STATUSES = ("available", "pending", "reversed")


class BalanceService:
    """
    Computes what a user has earned across all their roles.

    available: the sale settled
    pending:   the sale is still waiting for the processor
    reversed:  the sale was refunded or canceled
    """

    async def get_balance(self, db: AsyncSession, user_id: int) -> Dict[str, Any]:
        stmt = (
            select(
                SaleSplit.party,
                SaleSplit.status,
                func.coalesce(func.sum(SaleSplit.amount_cents), 0),
                func.count(SaleSplit.id),
            )
            .where(SaleSplit.user_id == user_id)
            .group_by(SaleSplit.party, SaleSplit.status)
        )
        result = await db.execute(stmt)

        totals = {status: 0 for status in SPLIT_STATUSES}
        by_role: Dict[str, Dict[str, int]] = {}
        for party, status, amount_cents, count in result.all():
            totals[status] = totals.get(status, 0) + int(amount_cents)
            role = by_role.setdefault(
                party, {f"{name}_cents": 0 for name in SPLIT_STATUSES} | {"sales_count": 0}
            )
            role[f"{status}_cents"] = role.get(f"{status}_cents", 0) + int(amount_cents)
            role["sales_count"] += count

        logger.info("balance_computed", user_id=user_id, available_cents=totals["available"])

        return {
            "user_id": user_id,
            "available_cents": totals["available"],
            "pending_cents": totals["pending"],
            "reversed_cents": totals["reversed"],
            "by_role": by_role,
        }
