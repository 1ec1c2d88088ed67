"""
Reconciliation engine for comparing Stripe reports with database records.

Runs daily to detect discrepancies such as:
- Payments missing in the database or at Stripe
- Amount mismatches
- Status mismatches (missed webhooks)
- Split lines that do not add up to the sale amount
"""
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout_platform.core.settlement import CANCELED, REFUNDED, SUCCEEDED, SettlementEngine
from checkout_platform.database.connection import get_session_factory
from checkout_platform.database.models import ReconciliationStatus, Sale, SaleSplit, utcnow
from checkout_platform.integrations.stripe_client import StripeClient
from checkout_platform.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Stripe intent status -> sale status it implies
STRIPE_STATUS_MAP = {
    "succeeded": SUCCEEDED,
    "canceled": CANCELED,
}


class ReconciliationError(Exception):
    """Raised when reconciliation fails."""

    pass


def day_bounds(reconciliation_date: date) -> tuple[datetime, datetime]:
    """Naive UTC [start, end) of a calendar day."""
    start = datetime.combine(reconciliation_date, datetime.min.time())
    return start, start + timedelta(days=1)


def to_unix(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp())


class ReconciliationEngine:
    """
    Reconciliation engine for daily payment verification.

    Compares Stripe PaymentIntents with sales to detect:
    - Missing payments
    - Amount discrepancies
    - Status mismatches
    - Inconsistent split lines

    In repair mode, status mismatches are fixed by applying the status
    Stripe reports through the settlement state machine.
    """

    def __init__(
        self,
        stripe_client: Optional[StripeClient] = None,
        settlement_engine: Optional[SettlementEngine] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            stripe_client: Optional Stripe client
            settlement_engine: Used to repair missed transitions
            session_factory: Session factory (defaults to the application's)
        """
        self.stripe_client = stripe_client or StripeClient()
        self.settlement_engine = settlement_engine or SettlementEngine()
        self._session_factory = session_factory
        logger.info("reconciliation_engine_initialized")

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def _get_database_totals(
        self, db: AsyncSession, start_date: datetime, end_date: datetime
    ) -> Dict[str, Any]:
        """
        Totals of sales charged through Stripe and settled in the range.

        Free orders never reach Stripe and are left out.
        """
        stmt = select(
            func.count(Sale.id).label("count"),
            func.sum(Sale.amount_cents).label("total_cents"),
        ).where(
            Sale.created_at >= start_date,
            Sale.created_at < end_date,
            Sale.status.in_((SUCCEEDED, REFUNDED)),
            Sale.payment_intent_id.isnot(None),
        )

        result = await db.execute(stmt)
        row = result.first()

        return {
            "count": row.count or 0,
            "total_cents": int(row.total_cents or 0),
        }

    async def _fetch_stripe_payment_intents(
        self, start_timestamp: int, end_timestamp: int
    ) -> List[Any]:
        """
        Fetch every PaymentIntent created in [start, end).

        Raises:
            ReconciliationError: If Stripe cannot be read
        """
        payment_intents: List[Any] = []
        starting_after = None

        logger.info(
            "fetching_stripe_payments",
            start_timestamp=start_timestamp,
            end_timestamp=end_timestamp,
        )

        while True:
            try:
                page = await self.stripe_client.list_payment_intents(
                    limit=100,
                    starting_after=starting_after,
                    created_gte=start_timestamp,
                    created_lt=end_timestamp,
                )
            except Exception as e:
                logger.error("stripe_fetch_error", error=str(e))
                raise ReconciliationError(f"Failed to fetch Stripe data: {str(e)}") from e

            payment_intents.extend(page.data)
            if not page.has_more or not page.data:
                break
            starting_after = page.data[-1].id

        return payment_intents

    @staticmethod
    def _stripe_totals(payment_intents: Sequence[Any]) -> Dict[str, Any]:
        succeeded = [pi for pi in payment_intents if pi.status == "succeeded"]
        return {
            "count": len(succeeded),
            "total_cents": sum(pi.amount for pi in succeeded),
        }

    async def _sales_for_payment_intents(
        self, db: AsyncSession, payment_intent_ids: Sequence[str]
    ) -> Dict[str, Sale]:
        if not payment_intent_ids:
            return {}
        stmt = select(Sale).where(Sale.payment_intent_id.in_(payment_intent_ids))
        result = await db.execute(stmt)
        return {sale.payment_intent_id: sale for sale in result.scalars().all()}

    async def _find_split_mismatches(
        self, db: AsyncSession, start_date: datetime, end_date: datetime
    ) -> List[Dict[str, Any]]:
        split_totals = (
            select(
                SaleSplit.sale_id.label("sale_id"),
                func.sum(SaleSplit.amount_cents).label("split_cents"),
            )
            .group_by(SaleSplit.sale_id)
            .subquery()
        )
        stmt = (
            select(Sale.id, Sale.amount_cents, split_totals.c.split_cents)
            .outerjoin(split_totals, split_totals.c.sale_id == Sale.id)
            .where(
                Sale.created_at >= start_date,
                Sale.created_at < end_date,
                Sale.status == SUCCEEDED,
            )
            .order_by(Sale.id)
        )
        result = await db.execute(stmt)

        mismatches = []
        for sale_id, amount_cents, split_cents in result.all():
            if int(split_cents or 0) != amount_cents:
                mismatches.append({
                    "type": "split_mismatch",
                    "sale_id": sale_id,
                    "sale_amount": amount_cents,
                    "split_amount": int(split_cents or 0),
                })
        return mismatches

    async def _find_discrepancies(
        self,
        db: AsyncSession,
        payment_intents: Sequence[Any],
        start_date: datetime,
        end_date: datetime,
        repair: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Find specific discrepancies between Stripe and database.

        Returns:
            List[Dict[str, Any]]: List of discrepancies
        """
        discrepancies: List[Dict[str, Any]] = []
        sales = await self._sales_for_payment_intents(db, [pi.id for pi in payment_intents])

        for pi in payment_intents:
            expected_status = STRIPE_STATUS_MAP.get(pi.status)
            if expected_status is None:
                continue

            sale = sales.get(pi.id)
            if sale is None:
                if pi.status == "succeeded":
                    discrepancies.append({
                        "type": "missing_in_database",
                        "payment_intent_id": pi.id,
                        "stripe_amount": pi.amount,
                        "stripe_currency": pi.currency,
                    })
                continue

            if pi.status == "succeeded" and sale.amount_cents != pi.amount:
                discrepancies.append({
                    "type": "amount_mismatch",
                    "sale_id": sale.id,
                    "payment_intent_id": pi.id,
                    "database_amount": sale.amount_cents,
                    "stripe_amount": pi.amount,
                })
                continue

            # A refunded sale keeps a succeeded intent at Stripe
            if sale.status == expected_status or (
                expected_status == SUCCEEDED and sale.status == REFUNDED
            ):
                continue

            discrepancy: Dict[str, Any] = {
                "type": "status_mismatch",
                "sale_id": sale.id,
                "payment_intent_id": pi.id,
                "database_status": sale.status,
                "stripe_status": pi.status,
                "repaired": False,
            }
            if repair:
                # Lock and re-read: a webhook may have settled it since the scan
                transition = await self.settlement_engine.apply_for_payment_intent(
                    db, pi.id, expected_status, source="reconciliation"
                )
                discrepancy["repaired"] = transition is not None and transition.applied
            discrepancies.append(discrepancy)

        seen = {pi.id for pi in payment_intents}
        stmt = select(Sale).where(
            Sale.created_at >= start_date,
            Sale.created_at < end_date,
            Sale.status.in_((SUCCEEDED, REFUNDED)),
            Sale.payment_intent_id.isnot(None),
        )
        result = await db.execute(stmt)
        for sale in result.scalars().all():
            if sale.payment_intent_id not in seen:
                discrepancies.append({
                    "type": "missing_in_processor",
                    "sale_id": sale.id,
                    "payment_intent_id": sale.payment_intent_id,
                    "database_amount": sale.amount_cents,
                })

        discrepancies.extend(await self._find_split_mismatches(db, start_date, end_date))
        return discrepancies

    async def _start_status(
        self, db: AsyncSession, reconciliation_date: date
    ) -> ReconciliationStatus:
        """Create the status row for a date, or reuse it on a rerun."""
        result = await db.execute(
            select(ReconciliationStatus).where(
                ReconciliationStatus.reconciliation_date == reconciliation_date
            )
        )
        recon_status = result.scalar_one_or_none()
        if recon_status is None:
            recon_status = ReconciliationStatus(reconciliation_date=reconciliation_date)
            db.add(recon_status)

        recon_status.status = "in_progress"
        recon_status.started_at = utcnow()
        recon_status.completed_at = None
        recon_status.details = None
        await db.commit()
        return recon_status

    async def reconcile_date(
        self, reconciliation_date: date, repair: bool = False
    ) -> Dict[str, Any]:
        """
        Reconcile payments for a specific date.

        Args:
            reconciliation_date: Date to reconcile (UTC)
            repair: Apply missed status transitions

        Returns:
            Dict[str, Any]: Reconciliation results

        Raises:
            ReconciliationError: If the run fails
        """
        logger.info(
            "reconciliation_started",
            date=reconciliation_date.isoformat(),
            repair=repair,
        )
        start_time = time.time()

        async with self.session_factory() as db:
            recon_status = await self._start_status(db, reconciliation_date)
            try:
                start_date, end_date = day_bounds(reconciliation_date)

                db_totals = await self._get_database_totals(db, start_date, end_date)
                payment_intents = await self._fetch_stripe_payment_intents(
                    to_unix(start_date), to_unix(end_date)
                )
                stripe_totals = self._stripe_totals(payment_intents)

                discrepancy_cents = abs(
                    db_totals["total_cents"] - stripe_totals["total_cents"]
                )
                discrepancy_count = abs(db_totals["count"] - stripe_totals["count"])

                discrepancies = await self._find_discrepancies(
                    db, payment_intents, start_date, end_date, repair=repair
                )

                recon_status.stripe_total_cents = stripe_totals["total_cents"]
                recon_status.database_total_cents = db_totals["total_cents"]
                recon_status.discrepancy_cents = discrepancy_cents
                recon_status.discrepancy_count = discrepancy_count
                recon_status.status = "completed"
                recon_status.completed_at = utcnow()
                recon_status.details = {
                    "database": db_totals,
                    "stripe": stripe_totals,
                    "repair": repair,
                    "discrepancies": discrepancies[:100],  # Limit stored discrepancies
                }

                await db.commit()

            except Exception as e:
                logger.error(
                    "reconciliation_failed",
                    date=reconciliation_date.isoformat(),
                    error=str(e),
                )
                await db.rollback()
                recon_status.status = "failed"
                recon_status.completed_at = utcnow()
                recon_status.details = {"error": str(e)}
                await db.commit()

                if isinstance(e, ReconciliationError):
                    raise
                raise ReconciliationError(f"Reconciliation failed: {str(e)}") from e

        metrics.set_reconciliation_metrics(
            len(discrepancies), discrepancy_cents, time.time() - start_time
        )
        logger.info(
            "reconciliation_completed",
            date=reconciliation_date.isoformat(),
            discrepancy_cents=discrepancy_cents,
            discrepancy_count=discrepancy_count,
            total_discrepancies=len(discrepancies),
        )

        return {
            "date": reconciliation_date.isoformat(),
            "database_total_cents": db_totals["total_cents"],
            "database_count": db_totals["count"],
            "stripe_total_cents": stripe_totals["total_cents"],
            "stripe_count": stripe_totals["count"],
            "discrepancy_cents": discrepancy_cents,
            "discrepancy_count": discrepancy_count,
            "discrepancies": discrepancies,
        }

    async def reconcile_yesterday(self, repair: bool = False) -> Dict[str, Any]:
        """Reconcile payments for yesterday (UTC)."""
        yesterday = utcnow().date() - timedelta(days=1)
        return await self.reconcile_date(yesterday, repair=repair)
