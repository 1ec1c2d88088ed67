"""Sale lookups, manual status updates and refunds."""
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_platform.core.catalog import is_admin
from checkout_platform.core.exceptions import (
    DomainValidationError,
    NotFoundError,
    RefundError,
)
from checkout_platform.core.settlement import (
    REFUNDED,
    SUCCEEDED,
    SettlementEngine,
    TransitionResult,
)
from checkout_platform.database.models import Sale, SaleItem, SaleSplit, User
from checkout_platform.integrations.stripe_client import StripeClient, StripeError

logger = structlog.get_logger(__name__)


class SalesService:
    """Operations producers run on their own sales."""

    def __init__(
        self,
        stripe_client: Optional[StripeClient] = None,
        settlement_engine: Optional[SettlementEngine] = None,
    ):
        self.stripe_client = stripe_client or StripeClient()
        self.settlement_engine = settlement_engine or SettlementEngine()

    async def _owned_sale(
        self, db: AsyncSession, sale_id: int, user: User, lock: bool = False
    ) -> Sale:
        """Sales of other producers are reported as missing."""
        if lock:
            sale = await self.settlement_engine.load_sale(db, sale_id)
        else:
            sale = await db.get(Sale, sale_id)
        if sale is None or (sale.producer_id != user.id and not is_admin(user)):
            raise NotFoundError("Sale", sale_id)
        return sale

    async def get_sale(self, db: AsyncSession, sale_id: int, user: User) -> Dict[str, Any]:
        """
        Sale with its line items and split.

        Visible to the producer, to anyone holding a split line and to admins.
        """
        sale = await db.get(Sale, sale_id)
        if sale is None:
            raise NotFoundError("Sale", sale_id)

        splits_result = await db.execute(
            select(SaleSplit).where(SaleSplit.sale_id == sale_id).order_by(SaleSplit.id)
        )
        splits: List[SaleSplit] = list(splits_result.scalars().all())

        participants = {split.user_id for split in splits if split.user_id is not None}
        if sale.producer_id != user.id and user.id not in participants and not is_admin(user):
            raise NotFoundError("Sale", sale_id)

        items_result = await db.execute(
            select(SaleItem).where(SaleItem.sale_id == sale_id).order_by(SaleItem.id)
        )

        return {
            "sale": sale,
            "items": list(items_result.scalars().all()),
            "splits": splits,
        }

    async def update_status(
        self, db: AsyncSession, sale_id: int, user: User, new_status: str
    ) -> TransitionResult:
        """
        Manually confirm, fail or cancel a sale, e.g. for offline payments.

        Raises:
            NotFoundError: If the sale is not the caller's
            DomainValidationError: For processor payments, which only Stripe
                events may settle and only refund() may refund
        """
        sale = await self._owned_sale(db, sale_id, user, lock=True)
        if sale.payment_intent_id is not None:
            if new_status == REFUNDED:
                raise DomainValidationError(
                    "Card payments are refunded through the refund endpoint",
                    error_code="use_refund_endpoint",
                )
            raise DomainValidationError(
                f"Sale {sale_id} is settled by its payment processor",
                error_code="processor_managed_sale",
            )

        result = await self.settlement_engine.apply(
            db, sale, new_status, source=f"manual:{user.id}"
        )
        await db.commit()

        logger.info(
            "sale_status_updated_manually",
            sale_id=sale_id,
            user_id=user.id,
            applied=result.applied,
            to_status=new_status,
        )
        return result

    async def refund(
        self, db: AsyncSession, sale_id: int, user: User, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Fully refund a settled sale.

        Raises:
            NotFoundError: If the sale is not the caller's
            RefundError: If the sale is not settled or Stripe refuses
        """
        sale = await self._owned_sale(db, sale_id, user, lock=True)
        if sale.status != SUCCEEDED:
            raise RefundError(
                f"Sale {sale_id} is {sale.status}, only settled sales can be refunded",
                user_message="Only completed sales can be refunded.",
            )

        refund_id = None
        if sale.payment_intent_id is not None:
            try:
                refund = await self.stripe_client.create_refund(
                    payment_intent_id=sale.payment_intent_id,
                    reason=reason,
                    idempotency_key=f"refund:{sale.id}",
                )
            except StripeError as e:
                logger.error("refund_failed", sale_id=sale_id, error=str(e))
                raise RefundError(
                    f"Refund failed: {str(e)}",
                    user_message="The refund could not be processed. Please try again.",
                    http_status=502,
                ) from e
            refund_id = refund.id

        result = await self.settlement_engine.apply(db, sale, REFUNDED, source="refund")
        await db.commit()

        logger.info("sale_refunded", sale_id=sale_id, refund_id=refund_id, user_id=user.id)
        return {
            "sale_id": sale.id,
            "refund_id": refund_id,
            "status": sale.status,
            "amount_cents": sale.amount_cents,
            "applied": result.applied,
        }
