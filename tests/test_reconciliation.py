"""
Tests for daily reconciliation against Stripe.
"""
from datetime import date, datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from checkout_platform.core.reconciliation import (
    ReconciliationEngine,
    ReconciliationError,
    day_bounds,
    to_unix,
)
from checkout_platform.database.models import (
    DailyAnalytics,
    OutboxEvent,
    ReconciliationStatus,
    Sale,
)
from factories import make_sale

DAY = date(2026, 2, 10)
MORNING = datetime(2026, 2, 10, 9, 30)


def payment_intent(pi_id: str, amount: int, status: str = "succeeded") -> MagicMock:
    pi = MagicMock()
    pi.id = pi_id
    pi.amount = amount
    pi.status = status
    pi.currency = "usd"
    return pi


def page(*payment_intents: MagicMock, has_more: bool = False) -> MagicMock:
    return MagicMock(data=list(payment_intents), has_more=has_more)


@pytest.fixture
def reconciliation_engine(mock_stripe_client, settlement_engine, session_factory):
    return ReconciliationEngine(
        stripe_client=mock_stripe_client,
        settlement_engine=settlement_engine,
        session_factory=session_factory,
    )


def by_type(result: dict) -> dict:
    found: dict = {}
    for discrepancy in result["discrepancies"]:
        found.setdefault(discrepancy["type"], []).append(discrepancy)
    return found


class TestHelpers:
    """Test suite for date helpers."""

    @pytest.mark.unit
    def test_day_bounds(self) -> None:
        start, end = day_bounds(DAY)

        assert start == datetime(2026, 2, 10)
        assert end == datetime(2026, 2, 11)

    @pytest.mark.unit
    def test_to_unix_treats_naive_as_utc(self) -> None:
        assert to_unix(datetime(1970, 1, 2)) == 86400


class TestReconcileDate:
    """Test suite for ReconciliationEngine.reconcile_date."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_clean_day(self, db, course, reconciliation_engine, mock_stripe_client) -> None:
        await make_sale(
            db, course, status="succeeded", payment_intent_id="pi_a", created_at=MORNING
        )
        await db.commit()
        mock_stripe_client.list_payment_intents.return_value = page(payment_intent("pi_a", 10000))

        result = await reconciliation_engine.reconcile_date(DAY)

        assert result["discrepancies"] == []
        assert result["database_total_cents"] == 10000
        assert result["stripe_total_cents"] == 10000
        assert result["discrepancy_cents"] == 0

        kwargs = mock_stripe_client.list_payment_intents.await_args.kwargs
        assert kwargs["created_gte"] == to_unix(datetime(2026, 2, 10))
        assert kwargs["created_lt"] == to_unix(datetime(2026, 2, 11))

        status = (await db.execute(select(ReconciliationStatus))).scalar_one()
        assert status.status == "completed"
        assert status.reconciliation_date == DAY

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_detects_each_discrepancy_type(
        self, db, course, reconciliation_engine, mock_stripe_client
    ) -> None:
        await make_sale(
            db, course, status="pending", payment_intent_id="pi_b",
            amount_cents=5000, created_at=MORNING,
        )
        await make_sale(
            db, course, status="succeeded", payment_intent_id="pi_c",
            amount_cents=7000, created_at=MORNING,
        )
        await make_sale(
            db, course, status="succeeded", payment_intent_id="pi_d",
            amount_cents=4000, created_at=MORNING,
        )
        await make_sale(
            db, course, status="succeeded", payment_intent_id="pi_e",
            amount_cents=2000, created_at=MORNING, with_splits=False,
        )
        await make_sale(
            db, course, status="refunded", payment_intent_id="pi_f",
            amount_cents=1000, created_at=MORNING,
        )
        # Outside the reconciled day
        await make_sale(
            db, course, status="succeeded", payment_intent_id="pi_g",
            created_at=datetime(2026, 2, 11, 0, 0),
        )
        await db.commit()
        mock_stripe_client.list_payment_intents.return_value = page(
            payment_intent("pi_b", 5000),
            payment_intent("pi_c", 6000),
            payment_intent("pi_e", 2000),
            payment_intent("pi_f", 1000),
            payment_intent("pi_x", 3000),
            payment_intent("pi_y", 900, status="requires_payment_method"),
        )

        result = await reconciliation_engine.reconcile_date(DAY)
        found = by_type(result)

        assert [d["payment_intent_id"] for d in found["status_mismatch"]] == ["pi_b"]
        assert found["status_mismatch"][0]["repaired"] is False
        assert found["amount_mismatch"][0]["stripe_amount"] == 6000
        assert [d["payment_intent_id"] for d in found["missing_in_database"]] == ["pi_x"]
        assert [d["payment_intent_id"] for d in found["missing_in_processor"]] == ["pi_d"]
        assert found["split_mismatch"][0]["sale_amount"] == 2000
        assert found["split_mismatch"][0]["split_amount"] == 0
        assert len(result["discrepancies"]) == 5

        assert result["database_total_cents"] == 14000
        assert result["stripe_total_cents"] == 17000
        assert result["discrepancy_cents"] == 3000

        pending = (
            await db.execute(select(Sale).where(Sale.payment_intent_id == "pi_b"))
        ).scalar_one()
        assert pending.status == "pending"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repair_applies_stripe_status(
        self, db, course, reconciliation_engine, mock_stripe_client
    ) -> None:
        """A missed succeeded webhook is settled by the repair run."""
        await make_sale(
            db, course, status="pending", payment_intent_id="pi_b", created_at=MORNING
        )
        await make_sale(
            db, course, status="pending", payment_intent_id="pi_c", created_at=MORNING
        )
        await db.commit()
        mock_stripe_client.list_payment_intents.return_value = page(
            payment_intent("pi_b", 10000),
            payment_intent("pi_c", 10000, status="canceled"),
        )

        result = await reconciliation_engine.reconcile_date(DAY, repair=True)

        assert all(d["repaired"] for d in result["discrepancies"])
        statuses = {
            sale.payment_intent_id: sale.status
            for sale in (
                await db.execute(select(Sale).execution_options(populate_existing=True))
            ).scalars()
        }
        assert statuses == {"pi_b": "succeeded", "pi_c": "canceled"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repair_skips_sale_settled_after_scan(
        self,
        db,
        course,
        reconciliation_engine,
        settlement_engine,
        session_factory,
        mock_stripe_client,
        monkeypatch,
    ) -> None:
        """A webhook landing mid-run must not settle the sale a second time."""
        await make_sale(
            db, course, status="pending", payment_intent_id="pi_b", created_at=MORNING
        )
        await db.commit()
        mock_stripe_client.list_payment_intents.return_value = page(
            payment_intent("pi_b", 10000)
        )
        scan = reconciliation_engine._sales_for_payment_intents

        async def scan_then_webhook(scan_db, payment_intent_ids):
            sales = await scan(scan_db, payment_intent_ids)
            async with session_factory() as webhook_db:
                await settlement_engine.apply_for_payment_intent(
                    webhook_db, "pi_b", "succeeded", source="webhook"
                )
                await webhook_db.commit()
            return sales

        monkeypatch.setattr(
            reconciliation_engine, "_sales_for_payment_intents", scan_then_webhook
        )

        result = await reconciliation_engine.reconcile_date(DAY, repair=True)

        assert [d["repaired"] for d in result["discrepancies"]] == [False]
        completed = (
            await db.execute(
                select(OutboxEvent).where(OutboxEvent.event_type == "sale.completed")
            )
        ).scalars().all()
        assert len(completed) == 1
        analytics = (await db.execute(select(DailyAnalytics))).scalars().all()
        assert [row.sales_count for row in analytics] == [1]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_follows_pagination(
        self, db, course, reconciliation_engine, mock_stripe_client
    ) -> None:
        mock_stripe_client.list_payment_intents.side_effect = [
            page(payment_intent("pi_1", 100), has_more=True),
            page(payment_intent("pi_2", 200)),
        ]

        result = await reconciliation_engine.reconcile_date(DAY)

        assert result["stripe_count"] == 2
        assert result["stripe_total_cents"] == 300
        calls = mock_stripe_client.list_payment_intents.await_args_list
        assert calls[0].kwargs["starting_after"] is None
        assert calls[1].kwargs["starting_after"] == "pi_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stripe_failure_marks_run_failed(
        self, db, reconciliation_engine, mock_stripe_client
    ) -> None:
        mock_stripe_client.list_payment_intents.side_effect = RuntimeError("Stripe is down")

        with pytest.raises(ReconciliationError, match="Stripe is down"):
            await reconciliation_engine.reconcile_date(DAY)

        status = (await db.execute(select(ReconciliationStatus))).scalar_one()
        assert status.status == "failed"
        assert "Stripe is down" in status.details["error"]
        assert status.completed_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rerun_reuses_status_row(
        self, db, reconciliation_engine, mock_stripe_client
    ) -> None:
        mock_stripe_client.list_payment_intents.return_value = page()

        await reconciliation_engine.reconcile_date(DAY)
        await reconciliation_engine.reconcile_date(DAY)

        rows = (await db.execute(select(ReconciliationStatus))).scalars().all()
        assert len(rows) == 1
        assert rows[0].status == "completed"
