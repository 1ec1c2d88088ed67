"""
Tests for per-user balances.
"""
import pytest

from checkout_platform.core.balance import BalanceService
from factories import make_course, make_sale, make_user


class TestBalanceService:
    """Test suite for BalanceService.get_balance."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_balance(self, db, producer) -> None:
        balance = await BalanceService().get_balance(db, producer.id)

        assert balance == {
            "user_id": producer.id,
            "available_cents": 0,
            "pending_cents": 0,
            "reversed_cents": 0,
            "by_role": {},
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_balance_by_split_status(self, db, producer, course) -> None:
        await make_sale(db, course, status="succeeded", split_status="available")
        await make_sale(db, course, status="pending")
        await make_sale(db, course, amount_cents=5000, status="refunded", split_status="reversed")

        balance = await BalanceService().get_balance(db, producer.id)

        assert balance["available_cents"] == 9000
        assert balance["pending_cents"] == 9000
        assert balance["reversed_cents"] == 4500
        assert balance["by_role"]["producer"]["sales_count"] == 3
        assert balance["by_role"]["producer"]["available_cents"] == 9000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_balance_across_roles(self, db, producer, course) -> None:
        """A user earns as affiliate of one course and producer of another."""
        other_producer = await make_user(db, "other@example.com")
        other_course = await make_course(db, other_producer, title="Rust Basics")
        await make_sale(
            db, other_course, status="succeeded", affiliate=producer, split_status="available"
        )
        await make_sale(db, course, status="succeeded", split_status="available")

        balance = await BalanceService().get_balance(db, producer.id)

        assert balance["by_role"]["affiliate"]["available_cents"] == 3000
        assert balance["by_role"]["producer"]["available_cents"] == 9000
        assert balance["available_cents"] == 12000

