"""
Tests for the transactional outbox.
"""
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from checkout_platform.core.outbox import OutboxPublisher, write_outbox_event
from checkout_platform.database.models import OutboxEvent


async def seed_events(db, *event_types: str) -> None:
    for index, event_type in enumerate(event_types, start=1):
        write_outbox_event(db, index, "sale", event_type, {"sale_id": index})
    await db.commit()


async def published_flags(db) -> dict:
    result = await db.execute(
        select(OutboxEvent).order_by(OutboxEvent.id).execution_options(populate_existing=True)
    )
    return {event.event_type: event.published for event in result.scalars().all()}


class TestOutboxPublisher:
    """Test suite for OutboxPublisher."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_write_outbox_event(self, db) -> None:
        event = write_outbox_event(db, 42, "sale", "sale.created", {"sale_id": 42})
        await db.flush()

        assert event.aggregate_id == "42"
        assert event.published is False
        assert event.published_at is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_process_batch_publishes_in_order(self, db, session_factory) -> None:
        await seed_events(db, "sale.created", "sale.completed")
        publisher_func = AsyncMock()
        publisher = OutboxPublisher(publisher_func=publisher_func, session_factory=session_factory)

        published = await publisher.process_batch()

        assert published == 2
        sent = [call.args[0]["event_type"] for call in publisher_func.await_args_list]
        assert sent == ["sale.created", "sale.completed"]
        assert publisher_func.await_args_list[0].args[0]["payload"] == {"sale_id": 1}
        assert await published_flags(db) == {"sale.created": True, "sale.completed": True}
        assert await publisher.get_pending_count() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_event_stays_pending(self, db, session_factory) -> None:
        await seed_events(db, "sale.created", "sale.completed")

        async def flaky(event_data):
            if event_data["event_type"] == "sale.completed":
                raise RuntimeError("endpoint unavailable")

        publisher = OutboxPublisher(publisher_func=flaky, session_factory=session_factory)

        assert await publisher.process_batch() == 1
        assert await published_flags(db) == {"sale.created": True, "sale.completed": False}
        assert await publisher.get_pending_count() == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_size_limits_work(self, db, session_factory) -> None:
        await seed_events(db, "sale.created", "sale.completed", "sale.refunded")
        publisher = OutboxPublisher(
            publisher_func=AsyncMock(), batch_size=2, session_factory=session_factory
        )

        assert await publisher.process_batch() == 2
        assert await publisher.process_batch() == 1
        assert await publisher.process_batch() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_default_publisher_logs_only(self, db, session_factory) -> None:
        await seed_events(db, "sale.created")
        publisher = OutboxPublisher(session_factory=session_factory)

        assert await publisher.process_batch() == 1

    @pytest.mark.unit
    def test_stop(self) -> None:
        publisher = OutboxPublisher(publisher_func=AsyncMock())
        publisher._running = True

        publisher.stop()

        assert publisher._running is False
