"""
Payment split computation.

Shares are taken from the charged total (after discounts):

- the platform fee,
- each active co-producer's percentage,
- the attributed affiliate's commission.

Each share is rounded down to the cent and the producer receives the
remainder, so the lines always add up to the total.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_platform.core.exceptions import SplitConfigurationError
from checkout_platform.core.money import percent_of, to_percentage
from checkout_platform.database.models import CourseCoProducer

PLATFORM = "platform"
PRODUCER = "producer"
COPRODUCER = "coproducer"
AFFILIATE = "affiliate"


@dataclass(frozen=True)
class SplitParticipant:
    user_id: int
    percentage: Decimal


@dataclass(frozen=True)
class SplitLine:
    party: str
    user_id: Optional[int]
    percentage: Optional[Decimal]
    amount_cents: int


@dataclass(frozen=True)
class SplitPlan:
    """Ordered split lines for one sale: platform, co-producers, affiliate, producer."""

    total_cents: int
    lines: List[SplitLine]

    def amount_for(self, party: str) -> int:
        return sum(line.amount_cents for line in self.lines if line.party == party)

    @property
    def platform_fee_cents(self) -> int:
        return self.amount_for(PLATFORM)

    @property
    def affiliate_cents(self) -> int:
        return self.amount_for(AFFILIATE)

    @property
    def producer_cents(self) -> int:
        return self.amount_for(PRODUCER)

    @property
    def affiliate_id(self) -> Optional[int]:
        for line in self.lines:
            if line.party == AFFILIATE:
                return line.user_id
        return None


def calculate_splits(
    total_cents: int,
    producer_id: int,
    platform_fee_percentage: Decimal,
    co_producers: Sequence[SplitParticipant] = (),
    affiliate: Optional[SplitParticipant] = None,
) -> SplitPlan:
    """
    Split a charged total between the platform, partners and the producer.

    Args:
        total_cents: Amount charged to the buyer
        producer_id: Course owner, receives the remainder
        platform_fee_percentage: Platform fee
        co_producers: Active co-producers of the course
        affiliate: Attributed affiliate, if any

    Returns:
        SplitPlan: lines whose amounts add up to total_cents

    Raises:
        SplitConfigurationError: If a percentage is negative or the
            non-producer percentages exceed 100
    """
    if total_cents < 0:
        raise SplitConfigurationError(f"Cannot split a negative total: {total_cents}")

    # A producer never earns a commission on their own course
    if affiliate is not None and affiliate.user_id == producer_id:
        affiliate = None

    participants = sorted(co_producers, key=lambda p: p.user_id)
    percentages = [to_percentage(platform_fee_percentage)]
    percentages.extend(to_percentage(p.percentage) for p in participants)
    if affiliate is not None:
        percentages.append(to_percentage(affiliate.percentage))

    if any(percentage < 0 for percentage in percentages):
        raise SplitConfigurationError("Split percentages cannot be negative")
    if sum(percentages) > 100:
        raise SplitConfigurationError(
            f"Split percentages add up to {sum(percentages)}%, above 100%"
        )

    fee_percentage = percentages[0]
    lines = [
        SplitLine(PLATFORM, None, fee_percentage, percent_of(total_cents, fee_percentage))
    ]
    for participant in participants:
        percentage = to_percentage(participant.percentage)
        lines.append(
            SplitLine(
                COPRODUCER,
                participant.user_id,
                percentage,
                percent_of(total_cents, percentage),
            )
        )
    if affiliate is not None:
        percentage = to_percentage(affiliate.percentage)
        lines.append(
            SplitLine(AFFILIATE, affiliate.user_id, percentage, percent_of(total_cents, percentage))
        )

    remainder = total_cents - sum(line.amount_cents for line in lines)
    lines.append(SplitLine(PRODUCER, producer_id, None, remainder))

    return SplitPlan(total_cents=total_cents, lines=lines)


async def load_co_producers(db: AsyncSession, course_id: int) -> List[SplitParticipant]:
    stmt = (
        select(CourseCoProducer)
        .where(CourseCoProducer.course_id == course_id, CourseCoProducer.is_active.is_(True))
        .order_by(CourseCoProducer.user_id)
    )
    result = await db.execute(stmt)
    return [
        SplitParticipant(user_id=row.user_id, percentage=row.percentage)
        for row in result.scalars().all()
    ]
