"""
Seed script — populates the database with sample data for development / demo.

Run when the database is accessible::

    python -m tranche_service.seed

Tiers and commitments are created through the pricing engine and lifecycle
service so the seeded data obeys the same rules as API writes (one active
tier, minimum investment following its price).  The script is idempotent:
it does nothing if the demo fund already exists.
"""

import asyncio
import logging
import uuid
from datetime import date, timedelta
from decimal import Decimal

from sqlmodel import SQLModel

import tranche_service.models  # noqa: F401
from tranche_service.db.session import AsyncSessionLocal, engine
from tranche_service.db.unit_of_work import UnitOfWork
from tranche_service.models.fund import Fund, FundStatus
from tranche_service.schemas.pricing import TierCreate
from tranche_service.schemas.tranche import CommitmentScheduleCreate, ScheduledTrancheIn
from tranche_service.services.pricing_engine import PricingEngine
from tranche_service.services.tranche_lifecycle import TrancheLifecycleService

logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger(__name__)

DEMO_FUND_ID = uuid.UUID("550e8400-e29b-41d4-a716-446655440000")
DEMO_INVESTOR_ID = uuid.UUID("770e8400-e29b-41d4-a716-446655440002")

# (tranche_number, name, price_per_unit, units_total)
DEMO_TIERS = [
    (1, "Early Close", Decimal("10.00"), 100),
    (2, "Final Close", Decimal("12.00"), 200),
]


async def seed() -> None:
    """Create tables and insert the demo fund, its tiers and one staged commitment."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    async with AsyncSessionLocal() as session:
        uow = UnitOfWork(session)
        if await uow.funds.get(DEMO_FUND_ID) is not None:
            logger.info("Database already contains data — skipping seed.")
            return

        engine_ = PricingEngine(uow)
        lifecycle = TrancheLifecycleService(uow)
        today = date.today()

        async with uow:
            await uow.funds.add(
                Fund(
                    id=DEMO_FUND_ID,
                    name="Harbour Growth Fund I",
                    status=FundStatus.FUNDRAISING,
                    target_raise=Decimal("3400.00"),
                )
            )
            for number, name, price, units in DEMO_TIERS:
                await engine_.create_tier(
                    DEMO_FUND_ID,
                    TierCreate(
                        tranche_number=number, name=name, price_per_unit=price, units_total=units
                    ),
                )
            await lifecycle.schedule_commitment(
                DEMO_FUND_ID,
                CommitmentScheduleCreate(
                    investor_id=DEMO_INVESTOR_ID,
                    total_commitment=Decimal("1000000.00"),
                    tranches=[
                        ScheduledTrancheIn(amount=Decimal("250000.00"), scheduled_date=today),
                        ScheduledTrancheIn(
                            amount=Decimal("250000.00"), scheduled_date=today + timedelta(days=90)
                        ),
                        ScheduledTrancheIn(
                            amount=Decimal("500000.00"), scheduled_date=today + timedelta(days=180)
                        ),
                    ],
                ),
            )

        logger.info(
            "Seeded fund %s with %d pricing tiers and one staged commitment",
            DEMO_FUND_ID,
            len(DEMO_TIERS),
        )


if __name__ == "__main__":
    asyncio.run(seed())
