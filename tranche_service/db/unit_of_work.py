"""
Unit of work: one transaction, typed repositories, explicit commit boundary.

Every mutation in the core (a purchase with its auto-advance and raise
recompute, a tranche transition with its funded-amount recalculation, an
overdue sweep) runs inside one ``async with uow:`` block::

    async with uow:
        tier = await engine.execute_purchase(uow, fund_id, tier_id, units)

On a clean exit the session is committed; on any exception it is rolled
back and the exception propagates, so either all of the operation's writes
become visible or none do.  Callbacks registered with :meth:`after_commit`
run only once the commit has succeeded (cache invalidation).
"""

import logging
from collections.abc import AsyncGenerator
from typing import Callable, List, Optional

from fastapi import Depends
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from tranche_service.core.resilience import db_circuit_breaker
from tranche_service.db.session import get_db
from tranche_service.models.fund import Fund
from tranche_service.models.investment import Investment
from tranche_service.models.investment_tranche import InvestmentTranche
from tranche_service.models.pricing_tier import PricingTier
from tranche_service.repositories.fund_repo import FundRepository
from tranche_service.repositories.investment_repo import InvestmentRepository
from tranche_service.repositories.pricing_tier_repo import PricingTierRepository
from tranche_service.repositories.tranche_repo import InvestmentTrancheRepository

logger = logging.getLogger(__name__)


class UnitOfWork:
    """Owns one ``AsyncSession`` and the repositories bound to it."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.funds = FundRepository(Fund, session)
        self.tiers = PricingTierRepository(PricingTier, session)
        self.investments = InvestmentRepository(Investment, session)
        self.tranches = InvestmentTrancheRepository(InvestmentTranche, session)
        self._after_commit: List[Callable[[], None]] = []

    async def __aenter__(self) -> "UnitOfWork":
        self._after_commit = []
        return self

    async def __aexit__(self, exc_type, exc, tb) -> Optional[bool]:
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()
        return None

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once the current transaction commits successfully."""
        self._after_commit.append(callback)

    async def commit(self) -> None:
        async def _commit() -> None:
            try:
                await self.session.commit()
            except OperationalError:
                await self.session.rollback()
                logger.error("OperationalError during commit — transaction rolled back")
                raise
            except Exception:
                await self.session.rollback()
                raise

        try:
            await db_circuit_breaker.call(_commit)
        except Exception:
            self._after_commit = []
            raise

        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:
                logger.warning("after_commit callback failed: %s", exc)

    async def rollback(self) -> None:
        self._after_commit = []
        await self.session.rollback()


async def get_uow(db: AsyncSession = Depends(get_db)) -> AsyncGenerator[UnitOfWork, None]:
    """FastAPI dependency: a unit of work bound to the request's session."""
    yield UnitOfWork(db)
