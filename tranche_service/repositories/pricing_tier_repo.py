"""
Pricing-tier repository — data-access layer for the ``pricing_tiers`` table.

The capacity decrement is a single conditional ``UPDATE``: it only matches
while the tier is still active and still holds enough units, so two racing
purchases can never drive ``units_available`` below zero regardless of the
isolation level.  The caller treats zero affected rows as a capacity
conflict.
"""

from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import exists, func, select, update

from tranche_service.models.pricing_tier import PricingTier
from tranche_service.repositories.base import BaseRepository


class PricingTierRepository(BaseRepository[PricingTier]):
    """Concrete repository for :class:`PricingTier` entities."""

    async def list_by_fund(self, fund_id: UUID) -> List[PricingTier]:
        """All tiers of a fund in selling order (ascending tranche number)."""
        stmt = (
            select(self.model)
            .where(self.model.fund_id == fund_id)
            .order_by(self.model.tranche_number.asc())
        )
        return await self._scalars(stmt)

    async def get_active(self, fund_id: UUID) -> Optional[PricingTier]:
        """
        The tier currently open for purchase, or ``None``.

        If more than one row is flagged active, the lowest tranche number wins.
        """
        stmt = (
            select(self.model)
            .where(self.model.fund_id == fund_id, self.model.is_active.is_(True))
            .order_by(self.model.tranche_number.asc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return await self._scalar_one_or_none(stmt)

    async def list_active(self, fund_id: UUID) -> List[PricingTier]:
        stmt = (
            select(self.model)
            .where(self.model.fund_id == fund_id, self.model.is_active.is_(True))
            .order_by(self.model.tranche_number.asc())
            .execution_options(populate_existing=True)
        )
        return await self._scalars(stmt)

    async def get_by_number(self, fund_id: UUID, tranche_number: int) -> Optional[PricingTier]:
        stmt = select(self.model).where(
            self.model.fund_id == fund_id, self.model.tranche_number == tranche_number
        )
        return await self._scalar_one_or_none(stmt)

    async def first_with_capacity(self, fund_id: UUID) -> Optional[PricingTier]:
        """Lowest-numbered tier that still has units to sell."""
        stmt = (
            select(self.model)
            .where(self.model.fund_id == fund_id, self.model.units_available > 0)
            .order_by(self.model.tranche_number.asc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return await self._scalar_one_or_none(stmt)

    async def has_sales(self, fund_id: UUID) -> bool:
        """True once any unit of any tier of the fund has been sold."""
        stmt = select(
            exists().where(
                self.model.fund_id == fund_id,
                self.model.units_available < self.model.units_total,
            )
        )

        async def _run() -> bool:
            result = await self.db.execute(stmt)
            return bool(result.scalar())

        return await self._execute_with_circuit_breaker(_run)

    async def decrement_units(self, tier_id: UUID, units: int) -> int:
        """
        Atomically take ``units`` from an active tier.

        Returns the number of rows affected: 1 on success, 0 when the tier is
        no longer active or no longer holds ``units`` units.
        """
        stmt = (
            update(self.model)
            .where(
                self.model.id == tier_id,
                self.model.is_active.is_(True),
                self.model.units_available >= units,
            )
            .values(units_available=self.model.units_available - units)
            .execution_options(synchronize_session=False)
        )
        return await self._rowcount(stmt)

    async def sum_raised(self, fund_id: UUID) -> Decimal:
        """``SUM((units_total - units_available) * price_per_unit)`` over all tiers."""
        sold_value = (self.model.units_total - self.model.units_available) * self.model.price_per_unit
        stmt = select(func.coalesce(func.sum(sold_value), 0)).where(
            self.model.fund_id == fund_id
        )

        async def _run() -> Decimal:
            result = await self.db.execute(stmt)
            return Decimal(str(result.scalar() or 0))

        return await self._execute_with_circuit_breaker(_run)
