"""
Investment repository — data-access layer for the ``investments`` table.
"""

from typing import List, Optional
from uuid import UUID

from sqlalchemy import select

from tranche_service.models.investment import Investment
from tranche_service.repositories.base import BaseRepository


class InvestmentRepository(BaseRepository[Investment]):
    """Concrete repository for :class:`Investment` entities."""

    async def list_by_fund(
        self, fund_id: UUID, skip: int = 0, limit: int = 100
    ) -> List[Investment]:
        """Investments of a fund, newest first."""
        stmt = (
            select(self.model)
            .where(self.model.fund_id == fund_id)
            .order_by(self.model.created_at.desc(), self.model.id)
            .offset(skip)
            .limit(limit)
        )
        return await self._scalars(stmt)

    async def get_by_fund_and_investor(
        self, fund_id: UUID, investor_id: UUID
    ) -> Optional[Investment]:
        stmt = select(self.model).where(
            self.model.fund_id == fund_id, self.model.investor_id == investor_id
        )
        return await self._scalar_one_or_none(stmt)
