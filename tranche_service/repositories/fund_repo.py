"""
Fund repository — data-access layer for the ``funds`` table.
"""

from typing import Optional
from uuid import UUID

from tranche_service.models.fund import Fund
from tranche_service.repositories.base import BaseRepository


class FundRepository(BaseRepository[Fund]):
    """Concrete repository for :class:`Fund` entities."""

    async def get_for_update(self, fund_id: UUID) -> Optional[Fund]:
        """
        Load a fund with a row lock held until the unit of work ends.

        Purchases lock the fund first, so auto-advancing the active tier and
        recomputing ``current_raise`` are serialised per fund on PostgreSQL.
        """
        return await self.reload(fund_id, for_update=True)
