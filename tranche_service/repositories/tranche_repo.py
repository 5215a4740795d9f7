"""
Investment-tranche repository — data-access layer for ``investment_tranches``.

Fund-scoped queries join through ``investments`` because a tranche only
knows its investment.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import func, select, update

from tranche_service.models.investment import Investment
from tranche_service.models.investment_tranche import InvestmentTranche, TrancheStatus
from tranche_service.repositories.base import BaseRepository

# Statuses a tranche may be in for overdue detection to flag it.
OVERDUE_CANDIDATE_STATUSES = (TrancheStatus.SCHEDULED, TrancheStatus.CALLED)


class InvestmentTrancheRepository(BaseRepository[InvestmentTranche]):
    """Concrete repository for :class:`InvestmentTranche` entities."""

    async def list_by_investment(self, investment_id: UUID) -> List[InvestmentTranche]:
        stmt = (
            select(self.model)
            .where(self.model.investment_id == investment_id)
            .order_by(self.model.tranche_number.asc())
            .execution_options(populate_existing=True)
        )
        return await self._scalars(stmt)

    async def list_by_fund(
        self,
        fund_id: UUID,
        status: Optional[TrancheStatus] = None,
        due_before: Optional[date] = None,
        due_after: Optional[date] = None,
    ) -> List[InvestmentTranche]:
        """
        Tranches across all investments of a fund, soonest due first.

        ``due_before`` / ``due_after`` are inclusive bounds on ``scheduled_date``.
        """
        stmt = (
            select(self.model)
            .join(Investment, Investment.id == self.model.investment_id)
            .where(Investment.fund_id == fund_id)
        )
        if status is not None:
            stmt = stmt.where(self.model.status == status)
        if due_before is not None:
            stmt = stmt.where(self.model.scheduled_date <= due_before)
        if due_after is not None:
            stmt = stmt.where(self.model.scheduled_date >= due_after)
        stmt = stmt.order_by(
            self.model.scheduled_date.asc(),
            self.model.investment_id,
            self.model.tranche_number,
        )
        return await self._scalars(stmt)

    async def list_by_ids(self, tranche_ids: Iterable[UUID]) -> List[InvestmentTranche]:
        """Fresh copies of the given tranches (identity map overwritten)."""
        ids = list(tranche_ids)
        if not ids:
            return []
        stmt = (
            select(self.model)
            .where(self.model.id.in_(ids))
            .order_by(self.model.scheduled_date.asc(), self.model.tranche_number)
            .execution_options(populate_existing=True)
        )
        return await self._scalars(stmt)

    async def sum_funded(self, investment_id: UUID) -> Decimal:
        stmt = select(func.coalesce(func.sum(self.model.funded_amount), 0)).where(
            self.model.investment_id == investment_id
        )

        async def _run() -> Decimal:
            result = await self.db.execute(stmt)
            return Decimal(str(result.scalar() or 0))

        return await self._execute_with_circuit_breaker(_run)

    async def find_overdue_candidates(self, fund_id: UUID, today: date) -> List[InvestmentTranche]:
        """SCHEDULED or CALLED tranches of the fund whose due date is before ``today``."""
        stmt = (
            select(self.model)
            .join(Investment, Investment.id == self.model.investment_id)
            .where(
                Investment.fund_id == fund_id,
                self.model.scheduled_date < today,
                self.model.status.in_(OVERDUE_CANDIDATE_STATUSES),
            )
            .order_by(self.model.scheduled_date.asc(), self.model.tranche_number)
        )
        return await self._scalars(stmt)

    async def bulk_mark_overdue(self, tranche_ids: Iterable[UUID], when: datetime) -> int:
        """
        Flip the given tranches to OVERDUE in one statement.

        The status guard is repeated so a tranche funded between detection and
        marking is left alone.
        """
        ids = list(tranche_ids)
        if not ids:
            return 0
        stmt = (
            update(self.model)
            .where(
                self.model.id.in_(ids),
                self.model.status.in_(OVERDUE_CANDIDATE_STATUSES),
            )
            .values(
                status=TrancheStatus.OVERDUE,
                overdue_date=func.coalesce(self.model.overdue_date, when),
            )
            .execution_options(synchronize_session=False)
        )
        return await self._rowcount(stmt)

    async def update_if_status(
        self, tranche_id: UUID, expected: TrancheStatus, values: Dict[str, Any]
    ) -> int:
        """
        Write ``values`` only while the tranche is still in ``expected``.

        Returns the number of rows affected: 0 means another transaction
        moved the tranche first and nothing was written.
        """
        stmt = (
            update(self.model)
            .where(self.model.id == tranche_id, self.model.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return await self._rowcount(stmt)
