"""
Fund service — business logic for the fund records the pricing core sells.

Raises domain-specific exceptions from ``tranche_service.core.exceptions``
so the service layer stays framework-agnostic (no direct FastAPI imports).

Caching:
    ``get_fund`` caches the serialised fund under the fund's pricing prefix,
    so the post-commit invalidation a purchase registers also drops it.
"""

import logging
from typing import List
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from tranche_service.core.cache import cache, fund_cache_key
from tranche_service.core.exceptions import BusinessRuleViolation, NotFoundException
from tranche_service.db.unit_of_work import UnitOfWork
from tranche_service.models.fund import Fund, FundStatus
from tranche_service.schemas.fund import FundCreate, FundResponse

logger = logging.getLogger(__name__)


class FundService:
    """Encapsulates fund creation, lookup and the one-way status lifecycle."""

    def __init__(self, uow: UnitOfWork):
        self._uow = uow

    # ── Queries ──

    async def get_all_funds(self, skip: int = 0, limit: int = 100) -> List[Fund]:
        return await self._uow.funds.get_all(skip=skip, limit=limit)

    async def get_fund(self, fund_id: UUID) -> FundResponse:
        """
        Retrieve a single fund by ID (cache-backed).

        Raises :class:`NotFoundException` if the fund does not exist.
        """
        cache_key = fund_cache_key(fund_id, "fund")
        cached = cache.get(cache_key)
        if cached is not None:
            logger.debug("Cache hit for %s", cache_key)
            return cached

        fund = await self._uow.funds.get(fund_id)
        if not fund:
            raise NotFoundException("Fund", fund_id)
        result = FundResponse.model_validate(fund)
        cache.set(cache_key, result)
        return result

    # ── Commands ──

    async def create_fund(self, fund_in: FundCreate) -> Fund:
        """
        Create a new fund from validated input.  Does not commit.

        ``IntegrityError`` from a CHECK constraint that slipped past the
        schema surfaces as a clean 422.
        """
        fund = Fund(**fund_in.model_dump())
        try:
            created = await self._uow.funds.add(fund)
        except IntegrityError as exc:
            logger.warning("IntegrityError creating fund: %s", exc)
            raise BusinessRuleViolation(
                "Fund data violates a database constraint. Check all fields."
            ) from exc
        logger.info("Created fund %s (%s)", created.id, created.name)
        return created

    async def update_fund_status(self, fund_id: UUID, status: FundStatus) -> Fund:
        """
        Move a fund forward through Fundraising → Investing → Closed.

        Raises :class:`NotFoundException` for an unknown fund and
        :class:`BusinessRuleViolation` for a backwards move.  Does not commit.
        """
        fund = await self._uow.funds.get_for_update(fund_id)
        if not fund:
            raise NotFoundException("Fund", fund_id)

        _validate_status_transition(fund.status, status)
        previous = fund.status
        fund.status = status
        await self._uow.funds.save(fund)
        self._uow.after_commit(lambda: cache.invalidate_fund(fund_id))
        logger.info("Fund %s status %s -> %s", fund_id, previous.value, status.value)
        return fund


# ── Status transition rules ──

# Allowed transitions: only forward movement through the lifecycle.
_ALLOWED_TRANSITIONS: dict[FundStatus, set[FundStatus]] = {
    FundStatus.FUNDRAISING: {
        FundStatus.FUNDRAISING,
        FundStatus.INVESTING,
        FundStatus.CLOSED,
    },
    FundStatus.INVESTING: {FundStatus.INVESTING, FundStatus.CLOSED},
    FundStatus.CLOSED: {FundStatus.CLOSED},
}


def _validate_status_transition(current: FundStatus, requested: FundStatus) -> None:
    """Raise :class:`BusinessRuleViolation` for a backwards lifecycle move."""
    if requested not in _ALLOWED_TRANSITIONS.get(current, set()):
        raise BusinessRuleViolation(
            f"Invalid status transition: '{current.value}' → '{requested.value}'. "
            f"Fund lifecycle is Fundraising → Investing → Closed (one-way)."
        )
