"""
Shared pytest fixtures for unit tests.

All tests run with ``USE_SQLITE=true``.  Service tests use a fake unit of
work whose repositories are ``AsyncMock``s; repository tests use a real
in-memory ``sqlite+aiosqlite`` database (see ``test_repositories_sqlite``).
"""

import os

os.environ.setdefault("USE_SQLITE", "true")

import uuid  # noqa: E402
from datetime import date, datetime, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Callable, List, Optional  # noqa: E402
from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import pytest  # noqa: E402

from tranche_service.core.cache import TTLCache  # noqa: E402
from tranche_service.models.fund import Fund, FundStatus  # noqa: E402
from tranche_service.models.investment import Investment, InvestmentStatus  # noqa: E402
from tranche_service.models.investment_tranche import (  # noqa: E402
    InvestmentTranche,
    TrancheStatus,
)
from tranche_service.models.pricing_tier import PricingTier  # noqa: E402
from tranche_service.repositories.fund_repo import FundRepository  # noqa: E402
from tranche_service.repositories.investment_repo import InvestmentRepository  # noqa: E402
from tranche_service.repositories.pricing_tier_repo import PricingTierRepository  # noqa: E402
from tranche_service.repositories.tranche_repo import InvestmentTrancheRepository  # noqa: E402

# ────────────────────────────────────────────────────────────────────────────
# Factory helpers: domain objects with sensible defaults
# ────────────────────────────────────────────────────────────────────────────

FUND_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
INVESTOR_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")
INVESTMENT_ID = uuid.UUID("33333333-3333-3333-3333-333333333333")
TIER_1_ID = uuid.UUID("44444444-4444-4444-4444-444444444441")
TIER_2_ID = uuid.UUID("44444444-4444-4444-4444-444444444442")
TRANCHE_ID = uuid.UUID("55555555-5555-5555-5555-555555555555")


def make_fund(
    *,
    id: uuid.UUID = FUND_ID,
    name: str = "Test Fund I",
    status: FundStatus = FundStatus.FUNDRAISING,
    target_raise: Decimal = Decimal("3400.00"),
    current_raise: Decimal = Decimal("0"),
    minimum_investment: Decimal = Decimal("0"),
) -> Fund:
    """Create a Fund domain object with sensible test defaults."""
    return Fund(
        id=id,
        name=name,
        status=status,
        target_raise=target_raise,
        current_raise=current_raise,
        minimum_investment=minimum_investment,
        created_at=datetime.now(timezone.utc),
    )


def make_tier(
    *,
    id: Optional[uuid.UUID] = None,
    fund_id: uuid.UUID = FUND_ID,
    tranche_number: int = 1,
    name: Optional[str] = None,
    price_per_unit: Decimal = Decimal("10.00"),
    units_total: int = 100,
    units_available: Optional[int] = None,
    is_active: bool = False,
) -> PricingTier:
    """Create a PricingTier; ``units_available`` defaults to ``units_total``."""
    return PricingTier(
        id=id or uuid.uuid4(),
        fund_id=fund_id,
        tranche_number=tranche_number,
        name=name,
        price_per_unit=price_per_unit,
        units_total=units_total,
        units_available=units_total if units_available is None else units_available,
        is_active=is_active,
        created_at=datetime.now(timezone.utc),
    )


def make_investment(
    *,
    id: uuid.UUID = INVESTMENT_ID,
    fund_id: uuid.UUID = FUND_ID,
    investor_id: uuid.UUID = INVESTOR_ID,
    commitment_amount: Decimal = Decimal("1000.00"),
    funded_amount: Decimal = Decimal("0"),
    status: InvestmentStatus = InvestmentStatus.COMMITTED,
) -> Investment:
    """Create an Investment domain object with sensible test defaults."""
    return Investment(
        id=id,
        fund_id=fund_id,
        investor_id=investor_id,
        commitment_amount=commitment_amount,
        funded_amount=funded_amount,
        status=status,
        created_at=datetime.now(timezone.utc),
    )


def make_tranche(
    *,
    id: Optional[uuid.UUID] = None,
    investment_id: uuid.UUID = INVESTMENT_ID,
    tranche_number: int = 1,
    amount: Decimal = Decimal("500.00"),
    funded_amount: Decimal = Decimal("0"),
    status: TrancheStatus = TrancheStatus.SCHEDULED,
    scheduled_date: date = date(2026, 1, 15),
    called_date: Optional[datetime] = None,
    overdue_date: Optional[datetime] = None,
) -> InvestmentTranche:
    """Create an InvestmentTranche domain object with sensible test defaults."""
    return InvestmentTranche(
        id=id or uuid.uuid4(),
        investment_id=investment_id,
        tranche_number=tranche_number,
        amount=amount,
        funded_amount=funded_amount,
        status=status,
        scheduled_date=scheduled_date,
        called_date=called_date,
        overdue_date=overdue_date,
        created_at=datetime.now(timezone.utc),
    )


# ────────────────────────────────────────────────────────────────────────────
# Fake unit of work
# ────────────────────────────────────────────────────────────────────────────


class FakeUnitOfWork:
    """
    Stand-in for :class:`~tranche_service.db.unit_of_work.UnitOfWork`.

    Repositories are spec'd ``AsyncMock``s.  ``async with`` counts commits
    and rollbacks and runs ``after_commit`` callbacks on a clean exit, like
    the real unit of work.
    """

    def __init__(self):
        self.funds = AsyncMock(spec=FundRepository)
        self.tiers = AsyncMock(spec=PricingTierRepository)
        self.investments = AsyncMock(spec=InvestmentRepository)
        self.tranches = AsyncMock(spec=InvestmentTrancheRepository)
        self.commits = 0
        self.rollbacks = 0
        self._after_commit: List[Callable[[], None]] = []

    async def __aenter__(self) -> "FakeUnitOfWork":
        self._after_commit = []
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.commits += 1
            callbacks, self._after_commit = self._after_commit, []
            for callback in callbacks:
                callback()
        else:
            self.rollbacks += 1
            self._after_commit = []
        return None

    def after_commit(self, callback: Callable[[], None]) -> None:
        self._after_commit.append(callback)


# ────────────────────────────────────────────────────────────────────────────
# Pytest fixtures
# ────────────────────────────────────────────────────────────────────────────


@pytest.fixture()
def uow() -> FakeUnitOfWork:
    return FakeUnitOfWork()


@pytest.fixture()
def audit_sink():
    """Records audit events; ``audit_sink.record.call_args_list`` for assertions."""
    sink = MagicMock()
    sink.record = MagicMock()
    return sink


@pytest.fixture()
def mock_db():
    """A mocked AsyncSession that tracks add/commit/refresh/rollback calls."""
    session = AsyncMock()
    session.add = MagicMock()
    session.commit = AsyncMock()
    session.refresh = AsyncMock()
    session.rollback = AsyncMock()
    session.execute = AsyncMock()
    session.get = AsyncMock()
    session.delete = AsyncMock()
    session.flush = AsyncMock()
    return session


@pytest.fixture()
def test_cache():
    """A fresh TTL cache instance for test isolation."""
    return TTLCache(ttl=30.0, max_size=100, enabled=True)


@pytest.fixture()
def disabled_cache():
    """A disabled TTL cache — all operations are no-ops."""
    return TTLCache(ttl=30.0, max_size=100, enabled=False)


@pytest.fixture(autouse=True)
def _clear_global_cache():
    """Clear the global cache before and after each test."""
    from tranche_service.core.cache import cache

    cache.clear()
    yield
    cache.clear()


@pytest.fixture(autouse=True)
def _reset_circuit_breaker():
    """A test that trips the breaker must not fail every test after it."""
    from tranche_service.core.resilience import db_circuit_breaker

    db_circuit_breaker.reset()
    yield
    db_circuit_breaker.reset()
