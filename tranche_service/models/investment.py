"""
Investment domain model.

One row per investor commitment into a fund.  The investor itself lives in
the onboarding/CRM side of the platform; ``investor_id`` is an opaque
reference to it.  ``funded_amount`` is derived: it always equals the sum of
``funded_amount`` over the investment's tranches and is only written by
:meth:`TrancheLifecycleService.recalculate_investment_funded`.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import CheckConstraint, DateTime
from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from tranche_service.models.fund import Fund
    from tranche_service.models.investment_tranche import InvestmentTranche


class InvestmentStatus(str, Enum):
    """Commitment-level status; FUNDED once every tranche is settled or voided."""

    COMMITTED = "COMMITTED"
    FUNDED = "FUNDED"
    CANCELLED = "CANCELLED"


class Investment(SQLModel, table=True):
    """SQLModel / SQLAlchemy table definition for investments."""

    __tablename__ = "investments"  # type: ignore[assignment]

    __table_args__ = (
        CheckConstraint("commitment_amount > 0", name="ck_investments_commitment_positive"),
        CheckConstraint("funded_amount >= 0", name="ck_investments_funded_non_negative"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    fund_id: uuid.UUID = Field(foreign_key="funds.id", index=True, ondelete="RESTRICT")
    investor_id: uuid.UUID = Field(index=True)
    commitment_amount: Decimal = Field(max_digits=20, decimal_places=2)
    funded_amount: Decimal = Field(default=Decimal("0"), max_digits=20, decimal_places=2)
    status: InvestmentStatus = Field(default=InvestmentStatus.COMMITTED)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        nullable=False,
        sa_type=DateTime(timezone=True),  # type: ignore[arg-type]
    )

    # ── Relationships ──
    fund: Optional["Fund"] = Relationship(back_populates="investments")
    tranches: List["InvestmentTranche"] = Relationship(back_populates="investment")

    def __repr__(self) -> str:
        return (
            f"<Investment id={self.id} fund={self.fund_id} investor={self.investor_id} "
            f"funded=${self.funded_amount}/{self.commitment_amount} status={self.status.value}>"
        )
