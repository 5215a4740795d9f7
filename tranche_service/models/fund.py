"""
Fund table.

A fund sells units through its pricing tiers and receives staged
commitments.  ``current_raise`` and ``minimum_investment`` are derived
values owned by the pricing engine: the raise is recomputed from the tiers
after every purchase, and the minimum follows the active tier's price.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, List

from sqlalchemy import CheckConstraint, DateTime
from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from tranche_service.models.investment import Investment
    from tranche_service.models.pricing_tier import PricingTier


class FundStatus(str, Enum):
    """Fundraising → Investing → Closed; never backwards."""

    FUNDRAISING = "Fundraising"
    INVESTING = "Investing"
    CLOSED = "Closed"


def _money(default: str = "0") -> Any:
    return Field(default=Decimal(default), max_digits=20, decimal_places=2)


class Fund(SQLModel, table=True):
    __tablename__ = "funds"  # type: ignore[assignment]
    __table_args__ = (
        CheckConstraint("length(name) > 0", name="ck_funds_name_not_empty"),
        CheckConstraint("target_raise >= 0", name="ck_funds_target_raise_non_negative"),
        CheckConstraint("current_raise >= 0", name="ck_funds_current_raise_non_negative"),
        CheckConstraint(
            "minimum_investment >= 0", name="ck_funds_minimum_investment_non_negative"
        ),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    name: str = Field(index=True, max_length=255)
    status: FundStatus = Field(default=FundStatus.FUNDRAISING)
    target_raise: Decimal = _money()
    current_raise: Decimal = _money()
    minimum_investment: Decimal = _money()
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        nullable=False,
        sa_type=DateTime(timezone=True),  # type: ignore[arg-type]
    )

    pricing_tiers: List["PricingTier"] = Relationship(back_populates="fund")
    investments: List["Investment"] = Relationship(back_populates="fund")

    @property
    def accepts_capital(self) -> bool:
        """Purchases, tier changes and new commitments stop once a fund closes."""
        return self.status != FundStatus.CLOSED

    def __repr__(self) -> str:
        return (
            f"<Fund {self.name!r} {self.status.value} "
            f"raised={self.current_raise}/{self.target_raise} min={self.minimum_investment}>"
        )
