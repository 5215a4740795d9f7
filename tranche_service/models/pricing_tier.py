"""
Pricing tier (pricing tranche) domain model.

A fund's raise is split into fixed-price, fixed-quantity tiers sold in
ascending ``tranche_number`` order.  Exactly one tier, the lowest-numbered
one with remaining units, is flagged ``is_active``; none is once every tier
has sold out.  Only :class:`~tranche_service.services.pricing_engine.PricingEngine`
writes ``units_available`` and ``is_active``.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import CheckConstraint, DateTime, Index, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from tranche_service.models.fund import Fund


class PricingTier(SQLModel, table=True):
    """
    SQLModel / SQLAlchemy table definition for pricing tiers.

    The CHECK constraints make ``0 <= units_available <= units_total`` a
    database invariant, so even a buggy write path cannot oversell.
    """

    __tablename__ = "pricing_tiers"  # type: ignore[assignment]

    __table_args__ = (
        UniqueConstraint("fund_id", "tranche_number", name="uq_pricing_tiers_fund_tranche"),
        Index("ix_pricing_tiers_fund_active", "fund_id", "is_active"),
        CheckConstraint("tranche_number >= 1", name="ck_pricing_tiers_tranche_number_min"),
        CheckConstraint("price_per_unit > 0", name="ck_pricing_tiers_price_positive"),
        CheckConstraint("units_total > 0", name="ck_pricing_tiers_units_total_positive"),
        CheckConstraint(
            "units_available >= 0", name="ck_pricing_tiers_units_available_non_negative"
        ),
        CheckConstraint(
            "units_available <= units_total", name="ck_pricing_tiers_units_within_total"
        ),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    fund_id: uuid.UUID = Field(foreign_key="funds.id", index=True, ondelete="RESTRICT")
    tranche_number: int
    name: Optional[str] = Field(default=None, max_length=255)
    price_per_unit: Decimal = Field(max_digits=20, decimal_places=2)
    units_total: int
    units_available: int
    is_active: bool = Field(default=False)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        nullable=False,
        sa_type=DateTime(timezone=True),  # type: ignore[arg-type]
    )

    fund: Optional["Fund"] = Relationship(back_populates="pricing_tiers")

    @property
    def display_name(self) -> str:
        return self.name or f"Tier {self.tranche_number}"

    @property
    def units_sold(self) -> int:
        return self.units_total - self.units_available

    @property
    def amount_raised(self) -> Decimal:
        return self.units_sold * self.price_per_unit

    def __repr__(self) -> str:
        return (
            f"<PricingTier id={self.id} fund={self.fund_id} tranche={self.tranche_number} "
            f"units={self.units_available}/{self.units_total} active={self.is_active}>"
        )
