"""
Pydantic schemas for pricing tiers, quotes, purchases and fund progress.

These are both the pricing engine's return types and the HTTP response
bodies.  Currency values are ``Decimal`` internally and serialised as JSON
numbers.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class TierCreate(BaseModel):
    """Schema for ``POST /funds/{fund_id}/pricing-tiers``."""

    tranche_number: int = Field(..., ge=1, description="Selling order, 1-based", examples=[1])
    name: Optional[str] = Field(
        default=None, max_length=255, description="Display label", examples=["Early Close"]
    )
    price_per_unit: Decimal = Field(
        ..., gt=0, max_digits=20, decimal_places=2, examples=[10.00]
    )
    units_total: int = Field(..., gt=0, examples=[100])

    @field_validator("name")
    @classmethod
    def blank_name_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()


class TierUpdate(BaseModel):
    """
    Schema for ``PATCH /pricing-tiers/{tier_id}``.

    Price and size may only change while the tier has no sales.
    """

    name: Optional[str] = Field(default=None, max_length=255)
    price_per_unit: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=20, decimal_places=2
    )
    units_total: Optional[int] = Field(default=None, gt=0)


class TierResponse(BaseModel):
    id: UUID
    fund_id: UUID
    tranche_number: int
    name: Optional[str] = None
    display_name: str
    price_per_unit: Decimal
    units_total: int
    units_available: int
    units_sold: int
    is_active: bool
    created_at: datetime

    @field_serializer("price_per_unit")
    @classmethod
    def serialize_decimal_as_number(cls, v: Decimal) -> float:
        return float(v)

    model_config = ConfigDict(from_attributes=True)


class ActiveTranche(BaseModel):
    """The tier currently open for purchase."""

    id: UUID
    fund_id: UUID
    tranche_number: int
    name: str
    price_per_unit: Decimal
    units_available: int
    units_total: int

    @field_serializer("price_per_unit")
    @classmethod
    def serialize_decimal_as_number(cls, v: Decimal) -> float:
        return float(v)


class PurchaseQuote(BaseModel):
    """
    Advisory price for buying units from the active tier.

    A quote reserves nothing; it can go stale before the purchase executes.
    """

    fund_id: UUID
    tier_id: UUID
    tranche_number: int
    price_per_unit: Decimal
    units_requested: int
    total_amount: Decimal
    units_remaining_after: int

    @field_serializer("price_per_unit", "total_amount")
    @classmethod
    def serialize_decimal_as_number(cls, v: Decimal) -> float:
        return float(v)


class PurchaseRequest(BaseModel):
    """Schema for ``POST /funds/{fund_id}/purchases``."""

    units: int = Field(..., ge=1, description="Units to buy from the active tier", examples=[10])


class PurchaseResult(BaseModel):
    """Outcome of a committed purchase."""

    fund_id: UUID
    tier_id: UUID
    tranche_number: int
    units_purchased: int
    price_per_unit: Decimal
    total_amount: Decimal
    units_remaining: int
    tier_sold_out: bool
    next_active_tranche: Optional[int] = None
    fund_current_raise: Decimal
    fund_minimum_investment: Decimal
    attempts: int = 1

    @field_serializer(
        "price_per_unit", "total_amount", "fund_current_raise", "fund_minimum_investment"
    )
    @classmethod
    def serialize_decimal_as_number(cls, v: Decimal) -> float:
        return float(v)


class TierProgress(BaseModel):
    tier_id: UUID
    tranche_number: int
    name: str
    price_per_unit: Decimal
    units_total: int
    units_sold: int
    units_available: int
    percent_sold: float
    amount_raised: Decimal
    is_active: bool

    @field_serializer("price_per_unit", "amount_raised")
    @classmethod
    def serialize_decimal_as_number(cls, v: Decimal) -> float:
        return float(v)


class FundProgress(BaseModel):
    """Dashboard view of a fund's raise across all of its tiers."""

    fund_id: UUID
    total_units: int = 0
    units_sold: int = 0
    units_available: int = 0
    total_raised: Decimal = Decimal("0")
    target_raise: Decimal = Decimal("0")
    percent_raised: float = 0.0
    active_tranche: Optional[ActiveTranche] = None
    tranches: List[TierProgress] = Field(default_factory=list)

    @field_serializer("total_raised", "target_raise")
    @classmethod
    def serialize_decimal_as_number(cls, v: Decimal) -> float:
        return float(v)
