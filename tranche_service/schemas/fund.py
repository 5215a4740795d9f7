"""
Pydantic schemas for Fund API request / response serialisation.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from tranche_service.models.fund import FundStatus


class FundBase(BaseModel):
    """Fields common to fund creation and responses."""

    name: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Human-readable name of the fund",
        examples=["Harbour Growth Fund I"],
    )
    target_raise: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        max_digits=20,
        decimal_places=2,
        description="Capital the fund aims to raise (0 = no target)",
        examples=[5_000_000.00],
    )
    status: FundStatus = Field(default=FundStatus.FUNDRAISING)

    @field_validator("name")
    @classmethod
    def validate_name_not_blank(cls, v: str) -> str:
        """Reject whitespace-only names."""
        if not v.strip():
            raise ValueError("name must not be blank")
        return v.strip()


class FundCreate(FundBase):
    """
    Schema for ``POST /funds``.

    ``minimum_investment`` is managed by the pricing engine once tiers exist:
    it tracks the active tier's price per unit.
    """

    minimum_investment: Decimal = Field(default=Decimal("0"), ge=0, max_digits=20, decimal_places=2)


class FundResponse(FundBase):
    id: UUID
    current_raise: Decimal
    minimum_investment: Decimal
    created_at: datetime

    @field_serializer("target_raise", "current_raise", "minimum_investment")
    @classmethod
    def serialize_decimal_as_number(cls, v: Decimal) -> float:
        return float(v)

    model_config = ConfigDict(from_attributes=True)


class FundStatusUpdate(BaseModel):
    """Schema for ``PATCH /funds/{fund_id}/status``."""

    status: FundStatus
