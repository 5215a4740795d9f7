"""
Pydantic schemas for funding tranches: transitions, statistics and staged
commitment schedules.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)

from tranche_service.models.investment import InvestmentStatus
from tranche_service.models.investment_tranche import TrancheStatus

MIN_SCHEDULED_TRANCHES = 2
MAX_SCHEDULED_TRANCHES = 12
MAX_COMMITMENT = Decimal("100000000000")
# Tranche amounts may differ from the commitment by at most one cent.
SCHEDULE_SUM_TOLERANCE = Decimal("0.01")
SCHEDULE_HORIZON_YEARS = 10


class TransitionOptions(BaseModel):
    """Optional data recorded alongside a status transition."""

    funded_amount: Optional[Decimal] = Field(
        default=None,
        max_digits=20,
        decimal_places=2,
        description="Amount received; required for PARTIALLY_FUNDED, overrides FUNDED",
    )
    capital_call_id: Optional[UUID] = None
    wire_proof_document_id: Optional[UUID] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class TrancheTransitionRequest(TransitionOptions):
    """Schema for ``POST /tranches/{tranche_id}/transition``."""

    status: TrancheStatus = Field(..., description="Target status")

    def options(self) -> TransitionOptions:
        return TransitionOptions(**self.model_dump(exclude={"status"}))


class TrancheResponse(BaseModel):
    id: UUID
    investment_id: UUID
    tranche_number: int
    amount: Decimal
    funded_amount: Decimal
    status: TrancheStatus
    scheduled_date: date
    called_date: Optional[datetime] = None
    funded_date: Optional[datetime] = None
    overdue_date: Optional[datetime] = None
    capital_call_id: Optional[UUID] = None
    wire_proof_document_id: Optional[UUID] = None
    notes: Optional[str] = None

    @field_serializer("amount", "funded_amount")
    @classmethod
    def serialize_decimal_as_number(cls, v: Decimal) -> float:
        return float(v)

    model_config = ConfigDict(from_attributes=True)


class TrancheTransitionResult(BaseModel):
    """
    Outcome of a transition attempt.

    Failures are values, not exceptions, so a batch job can log one bad
    tranche and carry on with the rest.
    """

    success: bool
    tranche: Optional[TrancheResponse] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    current_status: Optional[TrancheStatus] = None
    requested_status: Optional[TrancheStatus] = None


class InvestmentResponse(BaseModel):
    id: UUID
    fund_id: UUID
    investor_id: UUID
    commitment_amount: Decimal
    funded_amount: Decimal
    status: InvestmentStatus
    created_at: datetime

    @field_serializer("commitment_amount", "funded_amount")
    @classmethod
    def serialize_decimal_as_number(cls, v: Decimal) -> float:
        return float(v)

    model_config = ConfigDict(from_attributes=True)


class StatusBucket(BaseModel):
    count: int = 0
    amount: Decimal = Decimal("0")
    funded: Decimal = Decimal("0")

    @field_serializer("amount", "funded")
    @classmethod
    def serialize_decimal_as_number(cls, v: Decimal) -> float:
        return float(v)


class TrancheStats(BaseModel):
    """
    Point-in-time aggregate over a fund's funding tranches.

    ``overdue`` counts tranches past their date and still unsettled; it is
    computed from dates, independently of the persisted OVERDUE status.
    """

    fund_id: UUID
    total_tranches: int = 0
    total_scheduled_amount: Decimal = Decimal("0")
    total_funded_amount: Decimal = Decimal("0")
    by_status: Dict[str, StatusBucket] = Field(default_factory=dict)
    upcoming: int = 0
    overdue: int = 0

    @field_serializer("total_scheduled_amount", "total_funded_amount")
    @classmethod
    def serialize_decimal_as_number(cls, v: Decimal) -> float:
        return float(v)


class OverdueSweepResult(BaseModel):
    fund_id: UUID
    auto_marked: bool
    count: int
    tranches: List[TrancheResponse]


class ScheduledTrancheIn(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=20, decimal_places=2, examples=[250000])
    scheduled_date: date = Field(..., examples=["2027-01-15"])


class CommitmentScheduleCreate(BaseModel):
    """
    Schema for ``POST /funds/{fund_id}/commitments``: a commitment split
    into 2–12 scheduled capital-call tranches.
    """

    investor_id: UUID
    total_commitment: Decimal = Field(
        ..., gt=0, le=MAX_COMMITMENT, max_digits=20, decimal_places=2, examples=[1000000]
    )
    tranches: List[ScheduledTrancheIn]

    @field_validator("tranches")
    @classmethod
    def validate_tranche_count_and_order(
        cls, v: List[ScheduledTrancheIn]
    ) -> List[ScheduledTrancheIn]:
        if not MIN_SCHEDULED_TRANCHES <= len(v) <= MAX_SCHEDULED_TRANCHES:
            raise ValueError(
                f"Must have between {MIN_SCHEDULED_TRANCHES} and "
                f"{MAX_SCHEDULED_TRANCHES} tranches"
            )
        horizon = date.today() + timedelta(days=365 * SCHEDULE_HORIZON_YEARS)
        for i, tranche in enumerate(v):
            if tranche.scheduled_date > horizon:
                raise ValueError(
                    f"Tranche dates must be within {SCHEDULE_HORIZON_YEARS} years from today"
                )
            if i > 0 and tranche.scheduled_date <= v[i - 1].scheduled_date:
                raise ValueError("Tranche dates must be in chronological order")
        return v

    @model_validator(mode="after")
    def validate_amounts_match_commitment(self) -> "CommitmentScheduleCreate":
        tranche_sum = sum((t.amount for t in self.tranches), Decimal("0"))
        if abs(tranche_sum - self.total_commitment) > SCHEDULE_SUM_TOLERANCE:
            raise ValueError("Tranche amounts must equal total commitment")
        return self


class CommitmentScheduleResponse(BaseModel):
    investment: InvestmentResponse
    tranches: List[TrancheResponse]
