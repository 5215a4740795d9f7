"""
Investment tranche (funding tranche) domain model.

A staged commitment is split into scheduled capital-call installments.  Each
row moves through the status machine defined in
:mod:`tranche_service.services.tranche_lifecycle`; rows are never deleted,
CANCELLED is the terminal "voided" state.
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import CheckConstraint, DateTime, Index, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from tranche_service.models.investment import Investment


class TrancheStatus(str, Enum):
    """Lifecycle states of a funding tranche."""

    SCHEDULED = "SCHEDULED"
    CALLED = "CALLED"
    PARTIALLY_FUNDED = "PARTIALLY_FUNDED"
    FUNDED = "FUNDED"
    OVERDUE = "OVERDUE"
    DEFAULTED = "DEFAULTED"
    CANCELLED = "CANCELLED"


class InvestmentTranche(SQLModel, table=True):
    """
    SQLModel / SQLAlchemy table definition for investment tranches.

    - ``scheduled_date`` is a calendar date: a tranche is overdue from the
      day after it was due.
    - ``called_date`` / ``funded_date`` / ``overdue_date`` are stamped by the
      transition that enters the corresponding status.
    - ``capital_call_id`` and ``wire_proof_document_id`` point at entities
      owned by other services and are never interpreted here.
    """

    __tablename__ = "investment_tranches"  # type: ignore[assignment]

    __table_args__ = (
        UniqueConstraint(
            "investment_id", "tranche_number", name="uq_investment_tranches_number"
        ),
        # Covers overdue detection: WHERE status IN (...) AND scheduled_date < ?
        Index("ix_investment_tranches_status_date", "status", "scheduled_date"),
        CheckConstraint("amount > 0", name="ck_investment_tranches_amount_positive"),
        CheckConstraint(
            "funded_amount >= 0", name="ck_investment_tranches_funded_non_negative"
        ),
        CheckConstraint(
            "funded_amount <= amount", name="ck_investment_tranches_funded_within_amount"
        ),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    investment_id: uuid.UUID = Field(
        foreign_key="investments.id", index=True, ondelete="RESTRICT"
    )
    tranche_number: int
    amount: Decimal = Field(max_digits=20, decimal_places=2)
    funded_amount: Decimal = Field(default=Decimal("0"), max_digits=20, decimal_places=2)
    status: TrancheStatus = Field(default=TrancheStatus.SCHEDULED)
    scheduled_date: date = Field(index=True)
    called_date: Optional[datetime] = Field(
        default=None, sa_type=DateTime(timezone=True)  # type: ignore[arg-type]
    )
    funded_date: Optional[datetime] = Field(
        default=None, sa_type=DateTime(timezone=True)  # type: ignore[arg-type]
    )
    overdue_date: Optional[datetime] = Field(
        default=None, sa_type=DateTime(timezone=True)  # type: ignore[arg-type]
    )
    capital_call_id: Optional[uuid.UUID] = Field(default=None, index=True)
    wire_proof_document_id: Optional[uuid.UUID] = Field(default=None)
    notes: Optional[str] = Field(default=None, max_length=2000)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        nullable=False,
        sa_type=DateTime(timezone=True),  # type: ignore[arg-type]
    )

    investment: Optional["Investment"] = Relationship(back_populates="tranches")

    def __repr__(self) -> str:
        return (
            f"<InvestmentTranche id={self.id} investment={self.investment_id} "
            f"#{self.tranche_number} status={self.status.value} "
            f"funded=${self.funded_amount}/{self.amount}>"
        )
