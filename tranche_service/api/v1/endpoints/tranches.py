"""
Funding-tranche API endpoints.

Commitments:
- POST   /funds/{fund_id}/commitments                 — Staged commitment + tranches
- GET    /investments/{investment_id}/tranches        — An investment's tranches
- POST   /investments/{investment_id}/recalculate     — Re-derive funded amount

Fund-wide views (GP dashboard):
- GET    /funds/{fund_id}/tranches                    — Filterable tranche list
- GET    /funds/{fund_id}/tranche-stats               — Aggregates by status
- POST   /funds/{fund_id}/tranches/detect-overdue     — Overdue sweep

Single tranche:
- GET    /tranches/{tranche_id}
- POST   /tranches/{tranche_id}/transition
"""

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from tranche_service.core.exceptions import (
    BusinessRuleViolation,
    ConflictException,
    NotFoundException,
)
from tranche_service.db.unit_of_work import UnitOfWork, get_uow
from tranche_service.models.investment_tranche import TrancheStatus
from tranche_service.schemas.common import ErrorResponse, ValidationErrorResponse
from tranche_service.schemas.tranche import (
    CommitmentScheduleCreate,
    CommitmentScheduleResponse,
    InvestmentResponse,
    OverdueSweepResult,
    TrancheResponse,
    TrancheStats,
    TrancheTransitionRequest,
    TrancheTransitionResult,
)
from tranche_service.services.tranche_lifecycle import (
    TrancheLifecycleService,
    TransitionErrorCode,
)

router = APIRouter()


# ── Dependency injection ──


def _get_lifecycle_service(uow: UnitOfWork = Depends(get_uow)) -> TrancheLifecycleService:
    """Build a TrancheLifecycleService wired to the current request's unit of work."""
    return TrancheLifecycleService(uow)


# ── Commitments ──


@router.post(
    "/funds/{fund_id}/commitments",
    response_model=CommitmentScheduleResponse,
    status_code=201,
    summary="Create a staged commitment",
    description=(
        "Splits an investor's commitment into 2–12 scheduled tranches.  "
        "Tranche amounts must sum to the commitment and dates must be in "
        "chronological order."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Fund not found"},
        409: {"model": ErrorResponse, "description": "Investor already committed"},
        422: {"model": ValidationErrorResponse, "description": "Validation error"},
    },
)
async def create_commitment(
    fund_id: UUID,
    schedule_in: CommitmentScheduleCreate,
    service: TrancheLifecycleService = Depends(_get_lifecycle_service),
    uow: UnitOfWork = Depends(get_uow),
) -> CommitmentScheduleResponse:
    async with uow:
        investment, tranches = await service.schedule_commitment(fund_id, schedule_in)
    return CommitmentScheduleResponse(
        investment=InvestmentResponse.model_validate(investment),
        tranches=[TrancheResponse.model_validate(t) for t in tranches],
    )


@router.get(
    "/investments/{investment_id}/tranches",
    response_model=List[TrancheResponse],
    summary="List an investment's tranches",
    responses={404: {"model": ErrorResponse, "description": "Investment not found"}},
)
async def list_investment_tranches(
    investment_id: UUID,
    service: TrancheLifecycleService = Depends(_get_lifecycle_service),
) -> List[TrancheResponse]:
    await service.get_investment(investment_id)
    return await service.get_investment_tranches(investment_id)


@router.post(
    "/investments/{investment_id}/recalculate",
    response_model=InvestmentResponse,
    summary="Recalculate an investment's funded amount",
    description="Re-sums funded amounts over all tranches.  Safe to repeat.",
    responses={404: {"model": ErrorResponse, "description": "Investment not found"}},
)
async def recalculate_investment(
    investment_id: UUID,
    service: TrancheLifecycleService = Depends(_get_lifecycle_service),
    uow: UnitOfWork = Depends(get_uow),
) -> InvestmentResponse:
    async with uow:
        investment = await service.recalculate_investment_funded(investment_id)
    return investment


# ── Fund-wide views ──


@router.get(
    "/funds/{fund_id}/tranches",
    response_model=List[TrancheResponse],
    summary="List a fund's tranches",
    description="Soonest due first.  Date bounds are inclusive.",
    responses={404: {"model": ErrorResponse, "description": "Fund not found"}},
)
async def list_fund_tranches(
    fund_id: UUID,
    status: Optional[TrancheStatus] = Query(None),
    due_before: Optional[date] = Query(None),
    due_after: Optional[date] = Query(None),
    service: TrancheLifecycleService = Depends(_get_lifecycle_service),
) -> List[TrancheResponse]:
    await service.get_fund(fund_id)
    return await service.get_fund_tranches(
        fund_id, status=status, due_before=due_before, due_after=due_after
    )


@router.get(
    "/funds/{fund_id}/tranche-stats",
    response_model=TrancheStats,
    summary="Get tranche statistics for a fund",
    responses={404: {"model": ErrorResponse, "description": "Fund not found"}},
)
async def get_fund_tranche_stats(
    fund_id: UUID,
    service: TrancheLifecycleService = Depends(_get_lifecycle_service),
) -> TrancheStats:
    await service.get_fund(fund_id)
    return await service.get_fund_tranche_stats(fund_id)


@router.post(
    "/funds/{fund_id}/tranches/detect-overdue",
    response_model=OverdueSweepResult,
    summary="Detect overdue tranches",
    description=(
        "Returns SCHEDULED / CALLED tranches past their due date.  With "
        "``auto_mark=true`` they are moved to OVERDUE in one batch write.  "
        "Intended to be called by an external scheduler."
    ),
    responses={404: {"model": ErrorResponse, "description": "Fund not found"}},
)
async def detect_overdue_tranches(
    fund_id: UUID,
    auto_mark: bool = Query(False),
    service: TrancheLifecycleService = Depends(_get_lifecycle_service),
    uow: UnitOfWork = Depends(get_uow),
) -> OverdueSweepResult:
    async with uow:
        await service.get_fund(fund_id)
        tranches = await service.detect_overdue_tranches(fund_id, auto_mark=auto_mark)
    return OverdueSweepResult(
        fund_id=fund_id,
        auto_marked=auto_mark,
        count=len(tranches),
        tranches=[TrancheResponse.model_validate(t) for t in tranches],
    )


# ── Single tranche ──


@router.get(
    "/tranches/{tranche_id}",
    response_model=TrancheResponse,
    summary="Get a tranche",
    responses={404: {"model": ErrorResponse, "description": "Tranche not found"}},
)
async def get_tranche(
    tranche_id: UUID,
    service: TrancheLifecycleService = Depends(_get_lifecycle_service),
) -> TrancheResponse:
    tranche = await service.get_tranche(tranche_id)
    if tranche is None:
        raise NotFoundException("Tranche", tranche_id)
    return tranche


@router.post(
    "/tranches/{tranche_id}/transition",
    response_model=TrancheTransitionResult,
    summary="Transition a tranche's status",
    description=(
        "Applies one edge of the tranche status machine.  FUNDED, "
        "PARTIALLY_FUNDED and CANCELLED recalculate the owning investment's "
        "funded amount in the same transaction."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Tranche not found"},
        409: {"model": ErrorResponse, "description": "Tranche moved concurrently"},
        422: {"model": ErrorResponse, "description": "Invalid transition or amount"},
    },
)
async def transition_tranche(
    tranche_id: UUID,
    body: TrancheTransitionRequest,
    service: TrancheLifecycleService = Depends(_get_lifecycle_service),
    uow: UnitOfWork = Depends(get_uow),
) -> TrancheTransitionResult:
    async with uow:
        result = await service.transition_tranche_status(
            tranche_id, body.status, body.options()
        )
        if not result.success:
            if result.error_code == TransitionErrorCode.NOT_FOUND:
                raise NotFoundException("Tranche", tranche_id)
            details = result.model_dump(
                mode="json", include={"error_code", "current_status", "requested_status"}
            )
            if result.error_code == TransitionErrorCode.CONFLICT:
                raise ConflictException(result.error or "Tranche moved concurrently", details)
            raise BusinessRuleViolation(result.error or "Transition rejected", details)
    return result
