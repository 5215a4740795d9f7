"""
Fund API endpoints.

- GET    /funds                  — List funds
- POST   /funds                  — Create a new fund
- GET    /funds/{id}             — Retrieve a specific fund
- PATCH  /funds/{id}/status      — Move a fund forward in its lifecycle
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from tranche_service.db.unit_of_work import UnitOfWork, get_uow
from tranche_service.schemas.common import ErrorResponse, ValidationErrorResponse
from tranche_service.schemas.fund import FundCreate, FundResponse, FundStatusUpdate
from tranche_service.services.fund_service import FundService

router = APIRouter()


# ── Dependency injection ──
# Each request gets its own unit of work; FastAPI resolves ``get_uow`` once
# per request, so the service and the endpoint's ``async with uow`` share it.


def _get_fund_service(uow: UnitOfWork = Depends(get_uow)) -> FundService:
    """Build a FundService wired to the current request's unit of work."""
    return FundService(uow)


# ── Endpoints ──


@router.get(
    "",
    response_model=List[FundResponse],
    summary="List funds",
)
async def list_funds(
    skip: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(100, ge=1, le=1000, description="Max records to return"),
    service: FundService = Depends(_get_fund_service),
) -> List[FundResponse]:
    return await service.get_all_funds(skip=skip, limit=limit)


@router.post(
    "",
    response_model=FundResponse,
    status_code=201,
    summary="Create a new fund",
    responses={
        422: {"model": ValidationErrorResponse, "description": "Validation error"},
    },
)
async def create_fund(
    fund: FundCreate,
    service: FundService = Depends(_get_fund_service),
    uow: UnitOfWork = Depends(get_uow),
) -> FundResponse:
    async with uow:
        created = await service.create_fund(fund)
    return created


@router.get(
    "/{fund_id}",
    response_model=FundResponse,
    summary="Get a specific fund",
    responses={
        404: {"model": ErrorResponse, "description": "Fund not found"},
    },
)
async def get_fund(
    fund_id: UUID,
    service: FundService = Depends(_get_fund_service),
) -> FundResponse:
    return await service.get_fund(fund_id)


@router.patch(
    "/{fund_id}/status",
    response_model=FundResponse,
    summary="Advance a fund's status",
    description=(
        "Fund lifecycle is one-way: Fundraising → Investing → Closed. "
        "A Closed fund accepts no purchases and no new commitments."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Fund not found"},
        422: {"model": ErrorResponse, "description": "Backwards status transition"},
    },
)
async def update_fund_status(
    fund_id: UUID,
    body: FundStatusUpdate,
    service: FundService = Depends(_get_fund_service),
    uow: UnitOfWork = Depends(get_uow),
) -> FundResponse:
    async with uow:
        fund = await service.update_fund_status(fund_id, body.status)
    return fund
