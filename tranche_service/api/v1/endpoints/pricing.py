"""
Pricing API endpoints.

Tier setup:
- GET    /funds/{fund_id}/pricing-tiers   — List a fund's pricing tiers
- POST   /funds/{fund_id}/pricing-tiers   — Add a pricing tier
- PATCH  /pricing-tiers/{tier_id}         — Rename / reprice an unsold tier
- DELETE /pricing-tiers/{tier_id}         — Remove an unsold tier

Selling:
- GET    /funds/{fund_id}/active-tranche  — Tier currently open for purchase
- GET    /funds/{fund_id}/quote?units=N   — Advisory quote (reserves nothing)
- POST   /funds/{fund_id}/purchases       — Quote-and-execute with retry
- GET    /funds/{fund_id}/progress        — Raise progress across all tiers
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response

from tranche_service.core.exceptions import NotFoundException
from tranche_service.db.unit_of_work import UnitOfWork, get_uow
from tranche_service.schemas.common import ConflictResponse, ErrorResponse, ValidationErrorResponse
from tranche_service.schemas.pricing import (
    ActiveTranche,
    FundProgress,
    PurchaseQuote,
    PurchaseRequest,
    PurchaseResult,
    TierCreate,
    TierResponse,
    TierUpdate,
)
from tranche_service.services.pricing_engine import PricingEngine

router = APIRouter()


# ── Dependency injection ──


def _get_pricing_engine(uow: UnitOfWork = Depends(get_uow)) -> PricingEngine:
    """Build a PricingEngine wired to the current request's unit of work."""
    return PricingEngine(uow)


# ── Tier setup ──


@router.get(
    "/funds/{fund_id}/pricing-tiers",
    response_model=List[TierResponse],
    summary="List pricing tiers",
    description="All pricing tiers of the fund in selling order (ascending tranche number).",
    responses={404: {"model": ErrorResponse, "description": "Fund not found"}},
)
async def list_pricing_tiers(
    fund_id: UUID,
    engine: PricingEngine = Depends(_get_pricing_engine),
) -> List[TierResponse]:
    await engine.get_fund(fund_id)
    return await engine.get_all_tranches(fund_id)


@router.post(
    "/funds/{fund_id}/pricing-tiers",
    response_model=TierResponse,
    status_code=201,
    summary="Add a pricing tier",
    description=(
        "Creates a tier with all units available.  Until the fund's first "
        "sale, the lowest-numbered tier with capacity is the active one."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Fund not found"},
        409: {"model": ErrorResponse, "description": "Tranche number already used"},
        422: {"model": ValidationErrorResponse, "description": "Validation error"},
    },
)
async def create_pricing_tier(
    fund_id: UUID,
    tier_in: TierCreate,
    engine: PricingEngine = Depends(_get_pricing_engine),
    uow: UnitOfWork = Depends(get_uow),
) -> TierResponse:
    async with uow:
        tier = await engine.create_tier(fund_id, tier_in)
    return tier


@router.patch(
    "/pricing-tiers/{tier_id}",
    response_model=TierResponse,
    summary="Update a pricing tier",
    description="Price and size can only change while the tier has no sales.",
    responses={
        404: {"model": ErrorResponse, "description": "Tier not found"},
        422: {"model": ErrorResponse, "description": "Tier already has sales"},
    },
)
async def update_pricing_tier(
    tier_id: UUID,
    tier_in: TierUpdate,
    engine: PricingEngine = Depends(_get_pricing_engine),
    uow: UnitOfWork = Depends(get_uow),
) -> TierResponse:
    async with uow:
        tier = await engine.update_tier(tier_id, tier_in)
    return tier


@router.delete(
    "/pricing-tiers/{tier_id}",
    status_code=204,
    response_class=Response,
    summary="Delete an unsold pricing tier",
    responses={
        404: {"model": ErrorResponse, "description": "Tier not found"},
        422: {"model": ErrorResponse, "description": "Tier already has sales"},
    },
)
async def delete_pricing_tier(
    tier_id: UUID,
    engine: PricingEngine = Depends(_get_pricing_engine),
    uow: UnitOfWork = Depends(get_uow),
) -> Response:
    async with uow:
        await engine.delete_tier(tier_id)
    return Response(status_code=204)


# ── Selling ──


@router.get(
    "/funds/{fund_id}/active-tranche",
    response_model=Optional[ActiveTranche],
    summary="Get the active tranche",
    description="``null`` when the fund has no tiers yet or is fully subscribed.",
    responses={404: {"model": ErrorResponse, "description": "Fund not found"}},
)
async def get_active_tranche(
    fund_id: UUID,
    engine: PricingEngine = Depends(_get_pricing_engine),
) -> Optional[ActiveTranche]:
    await engine.get_fund(fund_id)
    return await engine.get_active_tranche(fund_id)


@router.get(
    "/funds/{fund_id}/quote",
    response_model=PurchaseQuote,
    summary="Quote a purchase",
    description=(
        "Prices the requested units against the active tranche.  A quote "
        "never spans two tranches and reserves nothing: it can go stale."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Fund not found"},
        422: {"model": ErrorResponse, "description": "Request cannot be filled"},
    },
)
async def quote_purchase(
    fund_id: UUID,
    units: int = Query(..., description="Units to price"),
    engine: PricingEngine = Depends(_get_pricing_engine),
) -> PurchaseQuote:
    await engine.get_fund(fund_id)
    quote = await engine.quote_purchase(fund_id, units)
    if quote is None:
        raise await engine.explain_unfillable(fund_id, units)
    return quote


@router.post(
    "/funds/{fund_id}/purchases",
    response_model=PurchaseResult,
    status_code=201,
    summary="Purchase units",
    description=(
        "Quotes and executes atomically.  A concurrent purchase that drains "
        "the tranche first causes an automatic re-quote; if capacity is still "
        "contested after the configured retries the request fails with a "
        "retriable 409."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Fund not found"},
        409: {"model": ConflictResponse, "description": "Capacity conflict (retriable)"},
        422: {"model": ErrorResponse, "description": "Request cannot be filled"},
    },
)
async def purchase_units(
    fund_id: UUID,
    body: PurchaseRequest,
    engine: PricingEngine = Depends(_get_pricing_engine),
) -> PurchaseResult:
    return await engine.purchase(fund_id, body.units)


@router.get(
    "/funds/{fund_id}/progress",
    response_model=FundProgress,
    summary="Get raise progress",
    responses={404: {"model": ErrorResponse, "description": "Fund not found"}},
)
async def get_fund_progress(
    fund_id: UUID,
    engine: PricingEngine = Depends(_get_pricing_engine),
) -> FundProgress:
    progress = await engine.get_fund_progress(fund_id)
    if progress is None:
        raise NotFoundException("Fund", fund_id)
    return progress
