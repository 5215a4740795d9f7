"""
V1 API router aggregation.

All versioned endpoint routers are mounted here under a common prefix.
The top-level ``main.py`` mounts this router at ``/api/v1``.
"""

from fastapi import APIRouter

from tranche_service.api.v1.endpoints import funds, pricing, tranches

api_router = APIRouter()

api_router.include_router(funds.router, prefix="/funds", tags=["Funds"])

# Pricing and tranche routers define their own full paths (/funds/{fund_id}/...,
# /pricing-tiers/..., /tranches/...) so they are mounted at the v1 root.
api_router.include_router(pricing.router, tags=["Pricing"])
api_router.include_router(tranches.router, tags=["Funding Tranches"])
