"""SQLModel table models — import here so metadata is populated."""

from tranche_service.models.fund import Fund  # noqa: F401
from tranche_service.models.investment import Investment  # noqa: F401
from tranche_service.models.investment_tranche import InvestmentTranche  # noqa: F401
from tranche_service.models.pricing_tier import PricingTier  # noqa: F401
