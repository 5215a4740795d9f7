"""
Database model registry.

Importing this module registers every table model with SQLModel's metadata,
which is required before calling ``create_all()``.
"""

from tranche_service.models.fund import Fund  # noqa: F401
from tranche_service.models.investment import Investment  # noqa: F401
from tranche_service.models.investment_tranche import InvestmentTranche  # noqa: F401
from tranche_service.models.pricing_tier import PricingTier  # noqa: F401
