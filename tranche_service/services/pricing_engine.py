"""
Tranche pricing engine.

A fund's raise is sold through sequential pricing tiers.  The engine is the
only writer of a tier's ``units_available`` and ``is_active`` and of the
fund's ``current_raise`` / ``minimum_investment``:

- **Quoting** is a pure read against the active tier.  A purchase never
  spills into a second tier; a request larger than what the active tier
  holds is unfillable even if later tiers could cover it.
- **Executing** joins the caller's unit of work.  The decrement is a single
  conditional ``UPDATE``; if it matches no row the quote was stale and a
  retriable :class:`CapacityConflictError` is raised, which rolls the whole
  unit of work back.
- **Auto-advance**: when a tier sells out it is deactivated, the
  lowest-numbered tier with remaining units becomes active and the fund's
  minimum investment follows its price.
- ``current_raise`` is recomputed from every tier after each purchase rather
  than incremented, so earlier drift cannot persist.

Caching:
    Tier listings and fund progress are cached per fund.  Writes register a
    post-commit invalidation of that fund's cache prefix.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from tranche_service.core.audit import AuditEvent, AuditSink, default_audit_sink, emit_audit_event
from tranche_service.core.cache import cache, fund_cache_key
from tranche_service.core.config import settings
from tranche_service.core.exceptions import (
    BusinessRuleViolation,
    CapacityConflictError,
    ConflictException,
    NotFoundException,
)
from tranche_service.core.resilience import RetryPolicy, retry_with_backoff
from tranche_service.db.unit_of_work import UnitOfWork
from tranche_service.models.fund import Fund
from tranche_service.models.pricing_tier import PricingTier
from tranche_service.schemas.pricing import (
    ActiveTranche,
    FundProgress,
    PurchaseQuote,
    PurchaseResult,
    TierCreate,
    TierProgress,
    TierResponse,
    TierUpdate,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _percent(part, whole) -> float:
    """``part / whole`` as a percentage rounded to 2 places; 0 when ``whole`` is 0."""
    if not whole or whole <= 0:
        return 0.0
    return float((Decimal(part) / Decimal(whole) * 100).quantize(CENT, rounding=ROUND_HALF_UP))


def _to_active_tranche(tier: PricingTier) -> ActiveTranche:
    return ActiveTranche(
        id=tier.id,
        fund_id=tier.fund_id,
        tranche_number=tier.tranche_number,
        name=tier.display_name,
        price_per_unit=tier.price_per_unit,
        units_available=tier.units_available,
        units_total=tier.units_total,
    )


class PricingEngine:
    """Quotes, executes and reports on tranche-priced purchases for funds."""

    def __init__(self, uow: UnitOfWork, audit: AuditSink = default_audit_sink):
        self._uow = uow
        self._audit = audit

    # ── Queries ──

    async def get_fund(self, fund_id: UUID) -> Fund:
        """Return the fund or raise :class:`NotFoundException`."""
        fund = await self._uow.funds.get(fund_id)
        if fund is None:
            raise NotFoundException("Fund", fund_id)
        return fund

    async def get_active_tranche(self, fund_id: UUID) -> Optional[ActiveTranche]:
        """The tier open for purchase, or ``None`` if the fund is unopened or sold out."""
        tier = await self._uow.tiers.get_active(fund_id)
        if tier is None:
            return None
        return _to_active_tranche(tier)

    async def quote_purchase(self, fund_id: UUID, units_requested: int) -> Optional[PurchaseQuote]:
        """
        Price ``units_requested`` units against the active tier.

        Returns ``None`` when there is no active tier, the request is not
        positive, or it exceeds the active tier's remaining units.  Nothing
        is reserved.
        """
        if units_requested < 1:
            return None

        tier = await self._uow.tiers.get_active(fund_id)
        if tier is None or units_requested > tier.units_available:
            return None

        return PurchaseQuote(
            fund_id=fund_id,
            tier_id=tier.id,
            tranche_number=tier.tranche_number,
            price_per_unit=tier.price_per_unit,
            units_requested=units_requested,
            total_amount=(tier.price_per_unit * units_requested).quantize(CENT),
            units_remaining_after=tier.units_available - units_requested,
        )

    async def get_all_tranches(self, fund_id: UUID) -> List[TierResponse]:
        """All tiers of the fund in selling order (cache-backed)."""
        cache_key = fund_cache_key(fund_id, "tiers")
        cached = cache.get(cache_key)
        if cached is not None:
            return cached

        tiers = await self._uow.tiers.list_by_fund(fund_id)
        result = [TierResponse.model_validate(t) for t in tiers]
        cache.set(cache_key, result)
        return result

    async def get_fund_progress(self, fund_id: UUID) -> Optional[FundProgress]:
        """
        Raise progress across all tiers (cache-backed).

        Returns ``None`` for an unknown fund and zeroed progress for a fund
        with no tiers.  ``percent_raised`` is 0 when the fund has no target.
        """
        cache_key = fund_cache_key(fund_id, "progress")
        cached = cache.get(cache_key)
        if cached is not None:
            return cached

        fund = await self._uow.funds.get(fund_id)
        if fund is None:
            return None

        tiers = await self._uow.tiers.list_by_fund(fund_id)
        total_units = sum(t.units_total for t in tiers)
        units_sold = sum(t.units_sold for t in tiers)
        total_raised = sum((t.amount_raised for t in tiers), Decimal("0")).quantize(CENT)

        active = next((t for t in tiers if t.is_active), None)
        progress = FundProgress(
            fund_id=fund_id,
            total_units=total_units,
            units_sold=units_sold,
            units_available=total_units - units_sold,
            total_raised=total_raised,
            target_raise=fund.target_raise,
            percent_raised=_percent(total_raised, fund.target_raise),
            active_tranche=_to_active_tranche(active) if active else None,
            tranches=[
                TierProgress(
                    tier_id=t.id,
                    tranche_number=t.tranche_number,
                    name=t.display_name,
                    price_per_unit=t.price_per_unit,
                    units_total=t.units_total,
                    units_sold=t.units_sold,
                    units_available=t.units_available,
                    percent_sold=_percent(t.units_sold, t.units_total),
                    amount_raised=t.amount_raised.quantize(CENT),
                    is_active=t.is_active,
                )
                for t in tiers
            ],
        )
        cache.set(cache_key, progress)
        return progress

    # ── Commands ──

    async def execute_purchase(
        self, uow: UnitOfWork, fund_id: UUID, tier_id: UUID, units_purchased: int
    ) -> PricingTier:
        """
        Take ``units_purchased`` units from ``tier_id`` inside ``uow``.

        Raises :class:`NotFoundException` for an unknown fund or tier,
        :class:`BusinessRuleViolation` for a closed fund, a non-positive
        request, or a tier that is not (yet) open, and
        :class:`CapacityConflictError` when the tier no longer holds enough
        units.  Does not commit.
        """
        if units_purchased < 1:
            raise BusinessRuleViolation("A purchase must be for at least one unit")

        fund = await uow.funds.get_for_update(fund_id)
        if fund is None:
            raise NotFoundException("Fund", fund_id)
        if not fund.accepts_capital:
            raise BusinessRuleViolation(f"Fund '{fund.name}' is closed and no longer accepts purchases")

        tier = await uow.tiers.reload(tier_id)
        if tier is None or tier.fund_id != fund_id:
            raise NotFoundException("Pricing tier", tier_id)
        if not tier.is_active and tier.units_available >= units_purchased:
            raise BusinessRuleViolation(
                f"Pricing tier {tier.tranche_number} is not the active tranche for this fund"
            )

        affected = await uow.tiers.decrement_units(tier_id, units_purchased)
        if affected == 0:
            current = await uow.tiers.reload(tier_id)
            if current is None:
                raise NotFoundException("Pricing tier", tier_id)
            logger.warning(
                "Capacity conflict on tier %s: requested %d, available %d",
                tier_id,
                units_purchased,
                current.units_available,
                extra={"fund_id": str(fund_id), "tier_id": str(tier_id)},
            )
            raise CapacityConflictError(tier_id, units_purchased, current.units_available)

        tier = await uow.tiers.reload(tier_id)
        next_tier: Optional[PricingTier] = None
        if tier.units_available <= 0:
            next_tier = await uow.tiers.first_with_capacity(fund_id)
            await self._activate_only(uow, fund, next_tier)

        fund.current_raise = (await uow.tiers.sum_raised(fund_id)).quantize(CENT)
        await uow.funds.save(fund)
        uow.after_commit(lambda: cache.invalidate_fund(fund_id))

        logger.info(
            "Purchase executed: fund %s tier #%d, %d units @ %s (remaining %d)",
            fund_id,
            tier.tranche_number,
            units_purchased,
            tier.price_per_unit,
            tier.units_available,
            extra={"fund_id": str(fund_id), "tier_id": str(tier_id)},
        )
        emit_audit_event(
            self._audit,
            AuditEvent.PURCHASE_EXECUTED,
            fund_id=fund_id,
            tier_id=tier_id,
            tranche_number=tier.tranche_number,
            units=units_purchased,
            price_per_unit=tier.price_per_unit,
            units_remaining=tier.units_available,
        )
        if tier.units_available <= 0:
            if next_tier is not None:
                logger.info(
                    "Fund %s advanced from tranche %d to tranche %d (price %s)",
                    fund_id,
                    tier.tranche_number,
                    next_tier.tranche_number,
                    next_tier.price_per_unit,
                )
                emit_audit_event(
                    self._audit,
                    AuditEvent.TRANCHE_ADVANCED,
                    fund_id=fund_id,
                    from_tranche=tier.tranche_number,
                    to_tranche=next_tier.tranche_number,
                    price_per_unit=next_tier.price_per_unit,
                )
            else:
                logger.info("Fund %s sold out after tranche %d", fund_id, tier.tranche_number)
                emit_audit_event(self._audit, AuditEvent.FUND_SOLD_OUT, fund_id=fund_id)
        return tier

    async def purchase(self, fund_id: UUID, units: int) -> PurchaseResult:
        """
        Quote and execute a purchase, each attempt in its own transaction.

        A :class:`CapacityConflictError` rolls the attempt back and the
        purchase is re-quoted after an exponential backoff, up to
        ``PURCHASE_MAX_RETRIES`` times.  A quote that cannot be filled raises
        :class:`BusinessRuleViolation` and is not retried.
        """
        attempts = 0
        policy = RetryPolicy(
            max_retries=settings.PURCHASE_MAX_RETRIES,
            base_delay=settings.PURCHASE_RETRY_BASE_DELAY,
            max_delay=1.0,
            retryable_exceptions=(CapacityConflictError,),
        )

        @retry_with_backoff(policy)
        async def _attempt() -> PurchaseResult:
            nonlocal attempts
            attempts += 1
            async with self._uow:
                await self.get_fund(fund_id)
                quote = await self.quote_purchase(fund_id, units)
                if quote is None:
                    raise await self.explain_unfillable(fund_id, units)

                tier = await self.execute_purchase(self._uow, fund_id, quote.tier_id, units)
                fund = await self.get_fund(fund_id)
                sold_out = tier.units_available <= 0
                next_active = await self._uow.tiers.get_active(fund_id) if sold_out else None
                return PurchaseResult(
                    fund_id=fund_id,
                    tier_id=tier.id,
                    tranche_number=tier.tranche_number,
                    units_purchased=units,
                    price_per_unit=tier.price_per_unit,
                    total_amount=quote.total_amount,
                    units_remaining=tier.units_available,
                    tier_sold_out=sold_out,
                    next_active_tranche=next_active.tranche_number if next_active else None,
                    fund_current_raise=fund.current_raise,
                    fund_minimum_investment=fund.minimum_investment,
                    attempts=attempts,
                )

        return await _attempt()

    async def create_tier(self, fund_id: UUID, tier_in: TierCreate) -> PricingTier:
        """Add a pricing tier to a fund and reconcile the active flag.  Does not commit."""
        fund = await self._frozen_check(fund_id)

        if await self._uow.tiers.get_by_number(fund_id, tier_in.tranche_number):
            raise ConflictException(
                f"Tier {tier_in.tranche_number} already exists for this fund"
            )
        if await self._uow.tiers.has_sales(fund_id):
            reached = max(
                t.tranche_number
                for t in await self._uow.tiers.list_by_fund(fund_id)
                if t.is_active or t.units_sold > 0
            )
            if tier_in.tranche_number < reached:
                raise BusinessRuleViolation(
                    f"Selling has reached tier {reached}; new tiers must be numbered above it",
                    details={"tranche_number": tier_in.tranche_number, "minimum": reached + 1},
                )

        tier = PricingTier(
            fund_id=fund_id,
            tranche_number=tier_in.tranche_number,
            name=tier_in.name,
            price_per_unit=tier_in.price_per_unit,
            units_total=tier_in.units_total,
            units_available=tier_in.units_total,
            is_active=False,
        )
        try:
            tier = await self._uow.tiers.add(tier)
        except IntegrityError as exc:
            logger.warning("IntegrityError creating tier for fund %s: %s", fund_id, exc)
            raise ConflictException(
                f"Tier {tier_in.tranche_number} already exists for this fund"
            ) from exc

        await self._reconcile_active(self._uow, fund)
        self._uow.after_commit(lambda: cache.invalidate_fund(fund_id))
        logger.info(
            "Created pricing tier #%d for fund %s: %d units @ %s",
            tier.tranche_number,
            fund_id,
            tier.units_total,
            tier.price_per_unit,
        )
        emit_audit_event(
            self._audit,
            AuditEvent.PRICING_TIER_CREATED,
            fund_id=fund_id,
            tier_id=tier.id,
            tranche_number=tier.tranche_number,
        )
        return tier

    async def update_tier(self, tier_id: UUID, tier_in: TierUpdate) -> PricingTier:
        """
        Rename a tier, or change its price / size while nothing has sold.

        Does not commit.
        """
        tier = await self._uow.tiers.reload(tier_id)
        if tier is None:
            raise NotFoundException("Pricing tier", tier_id)
        fund = await self._frozen_check(tier.fund_id)

        changes = tier_in.model_dump(exclude_unset=True)
        economics = {
            k: v for k, v in changes.items() if k in ("price_per_unit", "units_total") and v is not None
        }
        if economics and tier.units_sold > 0:
            raise BusinessRuleViolation(
                f"Pricing tier {tier.tranche_number} has sales; its price and size are locked"
            )

        if "name" in changes:
            name = changes["name"]
            tier.name = name.strip() if name and name.strip() else None
        if "price_per_unit" in economics:
            tier.price_per_unit = economics["price_per_unit"]
        if "units_total" in economics:
            tier.units_total = economics["units_total"]
            tier.units_available = economics["units_total"]
        await self._uow.tiers.save(tier)

        if tier.is_active and "price_per_unit" in economics:
            fund.minimum_investment = tier.price_per_unit
            await self._uow.funds.save(fund)

        fund_id = tier.fund_id
        self._uow.after_commit(lambda: cache.invalidate_fund(fund_id))
        emit_audit_event(
            self._audit,
            AuditEvent.PRICING_TIER_UPDATED,
            fund_id=fund_id,
            tier_id=tier_id,
            changes=changes,
        )
        return tier

    async def delete_tier(self, tier_id: UUID) -> None:
        """Remove a tier that has never sold a unit.  Does not commit."""
        tier = await self._uow.tiers.reload(tier_id)
        if tier is None:
            raise NotFoundException("Pricing tier", tier_id)
        fund_id = tier.fund_id
        fund = await self._frozen_check(fund_id)
        if tier.units_sold > 0:
            raise BusinessRuleViolation(
                f"Pricing tier {tier.tranche_number} has sales and cannot be deleted"
            )

        await self._uow.tiers.delete(tier_id)
        await self._reconcile_active(self._uow, fund)
        self._uow.after_commit(lambda: cache.invalidate_fund(fund_id))
        logger.info("Deleted pricing tier %s of fund %s", tier_id, fund_id)
        emit_audit_event(
            self._audit, AuditEvent.PRICING_TIER_DELETED, fund_id=fund_id, tier_id=tier_id
        )

    async def explain_unfillable(self, fund_id: UUID, units: int) -> BusinessRuleViolation:
        """The 422 error to report when :meth:`quote_purchase` returned ``None``."""
        if units < 1:
            return BusinessRuleViolation("A purchase must be for at least one unit")
        active = await self._uow.tiers.get_active(fund_id)
        if active is None:
            return BusinessRuleViolation(
                "No active pricing tier — fund may be fully subscribed"
            )
        return BusinessRuleViolation(
            f"Only {active.units_available} units available in current tranche "
            f"({active.display_name}) at {active.price_per_unit} per unit",
            details={
                "max_units": active.units_available,
                "price_per_unit": float(active.price_per_unit),
                "units_requested": units,
            },
        )

    # ── Internal helpers ──

    async def _frozen_check(self, fund_id: UUID) -> Fund:
        """Lock the fund row; a Closed fund's tiers can no longer change."""
        fund = await self._uow.funds.get_for_update(fund_id)
        if fund is None:
            raise NotFoundException("Fund", fund_id)
        if not fund.accepts_capital:
            raise BusinessRuleViolation(f"Fund '{fund.name}' is closed; its tiers are frozen")
        return fund

    async def _reconcile_active(self, uow: UnitOfWork, fund: Fund) -> None:
        """
        Restore "exactly the right tier is active" after tier setup changes.

        Once a fund has sales its current active tier is kept; before that,
        the lowest-numbered tier with capacity is made active.
        """
        active = await uow.tiers.list_active(fund.id)
        if active and await uow.tiers.has_sales(fund.id):
            target: Optional[PricingTier] = active[0]
        else:
            target = await uow.tiers.first_with_capacity(fund.id)
        await self._activate_only(uow, fund, target)

    async def _activate_only(
        self, uow: UnitOfWork, fund: Fund, target: Optional[PricingTier]
    ) -> None:
        """Make ``target`` the fund's only active tier (``None`` = no active tier)."""
        for tier in await uow.tiers.list_active(fund.id):
            if target is None or tier.id != target.id:
                tier.is_active = False
                await uow.tiers.save(tier)

        if target is not None:
            target.is_active = True
            await uow.tiers.save(target)
            fund.minimum_investment = target.price_per_unit
            await uow.funds.save(fund)
