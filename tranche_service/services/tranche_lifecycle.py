"""
Funding-tranche lifecycle manager.

An investor's commitment is split into scheduled capital-call tranches.
This service moves each tranche through the status machine below, keeps the
owning investment's ``funded_amount`` equal to the sum over its tranches,
and finds tranches that have slipped past their due date.

Status machine::

    SCHEDULED         -> CALLED, PARTIALLY_FUNDED, FUNDED, OVERDUE, CANCELLED
    CALLED            -> PARTIALLY_FUNDED, FUNDED, OVERDUE, CANCELLED
    PARTIALLY_FUNDED  -> FUNDED, OVERDUE, CANCELLED
    OVERDUE           -> PARTIALLY_FUNDED, FUNDED, DEFAULTED, CANCELLED
    DEFAULTED         -> CANCELLED
    FUNDED, CANCELLED    terminal

Mutations join the caller's unit of work and never commit.  Rejected
transitions are returned as ``TrancheTransitionResult(success=False)`` so a
batch job can carry on past one bad tranche.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from tranche_service.core.audit import AuditEvent, AuditSink, default_audit_sink, emit_audit_event
from tranche_service.core.config import settings
from tranche_service.core.exceptions import (
    BusinessRuleViolation,
    ConflictException,
    NotFoundException,
)
from tranche_service.db.unit_of_work import UnitOfWork
from tranche_service.models.fund import Fund
from tranche_service.models.investment import Investment, InvestmentStatus
from tranche_service.models.investment_tranche import InvestmentTranche, TrancheStatus
from tranche_service.schemas.tranche import (
    CommitmentScheduleCreate,
    StatusBucket,
    TrancheResponse,
    TrancheStats,
    TrancheTransitionResult,
    TransitionOptions,
)

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: Dict[TrancheStatus, FrozenSet[TrancheStatus]] = {
    TrancheStatus.SCHEDULED: frozenset(
        {
            TrancheStatus.CALLED,
            TrancheStatus.PARTIALLY_FUNDED,
            TrancheStatus.FUNDED,
            TrancheStatus.OVERDUE,
            TrancheStatus.CANCELLED,
        }
    ),
    TrancheStatus.CALLED: frozenset(
        {
            TrancheStatus.PARTIALLY_FUNDED,
            TrancheStatus.FUNDED,
            TrancheStatus.OVERDUE,
            TrancheStatus.CANCELLED,
        }
    ),
    TrancheStatus.PARTIALLY_FUNDED: frozenset(
        {TrancheStatus.FUNDED, TrancheStatus.OVERDUE, TrancheStatus.CANCELLED}
    ),
    TrancheStatus.FUNDED: frozenset(),
    TrancheStatus.OVERDUE: frozenset(
        {
            TrancheStatus.PARTIALLY_FUNDED,
            TrancheStatus.FUNDED,
            TrancheStatus.DEFAULTED,
            TrancheStatus.CANCELLED,
        }
    ),
    # Only an explicit write-off clears a default.
    TrancheStatus.DEFAULTED: frozenset({TrancheStatus.CANCELLED}),
    TrancheStatus.CANCELLED: frozenset(),
}

SETTLED_STATUSES = frozenset({TrancheStatus.FUNDED, TrancheStatus.CANCELLED})
# Transitions after which the investment's funded total / status is recomputed.
RECALCULATE_ON = frozenset(
    {TrancheStatus.FUNDED, TrancheStatus.PARTIALLY_FUNDED, TrancheStatus.CANCELLED}
)
NOT_OVERDUE_STATUSES = frozenset(
    {TrancheStatus.FUNDED, TrancheStatus.CANCELLED, TrancheStatus.DEFAULTED}
)


class TransitionErrorCode:
    NOT_FOUND = "NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    CONFLICT = "CONFLICT"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_transition(current: TrancheStatus, requested: TrancheStatus) -> bool:
    return requested in VALID_TRANSITIONS.get(current, frozenset())


class TrancheLifecycleService:
    """Status transitions, funded-amount aggregation and overdue detection."""

    def __init__(
        self,
        uow: UnitOfWork,
        audit: AuditSink = default_audit_sink,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._uow = uow
        self._audit = audit
        self._clock = clock

    # ── Queries ──

    async def get_fund(self, fund_id: UUID) -> Fund:
        fund = await self._uow.funds.get(fund_id)
        if fund is None:
            raise NotFoundException("Fund", fund_id)
        return fund

    async def get_investment(self, investment_id: UUID) -> Investment:
        investment = await self._uow.investments.get(investment_id)
        if investment is None:
            raise NotFoundException("Investment", investment_id)
        return investment

    async def get_investment_tranches(self, investment_id: UUID) -> List[InvestmentTranche]:
        """Tranches of one investment by ascending tranche number."""
        return await self._uow.tranches.list_by_investment(investment_id)

    async def get_tranche(self, tranche_id: UUID) -> Optional[InvestmentTranche]:
        return await self._uow.tranches.get(tranche_id)

    async def get_fund_tranches(
        self,
        fund_id: UUID,
        status: Optional[TrancheStatus] = None,
        due_before: Optional[date] = None,
        due_after: Optional[date] = None,
    ) -> List[InvestmentTranche]:
        """Tranches across all of a fund's investments, soonest due first."""
        return await self._uow.tranches.list_by_fund(
            fund_id, status=status, due_before=due_before, due_after=due_after
        )

    async def get_fund_tranche_stats(self, fund_id: UUID) -> TrancheStats:
        """
        Point-in-time aggregate over a fund's tranches.

        ``upcoming`` counts unsettled tranches due within the next
        ``UPCOMING_WINDOW_DAYS`` days (today included); ``overdue`` counts
        tranches past due and not FUNDED, CANCELLED or DEFAULTED, whatever
        their persisted status.
        """
        tranches = await self._uow.tranches.list_by_fund(fund_id)
        today = self._clock().date()
        window_end = today + timedelta(days=settings.UPCOMING_WINDOW_DAYS)

        stats = TrancheStats(fund_id=fund_id, total_tranches=len(tranches))
        for t in tranches:
            stats.total_scheduled_amount += t.amount
            stats.total_funded_amount += t.funded_amount

            bucket = stats.by_status.setdefault(t.status.value, StatusBucket())
            bucket.count += 1
            bucket.amount += t.amount
            bucket.funded += t.funded_amount

            if today <= t.scheduled_date <= window_end and t.status not in SETTLED_STATUSES:
                stats.upcoming += 1
            if t.scheduled_date < today and t.status not in NOT_OVERDUE_STATUSES:
                stats.overdue += 1
        return stats

    # ── Commands ──

    async def transition_tranche_status(
        self,
        tranche_id: UUID,
        new_status: TrancheStatus,
        options: Optional[TransitionOptions] = None,
    ) -> TrancheTransitionResult:
        """
        Move a tranche to ``new_status``, stamping the matching date field.

        Returns a failure result for an unknown tranche, an edge not in
        :data:`VALID_TRANSITIONS`, or a funded amount outside
        ``(0, amount]`` (``(0, amount)`` for PARTIALLY_FUNDED).  The write
        is conditional on the status that was validated, so a transaction
        that moved the tranche first wins and this call returns a
        ``CONFLICT`` result.  Funding transitions recalculate the owning
        investment in the same unit of work.
        """
        options = options or TransitionOptions()
        tranche = await self._uow.tranches.reload(tranche_id, for_update=True)
        if tranche is None:
            return TrancheTransitionResult(
                success=False,
                error="Tranche not found",
                error_code=TransitionErrorCode.NOT_FOUND,
                requested_status=new_status,
            )

        current = tranche.status
        if not is_valid_transition(current, new_status):
            return TrancheTransitionResult(
                success=False,
                error=f"Cannot transition from {current.value} to {new_status.value}",
                error_code=TransitionErrorCode.INVALID_TRANSITION,
                current_status=current,
                requested_status=new_status,
            )

        amount_error = self._check_funded_amount(tranche, new_status, options.funded_amount)
        if amount_error:
            return TrancheTransitionResult(
                success=False,
                error=amount_error,
                error_code=TransitionErrorCode.INVALID_AMOUNT,
                current_status=current,
                requested_status=new_status,
            )

        values = self._transition_values(tranche, new_status, options, self._clock())
        affected = await self._uow.tranches.update_if_status(tranche_id, current, values)
        if affected == 0:
            latest = await self._uow.tranches.reload(tranche_id)
            logger.warning(
                "Tranche %s moved concurrently; %s -> %s not applied",
                tranche_id,
                current.value,
                new_status.value,
                extra={"tranche_id": str(tranche_id)},
            )
            return TrancheTransitionResult(
                success=False,
                error=f"Tranche is no longer {current.value}; re-read it and retry",
                error_code=TransitionErrorCode.CONFLICT,
                current_status=latest.status if latest else None,
                requested_status=new_status,
            )

        tranche = await self._uow.tranches.reload(tranche_id)
        if new_status in RECALCULATE_ON:
            await self.recalculate_investment_funded(tranche.investment_id)

        logger.info(
            "Tranche %s (#%d) transitioned %s -> %s",
            tranche_id,
            tranche.tranche_number,
            current.value,
            new_status.value,
            extra={"tranche_id": str(tranche_id), "investment_id": str(tranche.investment_id)},
        )
        emit_audit_event(
            self._audit,
            AuditEvent.TRANCHE_TRANSITIONED,
            tranche_id=tranche_id,
            investment_id=tranche.investment_id,
            from_status=current.value,
            to_status=new_status.value,
            funded_amount=tranche.funded_amount,
        )
        return TrancheTransitionResult(
            success=True,
            tranche=TrancheResponse.model_validate(tranche),
            current_status=new_status,
            requested_status=new_status,
        )

    async def recalculate_investment_funded(self, investment_id: UUID) -> Investment:
        """
        Re-sum ``funded_amount`` over the investment's tranches and persist it.

        The investment becomes FUNDED once it has tranches and every one of
        them is FUNDED or CANCELLED.  Evaluated from scratch, so repeated
        calls are idempotent.
        """
        investment = await self._uow.investments.reload(investment_id, for_update=True)
        if investment is None:
            raise NotFoundException("Investment", investment_id)

        tranches = await self._uow.tranches.list_by_investment(investment_id)
        investment.funded_amount = await self._uow.tranches.sum_funded(investment_id)
        if (
            tranches
            and all(t.status in SETTLED_STATUSES for t in tranches)
            and investment.status != InvestmentStatus.CANCELLED
        ):
            investment.status = InvestmentStatus.FUNDED
        await self._uow.investments.save(investment)

        logger.debug(
            "Investment %s funded %s / %s (%s)",
            investment_id,
            investment.funded_amount,
            investment.commitment_amount,
            investment.status.value,
        )
        return investment

    async def detect_overdue_tranches(
        self, fund_id: UUID, auto_mark: bool = False
    ) -> List[InvestmentTranche]:
        """
        SCHEDULED / CALLED tranches of the fund due before today.

        PARTIALLY_FUNDED tranches are never flagged.  With ``auto_mark`` the
        matches are moved to OVERDUE in one bulk write and returned fresh.
        """
        now = self._clock()
        overdue = await self._uow.tranches.find_overdue_candidates(fund_id, now.date())
        if not auto_mark or not overdue:
            return overdue

        ids = [t.id for t in overdue]
        marked = await self._uow.tranches.bulk_mark_overdue(ids, now)
        logger.info(
            "Marked %d of %d overdue tranches for fund %s",
            marked,
            len(ids),
            fund_id,
            extra={"fund_id": str(fund_id)},
        )
        emit_audit_event(
            self._audit,
            AuditEvent.TRANCHES_MARKED_OVERDUE,
            fund_id=fund_id,
            count=marked,
            tranche_ids=[str(i) for i in ids],
        )
        return await self._uow.tranches.list_by_ids(ids)

    async def schedule_commitment(
        self, fund_id: UUID, schedule_in: CommitmentScheduleCreate
    ) -> Tuple[Investment, List[InvestmentTranche]]:
        """
        Create an investment and its scheduled tranches in one unit of work.

        Raises :class:`NotFoundException` for an unknown fund,
        :class:`BusinessRuleViolation` for a closed fund and
        :class:`ConflictException` if the investor already has a commitment
        in the fund.
        """
        fund = await self.get_fund(fund_id)
        if not fund.accepts_capital:
            raise BusinessRuleViolation(
                f"Fund '{fund.name}' is closed and no longer accepts commitments"
            )

        existing = await self._uow.investments.get_by_fund_and_investor(
            fund_id, schedule_in.investor_id
        )
        if existing is not None:
            raise ConflictException(
                "Investor already has a commitment in this fund",
                details={"investment_id": str(existing.id)},
            )

        try:
            investment = await self._uow.investments.add(
                Investment(
                    fund_id=fund_id,
                    investor_id=schedule_in.investor_id,
                    commitment_amount=schedule_in.total_commitment,
                    funded_amount=Decimal("0"),
                    status=InvestmentStatus.COMMITTED,
                )
            )
            tranches = []
            for number, planned in enumerate(schedule_in.tranches, start=1):
                tranches.append(
                    await self._uow.tranches.add(
                        InvestmentTranche(
                            investment_id=investment.id,
                            tranche_number=number,
                            amount=planned.amount,
                            scheduled_date=planned.scheduled_date,
                            status=TrancheStatus.SCHEDULED,
                        )
                    )
                )
        except IntegrityError as exc:
            logger.warning("IntegrityError scheduling commitment in fund %s: %s", fund_id, exc)
            raise ConflictException("Commitment conflicts with existing data") from exc

        logger.info(
            "Scheduled commitment %s for investor %s in fund %s: %s over %d tranches",
            investment.id,
            schedule_in.investor_id,
            fund_id,
            schedule_in.total_commitment,
            len(tranches),
            extra={"fund_id": str(fund_id), "investment_id": str(investment.id)},
        )
        emit_audit_event(
            self._audit,
            AuditEvent.COMMITMENT_SCHEDULED,
            fund_id=fund_id,
            investment_id=investment.id,
            investor_id=schedule_in.investor_id,
            total_commitment=schedule_in.total_commitment,
            tranche_count=len(tranches),
        )
        return investment, tranches

    # ── Internal helpers ──

    @staticmethod
    def _transition_values(
        tranche: InvestmentTranche,
        new_status: TrancheStatus,
        options: TransitionOptions,
        now: datetime,
    ) -> Dict[str, Any]:
        """Column values written by one transition, date stamps included."""
        values: Dict[str, Any] = {"status": new_status}
        if options.notes:
            values["notes"] = options.notes
        if options.capital_call_id:
            values["capital_call_id"] = options.capital_call_id
        if options.wire_proof_document_id:
            values["wire_proof_document_id"] = options.wire_proof_document_id

        if new_status == TrancheStatus.CALLED:
            if tranche.called_date is None:
                values["called_date"] = now
        elif new_status == TrancheStatus.PARTIALLY_FUNDED:
            values["funded_amount"] = options.funded_amount
        elif new_status == TrancheStatus.FUNDED:
            values["funded_amount"] = (
                options.funded_amount if options.funded_amount is not None else tranche.amount
            )
            values["funded_date"] = now
        elif new_status == TrancheStatus.OVERDUE:
            if tranche.overdue_date is None:
                values["overdue_date"] = now
        return values

    @staticmethod
    def _check_funded_amount(
        tranche: InvestmentTranche, new_status: TrancheStatus, funded_amount: Optional[Decimal]
    ) -> Optional[str]:
        if new_status == TrancheStatus.PARTIALLY_FUNDED:
            if funded_amount is None:
                return "funded_amount is required for PARTIALLY_FUNDED"
            if not Decimal("0") < funded_amount < tranche.amount:
                return (
                    f"funded_amount must be greater than 0 and less than the "
                    f"tranche amount {tranche.amount}"
                )
        elif new_status == TrancheStatus.FUNDED and funded_amount is not None:
            if not Decimal("0") < funded_amount <= tranche.amount:
                return (
                    f"funded_amount must be greater than 0 and at most the "
                    f"tranche amount {tranche.amount}"
                )
        return None
