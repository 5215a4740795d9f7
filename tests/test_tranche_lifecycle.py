"""
Unit tests for TrancheLifecycleService.

Repositories are mocked through the fake unit of work and the clock is
pinned, so dates are deterministic.  Tests cover:
- transition_tranche_status: the full status table, amounts, date stamps
- recalculate_investment_funded: sums, FUNDED status, idempotence
- get_fund_tranche_stats: buckets, upcoming / overdue windows
- detect_overdue_tranches: detection only and auto-marking
- schedule_commitment: creation, duplicates, closed / unknown funds
"""

import itertools
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from tranche_service.core.audit import AuditEvent
from tranche_service.core.exceptions import (
    BusinessRuleViolation,
    ConflictException,
    NotFoundException,
)
from tranche_service.models.fund import FundStatus
from tranche_service.models.investment import InvestmentStatus
from tranche_service.models.investment_tranche import TrancheStatus
from tranche_service.schemas.tranche import (
    CommitmentScheduleCreate,
    ScheduledTrancheIn,
    TransitionOptions,
)
from tranche_service.services.tranche_lifecycle import (
    TrancheLifecycleService,
    TransitionErrorCode,
)

from .conftest import (
    FUND_ID,
    INVESTMENT_ID,
    INVESTOR_ID,
    TRANCHE_ID,
    make_fund,
    make_investment,
    make_tranche,
)

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
TODAY = FIXED_NOW.date()

S = TrancheStatus.SCHEDULED
C = TrancheStatus.CALLED
PF = TrancheStatus.PARTIALLY_FUNDED
F = TrancheStatus.FUNDED
O = TrancheStatus.OVERDUE  # noqa: E741
D = TrancheStatus.DEFAULTED
X = TrancheStatus.CANCELLED

ALLOWED = {
    (S, C), (S, PF), (S, F), (S, O), (S, X),
    (C, PF), (C, F), (C, O), (C, X),
    (PF, F), (PF, O), (PF, X),
    (O, PF), (O, F), (O, D), (O, X),
    (D, X),
}  # fmt: skip


@pytest.fixture()
def service(uow, audit_sink):
    return TrancheLifecycleService(uow, audit=audit_sink, clock=lambda: FIXED_NOW)


def _wire(uow, investment, tranches):
    """Point the tranche / investment repositories at in-memory objects."""
    by_id = {t.id: t for t in tranches}

    async def _reload(tranche_id, for_update=False):
        return by_id.get(tranche_id)

    async def _update_if_status(tranche_id, expected, values):
        tranche = by_id.get(tranche_id)
        if tranche is None or tranche.status != expected:
            return 0
        for column, value in values.items():
            setattr(tranche, column, value)
        return 1

    async def _sum_funded(investment_id):
        return sum((t.funded_amount for t in tranches), Decimal("0"))

    uow.tranches.reload.side_effect = _reload
    uow.tranches.update_if_status.side_effect = _update_if_status
    uow.tranches.list_by_investment.return_value = tranches
    uow.tranches.sum_funded.side_effect = _sum_funded
    uow.investments.reload.return_value = investment


# ────────────────────────────────────────────────────────────────────────────
# Transitions
# ────────────────────────────────────────────────────────────────────────────


class TestTransitionTable:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("current,requested", list(itertools.product(TrancheStatus, repeat=2)))
    async def test_every_edge(self, service, uow, current, requested):
        tranche = make_tranche(id=TRANCHE_ID, status=current)
        _wire(uow, make_investment(), [tranche])
        options = TransitionOptions(funded_amount=Decimal("100")) if requested == PF else None

        result = await service.transition_tranche_status(TRANCHE_ID, requested, options)

        assert result.success is ((current, requested) in ALLOWED)
        if result.success:
            assert tranche.status == requested
        else:
            assert result.error_code == TransitionErrorCode.INVALID_TRANSITION
            assert result.current_status == current
            assert result.requested_status == requested
            assert tranche.status == current

    @pytest.mark.asyncio
    async def test_funded_is_terminal(self, service, uow):
        tranche = make_tranche(id=TRANCHE_ID, status=F, funded_amount=Decimal("500.00"))
        _wire(uow, make_investment(), [tranche])

        result = await service.transition_tranche_status(TRANCHE_ID, F)

        assert result.success is False
        assert result.error == "Cannot transition from FUNDED to FUNDED"
        uow.tranches.update_if_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_defaulted_can_be_written_off(self, service, uow):
        tranche = make_tranche(id=TRANCHE_ID, status=D)
        _wire(uow, make_investment(), [tranche])

        result = await service.transition_tranche_status(TRANCHE_ID, X)

        assert result.success is True
        assert result.tranche.status == X

    @pytest.mark.asyncio
    async def test_unknown_tranche(self, service, uow, audit_sink):
        uow.tranches.reload.return_value = None

        result = await service.transition_tranche_status(uuid4(), C)

        assert result.success is False
        assert result.error_code == TransitionErrorCode.NOT_FOUND
        assert result.requested_status == C
        uow.tranches.update_if_status.assert_not_awaited()
        audit_sink.record.assert_not_called()

    @pytest.mark.asyncio
    async def test_tranche_moved_by_another_transaction(self, service, uow, audit_sink):
        stale = make_tranche(id=TRANCHE_ID, status=S)
        cancelled = make_tranche(id=TRANCHE_ID, status=X)
        uow.tranches.reload.side_effect = [stale, cancelled]
        uow.tranches.update_if_status.return_value = 0

        result = await service.transition_tranche_status(TRANCHE_ID, F)

        assert result.success is False
        assert result.error_code == TransitionErrorCode.CONFLICT
        assert result.current_status == X
        assert result.requested_status == F
        uow.tranches.update_if_status.assert_awaited_once()
        uow.investments.reload.assert_not_awaited()
        audit_sink.record.assert_not_called()


class TestTransitionAmounts:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("funded", [None, Decimal("0"), Decimal("500.00"), Decimal("600")])
    async def test_partial_amount_must_be_strictly_inside(self, service, uow, funded):
        tranche = make_tranche(id=TRANCHE_ID, status=C)
        _wire(uow, make_investment(), [tranche])

        result = await service.transition_tranche_status(
            TRANCHE_ID, PF, TransitionOptions(funded_amount=funded)
        )

        assert result.success is False
        assert result.error_code == TransitionErrorCode.INVALID_AMOUNT
        assert tranche.status == C
        assert tranche.funded_amount == Decimal("0")

    @pytest.mark.asyncio
    async def test_partial_records_amount(self, service, uow):
        tranche = make_tranche(id=TRANCHE_ID, status=C)
        investment = make_investment()
        _wire(uow, investment, [tranche])

        result = await service.transition_tranche_status(
            TRANCHE_ID, PF, TransitionOptions(funded_amount=Decimal("120.50"))
        )

        assert result.success is True
        assert tranche.funded_amount == Decimal("120.50")
        assert tranche.funded_date is None
        assert investment.funded_amount == Decimal("120.50")
        assert investment.status == InvestmentStatus.COMMITTED

    @pytest.mark.asyncio
    async def test_funded_defaults_to_full_amount(self, service, uow):
        tranche = make_tranche(id=TRANCHE_ID, status=C)
        _wire(uow, make_investment(), [tranche])

        await service.transition_tranche_status(TRANCHE_ID, F)

        assert tranche.funded_amount == Decimal("500.00")
        assert tranche.funded_date == FIXED_NOW

    @pytest.mark.asyncio
    async def test_funded_override(self, service, uow):
        tranche = make_tranche(id=TRANCHE_ID, status=O)
        _wire(uow, make_investment(), [tranche])

        await service.transition_tranche_status(
            TRANCHE_ID, F, TransitionOptions(funded_amount=Decimal("480.00"))
        )

        assert tranche.funded_amount == Decimal("480.00")

    @pytest.mark.asyncio
    async def test_funded_override_above_amount_rejected(self, service, uow):
        tranche = make_tranche(id=TRANCHE_ID, status=C)
        _wire(uow, make_investment(), [tranche])

        result = await service.transition_tranche_status(
            TRANCHE_ID, F, TransitionOptions(funded_amount=Decimal("500.01"))
        )

        assert result.error_code == TransitionErrorCode.INVALID_AMOUNT
        uow.investments.reload.assert_not_awaited()


class TestTransitionSideEffects:
    @pytest.mark.asyncio
    async def test_called_stamps_date_once(self, service, uow):
        earlier = datetime(2026, 1, 2, tzinfo=timezone.utc)
        fresh = make_tranche(id=TRANCHE_ID, status=S)
        recalled = make_tranche(status=S, called_date=earlier)
        _wire(uow, make_investment(), [fresh, recalled])

        await service.transition_tranche_status(fresh.id, C)
        await service.transition_tranche_status(recalled.id, C)

        assert fresh.called_date == FIXED_NOW
        assert recalled.called_date == earlier

    @pytest.mark.asyncio
    async def test_overdue_stamps_date_once(self, service, uow):
        earlier = datetime(2026, 2, 1, tzinfo=timezone.utc)
        tranche = make_tranche(id=TRANCHE_ID, status=C, overdue_date=earlier)
        _wire(uow, make_investment(), [tranche])

        await service.transition_tranche_status(TRANCHE_ID, O)

        assert tranche.overdue_date == earlier

    @pytest.mark.asyncio
    async def test_options_are_recorded(self, service, uow):
        call_id, proof_id = uuid4(), uuid4()
        tranche = make_tranche(id=TRANCHE_ID, status=S)
        _wire(uow, make_investment(), [tranche])

        await service.transition_tranche_status(
            TRANCHE_ID,
            C,
            TransitionOptions(
                capital_call_id=call_id, wire_proof_document_id=proof_id, notes="Q1 call"
            ),
        )

        assert tranche.capital_call_id == call_id
        assert tranche.wire_proof_document_id == proof_id
        assert tranche.notes == "Q1 call"

    @pytest.mark.asyncio
    async def test_non_funding_transition_skips_recalculation(self, service, uow):
        tranche = make_tranche(id=TRANCHE_ID, status=S)
        _wire(uow, make_investment(), [tranche])

        await service.transition_tranche_status(TRANCHE_ID, C)

        uow.tranches.update_if_status.assert_awaited_once()
        assert uow.tranches.update_if_status.call_args.args[:2] == (TRANCHE_ID, S)
        uow.investments.reload.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transition_is_audited(self, service, uow, audit_sink):
        tranche = make_tranche(id=TRANCHE_ID, status=C)
        _wire(uow, make_investment(), [tranche])

        await service.transition_tranche_status(TRANCHE_ID, F)

        event, payload = audit_sink.record.call_args.args[0], audit_sink.record.call_args.kwargs
        assert event == AuditEvent.TRANCHE_TRANSITIONED
        assert payload["from_status"] == "CALLED"
        assert payload["to_status"] == "FUNDED"
        assert payload["investment_id"] == INVESTMENT_ID

    @pytest.mark.asyncio
    async def test_transition_does_not_commit(self, service, uow):
        tranche = make_tranche(id=TRANCHE_ID, status=S)
        _wire(uow, make_investment(), [tranche])

        await service.transition_tranche_status(TRANCHE_ID, C)

        assert uow.commits == 0


# ────────────────────────────────────────────────────────────────────────────
# Funded-amount recalculation
# ────────────────────────────────────────────────────────────────────────────


class TestRecalculation:
    @pytest.mark.asyncio
    async def test_cascade_to_funded_investment(self, service, uow):
        first = make_tranche(tranche_number=1, status=C)
        second = make_tranche(tranche_number=2, status=S)
        investment = make_investment()
        _wire(uow, investment, [first, second])

        await service.transition_tranche_status(first.id, F)
        assert investment.funded_amount == Decimal("500.00")
        assert investment.status == InvestmentStatus.COMMITTED

        await service.transition_tranche_status(second.id, F)
        assert investment.funded_amount == Decimal("1000.00")
        assert investment.status == InvestmentStatus.FUNDED

    @pytest.mark.asyncio
    async def test_cancelling_last_open_tranche_completes_investment(self, service, uow):
        funded = make_tranche(tranche_number=1, status=F, funded_amount=Decimal("500.00"))
        open_ = make_tranche(tranche_number=2, status=O)
        investment = make_investment(funded_amount=Decimal("500.00"))
        _wire(uow, investment, [funded, open_])

        await service.transition_tranche_status(open_.id, X)

        assert investment.status == InvestmentStatus.FUNDED
        assert investment.funded_amount == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_idempotent(self, service, uow):
        tranches = [
            make_tranche(tranche_number=1, status=F, funded_amount=Decimal("500.00")),
            make_tranche(tranche_number=2, status=PF, funded_amount=Decimal("125.00")),
        ]
        investment = make_investment()
        _wire(uow, investment, tranches)

        await service.recalculate_investment_funded(INVESTMENT_ID)
        await service.recalculate_investment_funded(INVESTMENT_ID)

        assert investment.funded_amount == Decimal("625.00")
        assert investment.status == InvestmentStatus.COMMITTED
        assert uow.investments.save.await_count == 2

    @pytest.mark.asyncio
    async def test_cancelled_investment_stays_cancelled(self, service, uow):
        investment = make_investment(status=InvestmentStatus.CANCELLED)
        _wire(uow, investment, [make_tranche(status=X)])

        await service.recalculate_investment_funded(INVESTMENT_ID)

        assert investment.status == InvestmentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_investment_without_tranches_not_funded(self, service, uow):
        investment = make_investment()
        _wire(uow, investment, [])

        await service.recalculate_investment_funded(INVESTMENT_ID)

        assert investment.funded_amount == Decimal("0")
        assert investment.status == InvestmentStatus.COMMITTED

    @pytest.mark.asyncio
    async def test_unknown_investment(self, service, uow):
        uow.investments.reload.return_value = None
        with pytest.raises(NotFoundException):
            await service.recalculate_investment_funded(uuid4())


# ────────────────────────────────────────────────────────────────────────────
# Statistics and overdue detection
# ────────────────────────────────────────────────────────────────────────────


class TestStats:
    @pytest.mark.asyncio
    async def test_buckets_and_windows(self, service, uow):
        uow.tranches.list_by_fund.return_value = [
            make_tranche(status=F, funded_amount=Decimal("500.00"), scheduled_date=date(2026, 2, 1)),
            make_tranche(status=S, scheduled_date=date(2026, 2, 15)),
            make_tranche(status=PF, funded_amount=Decimal("100.00"), scheduled_date=date(2026, 2, 20)),
            make_tranche(status=C, scheduled_date=TODAY),
            make_tranche(status=S, scheduled_date=TODAY + timedelta(days=30)),
            make_tranche(status=S, scheduled_date=TODAY + timedelta(days=31)),
            make_tranche(status=D, scheduled_date=date(2026, 1, 1)),
        ]

        stats = await service.get_fund_tranche_stats(FUND_ID)

        assert stats.total_tranches == 7
        assert stats.total_scheduled_amount == Decimal("3500.00")
        assert stats.total_funded_amount == Decimal("600.00")
        assert stats.by_status["SCHEDULED"].count == 3
        assert stats.by_status["PARTIALLY_FUNDED"].funded == Decimal("100.00")
        assert "OVERDUE" not in stats.by_status
        assert stats.upcoming == 2
        # The past-due SCHEDULED and PARTIALLY_FUNDED rows.
        assert stats.overdue == 2

    @pytest.mark.asyncio
    async def test_empty_fund(self, service, uow):
        uow.tranches.list_by_fund.return_value = []

        stats = await service.get_fund_tranche_stats(FUND_ID)

        assert stats.total_tranches == 0
        assert stats.by_status == {}
        assert stats.upcoming == stats.overdue == 0


class TestDetectOverdue:
    @pytest.mark.asyncio
    async def test_detection_only_does_not_write(self, service, uow, audit_sink):
        late = make_tranche(status=S, scheduled_date=date(2026, 2, 1))
        uow.tranches.find_overdue_candidates.return_value = [late]

        result = await service.detect_overdue_tranches(FUND_ID)

        assert result == [late]
        uow.tranches.find_overdue_candidates.assert_awaited_once_with(FUND_ID, TODAY)
        uow.tranches.bulk_mark_overdue.assert_not_awaited()
        audit_sink.record.assert_not_called()

    @pytest.mark.asyncio
    async def test_auto_mark(self, service, uow, audit_sink):
        late = [make_tranche(status=S), make_tranche(status=C, tranche_number=2)]
        ids = [t.id for t in late]
        marked = [make_tranche(id=i, status=O, overdue_date=FIXED_NOW) for i in ids]
        uow.tranches.find_overdue_candidates.return_value = late
        uow.tranches.bulk_mark_overdue.return_value = 2
        uow.tranches.list_by_ids.return_value = marked

        result = await service.detect_overdue_tranches(FUND_ID, auto_mark=True)

        assert result == marked
        uow.tranches.bulk_mark_overdue.assert_awaited_once_with(ids, FIXED_NOW)
        assert audit_sink.record.call_args.args[0] == AuditEvent.TRANCHES_MARKED_OVERDUE
        assert audit_sink.record.call_args.kwargs["count"] == 2

    @pytest.mark.asyncio
    async def test_auto_mark_with_nothing_due(self, service, uow):
        uow.tranches.find_overdue_candidates.return_value = []

        result = await service.detect_overdue_tranches(FUND_ID, auto_mark=True)

        assert result == []
        uow.tranches.bulk_mark_overdue.assert_not_awaited()


# ────────────────────────────────────────────────────────────────────────────
# Staged commitments
# ────────────────────────────────────────────────────────────────────────────


def _schedule(amounts=("250000.00", "250000.00", "500000.00")) -> CommitmentScheduleCreate:
    start = date.today() + timedelta(days=1)
    return CommitmentScheduleCreate(
        investor_id=INVESTOR_ID,
        total_commitment=sum((Decimal(a) for a in amounts), Decimal("0")),
        tranches=[
            ScheduledTrancheIn(amount=Decimal(a), scheduled_date=start + timedelta(days=90 * i))
            for i, a in enumerate(amounts)
        ],
    )


class TestScheduleCommitment:
    @pytest.mark.asyncio
    async def test_creates_investment_and_numbered_tranches(self, service, uow, audit_sink):
        uow.funds.get.return_value = make_fund()
        uow.investments.get_by_fund_and_investor.return_value = None
        uow.investments.add.side_effect = lambda obj: obj
        uow.tranches.add.side_effect = lambda obj: obj

        investment, tranches = await service.schedule_commitment(FUND_ID, _schedule())

        assert investment.commitment_amount == Decimal("1000000.00")
        assert investment.funded_amount == Decimal("0")
        assert investment.status == InvestmentStatus.COMMITTED
        assert [t.tranche_number for t in tranches] == [1, 2, 3]
        assert all(t.investment_id == investment.id for t in tranches)
        assert all(t.status == S for t in tranches)
        assert audit_sink.record.call_args.args[0] == AuditEvent.COMMITMENT_SCHEDULED
        assert uow.commits == 0

    @pytest.mark.asyncio
    async def test_duplicate_commitment(self, service, uow):
        existing = make_investment()
        uow.funds.get.return_value = make_fund()
        uow.investments.get_by_fund_and_investor.return_value = existing

        with pytest.raises(ConflictException) as exc_info:
            await service.schedule_commitment(FUND_ID, _schedule())

        assert exc_info.value.details == {"investment_id": str(existing.id)}
        uow.investments.add.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_closed_fund(self, service, uow):
        uow.funds.get.return_value = make_fund(status=FundStatus.CLOSED)
        with pytest.raises(BusinessRuleViolation):
            await service.schedule_commitment(FUND_ID, _schedule())

    @pytest.mark.asyncio
    async def test_unknown_fund(self, service, uow):
        uow.funds.get.return_value = None
        with pytest.raises(NotFoundException):
            await service.schedule_commitment(FUND_ID, _schedule())

    @pytest.mark.asyncio
    async def test_integrity_error_becomes_conflict(self, service, uow):
        uow.funds.get.return_value = make_fund()
        uow.investments.get_by_fund_and_investor.return_value = None
        uow.investments.add.side_effect = IntegrityError("INSERT", {}, Exception("duplicate"))

        with pytest.raises(ConflictException):
            await service.schedule_commitment(FUND_ID, _schedule())
