"""
Full & Final Settlement

Departure payout in two tranches:

Tranche 1 (immediately at departure):
- releases every unreleased year-end holdback
- pays the booking and year-end share of variable pay and NRR not yet settled
  by a finalized run, pro-rated to the departure date
- pays the booking and year-end share of departure-month commissions and
  SPIFFs unless a finalized run already paid them
- deducts open clawback balances; any excess is carried forward

Tranche 2 (once departure + collection grace days has passed):
- releases collection holdbacks for deals collected by the grace deadline,
  forfeits the rest
- nets the carried-forward clawback and writes off anything still unrecovered
"""

import logging
from datetime import date
from decimal import Decimal

from .calculators.clawback import ClawbackTracker
from .calculators.proration import add_months, month_of
from .calculators.rates import quantize_money
from .config import EngineConfig
from .models import (
    CLAWBACK_CLOSED, LINE_COLLECTION_FORFEIT, RUN_FINALIZED, PAYOUT_CLAWBACK, PAYOUT_COLLECTION_RELEASE, PAYOUT_NRR,
    PAYOUT_VARIABLE_PAY, PAYOUT_YEAR_END_RELEASE, DealPayoutLine, EmployeePayoutResult, FnFSettlement,
    FnFSettlementLine, ZERO, to_date,
)
from .runs import PayoutRunService
from .store import InMemoryStore, utc_now
from .validators import PayoutValidationError, RunStateError

logger = logging.getLogger(__name__)

TRANCHE1_DRAFT = "draft"
TRANCHE_CALCULATED = "calculated"
TRANCHE2_PENDING = "pending"


class FnFSettlementService:
    """Creates settlements and calculates both tranches."""

    def __init__(self, store: InMemoryStore, config: EngineConfig | None = None,
                 run_service: PayoutRunService | None = None):
        self.store = store
        self.config = config or EngineConfig()
        self.runs = run_service or PayoutRunService(store, self.config)
        self.processor = self.runs.processor
        self.clawbacks = ClawbackTracker()

    def create_settlement(self, employee_id: str, departure_date=None,
                          collection_grace_days: int | None = None) -> FnFSettlement:
        employee = self.store.get_employee(employee_id)
        departure = to_date(departure_date) or employee.departure_date
        if departure is None:
            raise PayoutValidationError.single(
                "missing_departure_date", f"{employee.full_name} has no departure date",
                employee_id=employee_id,
            )
        grace_days = self.config.collection_grace_days if collection_grace_days is None else collection_grace_days
        if grace_days < 0:
            raise PayoutValidationError.single(
                "invalid_grace_days", f"collection_grace_days cannot be negative, got: {grace_days}",
            )

        with self.store.lock:
            existing = self.store.settlement_for_employee(employee_id)
            if existing is not None:
                raise RunStateError(
                    f"{employee.full_name} already has settlement {existing.settlement_id}"
                )
            settlement = FnFSettlement(
                settlement_id=self.store.next_id("fnf"),
                employee_id=employee_id,
                departure_date=departure,
                fiscal_year=departure.year,
                collection_grace_days=grace_days,
            )
            self.store.save_settlement(settlement)
        logger.info(f"Created F&F settlement {settlement.settlement_id} for {employee_id} departing {departure}")
        return settlement

    # =========================================================================
    # TRANCHE 1
    # =========================================================================

    def calculate_tranche1(self, settlement_id: str) -> FnFSettlement:
        settlement = self.store.get_settlement(settlement_id)
        if settlement.tranche1_status != TRANCHE1_DRAFT:
            raise RunStateError(f"Tranche 1 of {settlement_id} is already {settlement.tranche1_status}")

        employee = self.store.get_employee(settlement.employee_id)
        dataset = self.store.load_dataset()
        month = month_of(settlement.departure_date)
        compensation_rate = self._compensation_rate(employee, dataset, month)

        lines = []
        release_lines = []

        # Step 1: Year-end holdbacks not yet released
        released = self.store.released_line_ids((PAYOUT_YEAR_END_RELEASE,), employee.employee_id)
        for line in self.store.finalized_lines(employee.employee_id):
            if line.year_end_usd <= 0 or line.line_id in released:
                continue
            lines.append(self._line(settlement, 1, "year_end_release", PAYOUT_YEAR_END_RELEASE,
                                    line.year_end_usd, employee.local_currency, line.exchange_rate_used,
                                    line.deal_id, f"Year-end holdback from {line.month_year}"))
            release_lines.append(self.processor.release_line(
                None, month, line, PAYOUT_YEAR_END_RELEASE, line.year_end_usd, settlement_id=settlement_id,
            ))

        # Step 2: Pay not yet settled, as of the departure date
        unsettled = self._unsettled_pay(settlement, employee, dataset, month)
        for payout in unsettled.payouts:
            for portion, amount in (("booking", payout.booking_amount_usd), ("year_end", payout.year_end_amount_usd)):
                if amount <= 0:
                    continue
                lines.append(self._line(settlement, 1, f"{portion}_payout", payout.payout_type, amount,
                                        employee.local_currency, payout.exchange_rate_used, None,
                                        f"{payout.payout_type} {portion} share as of departure"))
        settlement_lines = [line for line in unsettled.deal_lines if line.year_end_usd > 0]
        release_lines.extend(
            self.processor.release_line(None, month, line, PAYOUT_YEAR_END_RELEASE, line.year_end_usd,
                                        settlement_id=settlement_id)
            for line in settlement_lines
        )

        gross = sum((line.amount_usd for line in lines), ZERO)

        # Step 3: Deduct open clawback balances, carry forward the excess
        entries = [e for e in self.store.clawback_entries_for(employee.employee_id)
                   if e.status != CLAWBACK_CLOSED and e.remaining_amount_usd > 0]
        outstanding = sum((e.remaining_amount_usd for e in entries), ZERO)
        recoveries = self.clawbacks.recover(entries, gross, f"{settlement_id}:tranche1", month, include_active=True)
        deducted = sum((r.amount_usd for r in recoveries.values()), ZERO)
        if deducted > 0:
            lines.append(self._line(settlement, 1, "clawback_deduction", PAYOUT_CLAWBACK, -deducted,
                                    employee.local_currency, compensation_rate, None,
                                    f"Recovered against {len(recoveries)} clawback entries"))
        carry_forward = outstanding - deducted

        with self.store.lock:
            for entry in entries:
                recovery = recoveries.get(entry.entry_id)
                if recovery is not None:
                    entry.recoveries.append(recovery)
                entry.refresh_status(carried_forward=True)
                self.store.update_clawback(entry)
            self.store.add_runless_rows([], release_lines + unsettled.deal_lines)

            settlement.lines = [line for line in settlement.lines if line.tranche != 1] + lines
            settlement.tranche1_total_usd = quantize_money(gross - deducted)
            settlement.clawback_carryforward_usd = quantize_money(carry_forward)
            settlement.pending_collection_usd = quantize_money(
                sum((line.collection_usd for line in self._collection_holdbacks(settlement)), ZERO)
            )
            settlement.tranche1_status = TRANCHE_CALCULATED
            settlement.tranche1_calculated_at = utc_now()

        logger.info(
            f"Tranche 1 for {settlement_id}: {len(lines)} lines, ${settlement.tranche1_total_usd:,.2f} net, "
            f"${settlement.clawback_carryforward_usd:,.2f} carried forward"
        )
        return settlement

    def _unsettled_pay(self, settlement: FnFSettlement, employee, dataset, month: str) -> EmployeePayoutResult:
        """
        Departure-month pay not yet settled by a finalized run.

        Variable pay and NRR are pro-rated to the departure date and net of
        everything finalized runs already paid up to and including that month.
        Commissions and SPIFFs on deals booked in the departure month are
        month-scoped, so they are dropped only when the month's finalized run
        already carries them.
        """
        result = EmployeePayoutResult(employee_id=employee.employee_id)
        ctx = self.runs.build_context(
            settlement.settlement_id, month, employee, dataset,
            as_of=settlement.departure_date, history_before=add_months(month, 1),
        )
        if not self.processor.resolve(ctx):
            return result
        self.processor.calculate_variable_pay(ctx, result)
        self.processor.calculate_commissions(ctx, result)
        self.processor.calculate_nrr(ctx, result)
        self.processor.calculate_spiffs(ctx, result)

        paid = self._paid_by_month_run(employee.employee_id, month)
        result.payouts = [p for p in result.payouts if p.payout_type not in paid]
        result.deal_lines = [line for line in result.deal_lines if line.payout_type not in paid]
        for line in result.deal_lines:
            line.payout_run_id = None
            line.settlement_id = settlement.settlement_id
        return result

    def _paid_by_month_run(self, employee_id: str, month: str) -> set[str]:
        """Commission and SPIFF types the month's finalized run paid the employee."""
        run = self.store.run_for_month(month)
        if run is None or run.run_status != RUN_FINALIZED:
            return set()
        return {
            p.payout_type for p in self.store.payouts_for_month(month)
            if p.employee_id == employee_id and p.payout_run_id == run.run_id
            and p.payout_type not in (PAYOUT_VARIABLE_PAY, PAYOUT_NRR)
        }

    # =========================================================================
    # TRANCHE 2
    # =========================================================================

    def calculate_tranche2(self, settlement_id: str, as_of: date | None = None) -> FnFSettlement:
        settlement = self.store.get_settlement(settlement_id)
        if settlement.tranche1_status != TRANCHE_CALCULATED:
            raise RunStateError(f"Tranche 1 of {settlement_id} must be calculated before tranche 2")
        if settlement.tranche2_status != TRANCHE2_PENDING:
            raise RunStateError(f"Tranche 2 of {settlement_id} is already {settlement.tranche2_status}")

        as_of = as_of or date.today()
        eligible = settlement.tranche2_eligible_date
        if as_of < eligible:
            raise PayoutValidationError.single(
                "tranche2_not_eligible",
                f"Tranche 2 of {settlement_id} is not eligible until {eligible.isoformat()}",
                eligible_date=eligible.isoformat(),
            )

        employee = self.store.get_employee(settlement.employee_id)
        dataset = self.store.load_dataset()
        month = month_of(eligible)
        compensation_rate = self._compensation_rate(employee, dataset, month_of(settlement.departure_date))
        entries = [e for e in self.store.clawback_entries_for(employee.employee_id)
                   if e.status != CLAWBACK_CLOSED and e.remaining_amount_usd > 0]
        clawed = {e.deal_id for e in self.store.clawback_entries_for(employee.employee_id)}

        lines = []
        marker_lines = []
        released_usd = ZERO

        # Step 1: Release or forfeit collection holdbacks
        for line in self._collection_holdbacks(settlement):
            collection = dataset.collections.get(line.deal_id) if line.deal_id else None
            collected = line.deal_id is None or (collection is not None and collection.collected_by(eligible))
            if collected and line.deal_id not in clawed:
                released_usd += line.collection_usd
                lines.append(self._line(settlement, 2, "collection_release", PAYOUT_COLLECTION_RELEASE,
                                        line.collection_usd, employee.local_currency, line.exchange_rate_used,
                                        line.deal_id, f"Collection holdback from {line.month_year}"))
                marker_lines.append(self.processor.release_line(
                    None, month, line, PAYOUT_COLLECTION_RELEASE, line.collection_usd, settlement_id=settlement_id,
                ))
            else:
                lines.append(self._line(settlement, 2, "collection_forfeit", None, ZERO,
                                        employee.local_currency, line.exchange_rate_used, line.deal_id,
                                        f"Forfeited ${line.collection_usd:,.2f}: not collected by {eligible}"))
                marker_lines.append(self.processor.release_line(
                    None, month, line, LINE_COLLECTION_FORFEIT, ZERO, settlement_id=settlement_id,
                ))

        # Step 2: Net carried-forward clawback, write off the rest
        recoveries = self.clawbacks.recover(entries, released_usd, f"{settlement_id}:tranche2", month,
                                            include_active=True)
        deducted = sum((r.amount_usd for r in recoveries.values()), ZERO)
        if deducted > 0:
            lines.append(self._line(settlement, 2, "clawback_deduction", PAYOUT_CLAWBACK, -deducted,
                                    employee.local_currency, compensation_rate, None,
                                    "Carried-forward clawback netted"))

        written_off = ZERO
        with self.store.lock:
            for entry in entries:
                recovery = recoveries.get(entry.entry_id)
                if recovery is not None:
                    entry.recoveries.append(recovery)
                remaining = entry.remaining_amount_usd
                if remaining > 0:
                    entry.written_off_usd += remaining
                    written_off += remaining
                entry.refresh_status()
                self.store.update_clawback(entry)
            if written_off > 0:
                lines.append(self._line(settlement, 2, "clawback_write_off", None, ZERO,
                                        employee.local_currency, compensation_rate, None,
                                        f"Wrote off ${written_off:,.2f} of unrecovered clawback"))
            self.store.add_runless_rows([], marker_lines)

            settlement.lines = [line for line in settlement.lines if line.tranche != 2] + lines
            settlement.tranche2_total_usd = quantize_money(released_usd - deducted)
            settlement.clawback_carryforward_usd = ZERO
            settlement.pending_collection_usd = ZERO
            settlement.tranche2_status = TRANCHE_CALCULATED
            settlement.tranche2_calculated_at = utc_now()

        logger.info(
            f"Tranche 2 for {settlement_id}: released ${released_usd:,.2f}, netted ${deducted:,.2f}, "
            f"wrote off ${written_off:,.2f}"
        )
        return settlement

    def _compensation_rate(self, employee, dataset, month: str) -> Decimal:
        compensation_rate, _ = self.processor.rates_for(employee, dataset, month)
        if compensation_rate is None:
            raise PayoutValidationError.single(
                "missing_compensation_rate",
                f"{employee.full_name} ({employee.local_currency}) has no compensation exchange rate",
                employee_id=employee.employee_id,
            )
        return compensation_rate

    def _collection_holdbacks(self, settlement: FnFSettlement) -> list[DealPayoutLine]:
        """Unreleased collection portions from finalized runs and this settlement's tranche 1."""
        employee_id = settlement.employee_id
        released = self.store.released_line_ids((PAYOUT_COLLECTION_RELEASE, LINE_COLLECTION_FORFEIT), employee_id)
        with self.store.lock:
            own = [
                line for line in self.store.deal_lines
                if line.settlement_id == settlement.settlement_id and line.source_line_id is None
            ]
        candidates = self.store.finalized_lines(employee_id) + own
        return [line for line in candidates if line.collection_usd > 0 and line.line_id not in released]

    @staticmethod
    def _line(settlement: FnFSettlement, tranche: int, line_type: str, payout_type: str | None,
              amount_usd: Decimal, currency: str, rate: Decimal, deal_id: str | None,
              notes: str) -> FnFSettlementLine:
        return FnFSettlementLine(
            settlement_id=settlement.settlement_id,
            tranche=tranche,
            line_type=line_type,
            payout_type=payout_type,
            amount_usd=amount_usd,
            amount_local=quantize_money(amount_usd * rate),
            local_currency=currency,
            exchange_rate_used=rate,
            deal_id=deal_id,
            notes=notes,
        )
