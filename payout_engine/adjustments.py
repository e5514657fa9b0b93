"""
Payout Adjustments

Corrections to finalized months. A locked month's rows are never touched: an
applied adjustment inserts a new row dated to a caller-chosen target month.

pending -> approved | rejected -> (approved only) applied
"""

import logging

from .calculators.proration import month_end
from .calculators.rates import FxResolver, quantize_money
from .config import EngineConfig
from .models import (
    ADJ_APPLIED, ADJ_APPROVED, ADJ_PENDING, ADJ_REJECTED, ADJUSTMENT_TYPES, RATE_COMPENSATION, RUN_FINALIZED,
    MonthlyPayout, PayoutAdjustment, ZERO, to_decimal,
)
from .plan_resolution import PlanResolver
from .runs import normalize_month
from .store import InMemoryStore
from .validators import PayoutValidationError, RunStateError, ValidationIssue

logger = logging.getLogger(__name__)


class AdjustmentService:
    """Create, review, apply and delete payout adjustments."""

    def __init__(self, store: InMemoryStore, config: EngineConfig | None = None,
                 resolver: PlanResolver | None = None):
        self.store = store
        self.config = config or EngineConfig()
        self.resolver = resolver or PlanResolver()

    def create_adjustment(self, payout_run_id: str, employee_id: str, adjustment_type: str,
                          adjustment_amount_usd, reason: str, requested_by: str | None = None,
                          original_amount_usd=None, exchange_rate_used=None) -> PayoutAdjustment:
        run = self.store.get_run(payout_run_id)
        employee = self.store.get_employee(employee_id)

        issues = []
        if run.run_status != RUN_FINALIZED:
            issues.append(ValidationIssue(
                "run_not_finalized", f"Adjustments can only be raised against finalized runs; "
                f"{payout_run_id} is {run.run_status}", {"run_id": payout_run_id},
            ))
        if adjustment_type not in ADJUSTMENT_TYPES:
            issues.append(ValidationIssue(
                "invalid_adjustment_type",
                f"Invalid adjustment_type: {adjustment_type}. Must be one of {', '.join(ADJUSTMENT_TYPES)}",
            ))
        amount = to_decimal(adjustment_amount_usd)
        if amount == 0:
            issues.append(ValidationIssue("zero_adjustment", "adjustment_amount_usd cannot be zero"))
        if not reason or not reason.strip():
            issues.append(ValidationIssue("missing_reason", "A reason is required for every adjustment"))
        if issues:
            raise PayoutValidationError(issues)

        rows = [p for p in self.store.payouts_for_run(payout_run_id) if p.employee_id == employee_id]
        if original_amount_usd is None:
            original = sum((p.calculated_amount_usd for p in rows), ZERO)
        else:
            original = to_decimal(original_amount_usd)
        if exchange_rate_used is not None:
            rate = to_decimal(exchange_rate_used)
        elif rows:
            rate = rows[0].compensation_rate
        else:
            rate = self._compensation_rate(employee, run.month_year)

        adjustment = PayoutAdjustment(
            adjustment_id=self.store.next_id("adj"),
            payout_run_id=payout_run_id,
            employee_id=employee_id,
            adjustment_type=adjustment_type,
            original_amount_usd=quantize_money(original),
            adjustment_amount_usd=quantize_money(amount),
            local_currency=employee.local_currency,
            exchange_rate_used=rate,
            reason=reason.strip(),
            requested_by=requested_by,
        )
        self.store.save_adjustment(adjustment)
        logger.info(
            f"Adjustment {adjustment.adjustment_id} ({adjustment_type}) of ${amount:,.2f} "
            f"requested for {employee_id} on run {payout_run_id}"
        )
        return adjustment

    def review_adjustment(self, adjustment_id: str, approve: bool, reviewer_id: str | None = None) -> PayoutAdjustment:
        with self.store.lock:
            adjustment = self.store.get_adjustment(adjustment_id)
            if adjustment.status != ADJ_PENDING:
                raise RunStateError(
                    f"Only pending adjustments can be reviewed; {adjustment_id} is {adjustment.status}"
                )
            adjustment.status = ADJ_APPROVED if approve else ADJ_REJECTED
            adjustment.approved_by = reviewer_id
        logger.info(f"Adjustment {adjustment_id} {adjustment.status} by {reviewer_id}")
        return adjustment

    def approve_adjustment(self, adjustment_id: str, reviewer_id: str | None = None) -> PayoutAdjustment:
        return self.review_adjustment(adjustment_id, True, reviewer_id)

    def reject_adjustment(self, adjustment_id: str, reviewer_id: str | None = None) -> PayoutAdjustment:
        return self.review_adjustment(adjustment_id, False, reviewer_id)

    def apply_adjustment(self, adjustment_id: str, target_month: str, actor_id: str | None = None) -> MonthlyPayout:
        """Insert the adjustment as a new payout row dated to target_month."""
        target_month = normalize_month(target_month)
        with self.store.lock:
            adjustment = self.store.get_adjustment(adjustment_id)
            if adjustment.status != ADJ_APPROVED:
                raise PayoutValidationError.single(
                    "adjustment_not_approved",
                    f"Only approved adjustments can be applied; {adjustment_id} is {adjustment.status}",
                    adjustment_id=adjustment_id,
                )
            target_run = self.store.run_for_month(target_month)
            if target_run is not None and target_run.is_locked:
                raise PayoutValidationError.single(
                    "month_locked", f"Target month {target_month} is locked", run_id=target_run.run_id,
                )

            amount_usd = adjustment.adjustment_amount_usd
            amount_local = quantize_money(adjustment.adjustment_amount_local)
            fx = FxResolver(self.store.dataset.exchange_rates, self.config.base_currency)
            market_rate = fx.market_rate(adjustment.local_currency, target_month) or adjustment.exchange_rate_used
            payout = MonthlyPayout(
                payout_id=f"{adjustment.adjustment_id}:{target_month}",
                payout_run_id=None,
                employee_id=adjustment.employee_id,
                month_year=target_month,
                payout_type=f"Adjustment - {adjustment.adjustment_type}",
                calculated_amount_usd=amount_usd,
                calculated_amount_local=amount_local,
                local_currency=adjustment.local_currency,
                exchange_rate_used=adjustment.exchange_rate_used,
                exchange_rate_type=RATE_COMPENSATION,
                compensation_rate=adjustment.exchange_rate_used,
                market_rate=market_rate,
                booking_amount_usd=amount_usd,
                booking_amount_local=amount_local,
                adjustment_id=adjustment.adjustment_id,
                notes=adjustment.reason,
            )
            self.store.add_runless_rows([payout], [])
            adjustment.status = ADJ_APPLIED
            adjustment.applied_to_month = target_month
            adjustment.applied_payout_id = payout.payout_id

        logger.info(f"Adjustment {adjustment_id} applied to {target_month} by {actor_id}")
        return payout

    def delete_adjustment(self, adjustment_id: str) -> None:
        with self.store.lock:
            adjustment = self.store.get_adjustment(adjustment_id)
            if adjustment.status != ADJ_PENDING:
                raise RunStateError(
                    f"Only pending adjustments can be deleted; {adjustment_id} is {adjustment.status}"
                )
            self.store.delete_adjustment(adjustment_id)

    def _compensation_rate(self, employee, month_year: str):
        """Rate of the assignment covering the run's month, else the employee default."""
        assignments = self.store.dataset.assignments_for(employee.employee_id)
        assignment = self.resolver.active_assignment(assignments, month_end(month_year))
        if assignment is None and assignments:
            assignment = max(assignments, key=lambda a: a.effective_end_date)
        fx = FxResolver(self.store.dataset.exchange_rates, self.config.base_currency)
        rate = fx.compensation_rate(employee, assignment)
        if rate is None:
            raise PayoutValidationError.single(
                "missing_compensation_rate",
                f"{employee.full_name} ({employee.local_currency}) has no compensation exchange rate",
                employee_id=employee.employee_id,
            )
        return rate
