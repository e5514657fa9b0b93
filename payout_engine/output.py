"""
Output Builder

Turns engine objects into JSON-ready dicts for the HTTP surfaces.
"""

from datetime import date
from decimal import Decimal

from .models import (
    ClawbackEntry, DealPayoutLine, FnFSettlement, MonthlyPayout, PayoutAdjustment, PayoutMetricDetail, PayoutRun,
    RunCalculationResult,
)
from .runs import classify_payout_type
from .validators import PayoutValidationError, ValidationReport


def to_money(value: Decimal | None) -> float | None:
    """Convert Decimal to float with 2 decimal places."""
    if value is None:
        return None
    return round(float(value), 2)


def to_number(value: Decimal | None) -> float | None:
    """Rates and percentages keep their precision."""
    if value is None:
        return None
    return float(value)


def _fmt(value) -> str:
    """Format a number as currency string for descriptions."""
    return f"${value:,.2f}"


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


class OutputBuilder:
    """Serializes runs, ledger rows, adjustments and settlements."""

    def run(self, run: PayoutRun) -> dict:
        return {
            "run_id": run.run_id,
            "month_year": run.month_year,
            "run_status": run.run_status,
            "is_locked": run.is_locked,
            "is_calculating": run.is_calculating,
            "calculated_at": run.calculated_at,
            "calculated_by": run.calculated_by,
            "reviewed_at": run.reviewed_at,
            "reviewed_by": run.reviewed_by,
            "approved_at": run.approved_at,
            "approved_by": run.approved_by,
            "finalized_at": run.finalized_at,
            "finalized_by": run.finalized_by,
            "totals": {
                "total_payout_usd": to_money(run.total_payout_usd),
                "total_variable_pay_usd": to_money(run.total_variable_pay_usd),
                "total_commissions_usd": to_money(run.total_commissions_usd),
                "total_additional_pay_usd": to_money(run.total_additional_pay_usd),
                "total_clawbacks_usd": to_money(run.total_clawbacks_usd),
            },
            "notes": run.notes,
        }

    def payout(self, payout: MonthlyPayout) -> dict:
        return {
            "payout_id": payout.payout_id,
            "payout_run_id": payout.payout_run_id,
            "employee_id": payout.employee_id,
            "month_year": payout.month_year,
            "payout_type": payout.payout_type,
            "category": classify_payout_type(payout.payout_type),
            "calculated_amount_usd": to_money(payout.calculated_amount_usd),
            "calculated_amount_local": to_money(payout.calculated_amount_local),
            "local_currency": payout.local_currency,
            "exchange_rate_used": to_number(payout.exchange_rate_used),
            "exchange_rate_type": payout.exchange_rate_type,
            "compensation_rate": to_number(payout.compensation_rate),
            "market_rate": to_number(payout.market_rate),
            "booking_amount_usd": to_money(payout.booking_amount_usd),
            "booking_amount_local": to_money(payout.booking_amount_local),
            "collection_amount_usd": to_money(payout.collection_amount_usd),
            "collection_amount_local": to_money(payout.collection_amount_local),
            "year_end_amount_usd": to_money(payout.year_end_amount_usd),
            "year_end_amount_local": to_money(payout.year_end_amount_local),
            "plan_id": payout.plan_id,
            "adjustment_id": payout.adjustment_id,
            "notes": payout.notes,
        }

    def metric_detail(self, detail: PayoutMetricDetail) -> dict:
        """Metric rows carry a description of how the month's amount was derived."""
        return {
            "employee_id": detail.employee_id,
            "month_year": detail.month_year,
            "metric_name": detail.metric_name,
            "target_usd": to_money(detail.target_usd),
            "actual_usd": to_money(detail.actual_usd),
            "achievement_pct": to_number(detail.achievement_pct),
            "multiplier": to_number(detail.multiplier),
            "allocation_usd": to_money(detail.allocation_usd),
            "ytd_eligible_usd": to_money(detail.ytd_eligible_usd),
            "prior_paid_usd": to_money(detail.prior_paid_usd),
            "this_month_usd": {
                "value": to_money(detail.this_month_usd),
                "description": (
                    f"ytd_eligible ({_fmt(detail.ytd_eligible_usd)}) - prior_paid "
                    f"({_fmt(detail.prior_paid_usd)}) = {_fmt(detail.this_month_usd)}"
                ),
            },
        }

    def deal_line(self, line: DealPayoutLine) -> dict:
        return {
            "line_id": line.line_id,
            "payout_run_id": line.payout_run_id,
            "employee_id": line.employee_id,
            "month_year": line.month_year,
            "deal_id": line.deal_id,
            "payout_type": line.payout_type,
            "metric_name": line.metric_name,
            "plan_id": line.plan_id,
            "deal_value_usd": to_money(line.deal_value_usd),
            "proportion_pct": to_number(line.proportion_pct),
            "amount_usd": to_money(line.amount_usd),
            "booking_usd": to_money(line.booking_usd),
            "collection_usd": to_money(line.collection_usd),
            "year_end_usd": to_money(line.year_end_usd),
            "clawback_eligible_usd": to_money(line.clawback_eligible_usd),
            "exchange_rate_used": to_number(line.exchange_rate_used),
            "exchange_rate_type": line.exchange_rate_type,
            "source_line_id": line.source_line_id,
            "settlement_id": line.settlement_id,
        }

    def run_payouts(self, run: PayoutRun, payouts: list[MonthlyPayout],
                    details: list[PayoutMetricDetail], lines: list[DealPayoutLine]) -> dict:
        """Payout rows of a run grouped by employee."""
        employees: dict[str, dict] = {}
        for payout in payouts:
            entry = employees.setdefault(payout.employee_id, self._employee_entry(payout.employee_id))
            entry["payouts"].append(self.payout(payout))
            entry["total_usd"] += payout.calculated_amount_usd
        for detail in details:
            entry = employees.setdefault(detail.employee_id, self._employee_entry(detail.employee_id))
            entry["metric_details"].append(self.metric_detail(detail))
        for line in lines:
            entry = employees.setdefault(line.employee_id, self._employee_entry(line.employee_id))
            entry["deal_lines"].append(self.deal_line(line))
        for entry in employees.values():
            entry["total_usd"] = to_money(entry["total_usd"])
        return {
            "run": self.run(run),
            "employees": [employees[key] for key in sorted(employees)],
        }

    @staticmethod
    def _employee_entry(employee_id: str) -> dict:
        return {
            "employee_id": employee_id,
            "total_usd": Decimal("0"),
            "payouts": [],
            "metric_details": [],
            "deal_lines": [],
        }

    def validation_report(self, report: ValidationReport) -> dict:
        return {
            "month_year": report.month_year,
            "is_valid": report.is_valid,
            "errors": [issue.to_dict() for issue in report.errors],
            "warnings": [issue.to_dict() for issue in report.warnings],
            "paid_employee_ids": report.paid_employee_ids,
            "skipped_employee_ids": report.skipped_employee_ids,
        }

    def validation_error(self, error: PayoutValidationError) -> dict:
        return {
            "error": str(error),
            "status": "validation_failed",
            "issues": [issue.to_dict() for issue in error.issues],
        }

    def calculation(self, result: RunCalculationResult, run: PayoutRun | None = None) -> dict:
        response = {
            "run_id": result.run_id,
            "month_year": result.month_year,
            "calculated_at": result.calculated_at,
            "is_complete": result.is_complete,
            "total_employees": result.total_employees,
            "totals": {
                "total_payout_usd": to_money(result.total_payout_usd),
                "total_variable_pay_usd": to_money(result.total_variable_pay_usd),
                "total_commissions_usd": to_money(result.total_commissions_usd),
                "total_additional_pay_usd": to_money(result.total_additional_pay_usd),
                "total_clawbacks_usd": to_money(result.total_clawbacks_usd),
            },
            "employees": [
                {
                    "employee_id": employee.employee_id,
                    "plan_id": employee.plan_id,
                    "total_usd": to_money(employee.total_payout_usd),
                    "payouts": [self.payout(p) for p in employee.payouts],
                    "metric_details": [self.metric_detail(d) for d in employee.metric_details],
                    "deal_lines": [self.deal_line(line) for line in employee.deal_lines],
                    "clawbacks_triggered": [self.clawback(e) for e in employee.clawback_entries],
                }
                for employee in sorted(result.employee_results, key=lambda r: r.employee_id)
            ],
            "failures": [
                {"employee_id": f.employee_id, "code": f.code, "message": f.message}
                for f in result.failures
            ],
            "skipped_employees": result.skipped_employees,
        }
        if run is not None:
            response["run_status"] = run.run_status
        return response

    def clawback(self, entry: ClawbackEntry) -> dict:
        return {
            "entry_id": entry.entry_id,
            "employee_id": entry.employee_id,
            "deal_id": entry.deal_id,
            "payout_run_id": entry.payout_run_id,
            "triggered_month": entry.triggered_month,
            "original_amount_usd": to_money(entry.original_amount_usd),
            "recovered_amount_usd": to_money(entry.recovered_amount_usd),
            "written_off_usd": to_money(entry.written_off_usd),
            "remaining_amount_usd": to_money(entry.remaining_amount_usd),
            "status": entry.status,
            "recoveries": [
                {"source_id": r.source_id, "month_year": r.month_year, "amount_usd": to_money(r.amount_usd)}
                for r in entry.recoveries
            ],
        }

    def adjustment(self, adjustment: PayoutAdjustment) -> dict:
        return {
            "adjustment_id": adjustment.adjustment_id,
            "payout_run_id": adjustment.payout_run_id,
            "employee_id": adjustment.employee_id,
            "adjustment_type": adjustment.adjustment_type,
            "original_amount_usd": to_money(adjustment.original_amount_usd),
            "adjustment_amount_usd": to_money(adjustment.adjustment_amount_usd),
            "adjustment_amount_local": to_money(adjustment.adjustment_amount_local),
            "local_currency": adjustment.local_currency,
            "exchange_rate_used": to_number(adjustment.exchange_rate_used),
            "reason": adjustment.reason,
            "status": adjustment.status,
            "applied_to_month": adjustment.applied_to_month,
            "applied_payout_id": adjustment.applied_payout_id,
            "requested_by": adjustment.requested_by,
            "approved_by": adjustment.approved_by,
        }

    def settlement(self, settlement: FnFSettlement) -> dict:
        return {
            "settlement_id": settlement.settlement_id,
            "employee_id": settlement.employee_id,
            "departure_date": _iso(settlement.departure_date),
            "fiscal_year": settlement.fiscal_year,
            "collection_grace_days": settlement.collection_grace_days,
            "tranche2_eligible_date": _iso(settlement.tranche2_eligible_date),
            "tranche1": {
                "status": settlement.tranche1_status,
                "total_usd": to_money(settlement.tranche1_total_usd),
                "calculated_at": settlement.tranche1_calculated_at,
            },
            "tranche2": {
                "status": settlement.tranche2_status,
                "total_usd": to_money(settlement.tranche2_total_usd),
                "calculated_at": settlement.tranche2_calculated_at,
            },
            "clawback_carryforward_usd": to_money(settlement.clawback_carryforward_usd),
            "pending_collection_usd": to_money(settlement.pending_collection_usd),
            "lines": [
                {
                    "tranche": line.tranche,
                    "line_type": line.line_type,
                    "payout_type": line.payout_type,
                    "deal_id": line.deal_id,
                    "amount_usd": to_money(line.amount_usd),
                    "amount_local": to_money(line.amount_local),
                    "local_currency": line.local_currency,
                    "exchange_rate_used": to_number(line.exchange_rate_used),
                    "notes": line.notes,
                }
                for line in settlement.lines
            ],
        }
