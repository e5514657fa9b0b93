"""
Payout Run Service

Owns the run lifecycle: create, validate, calculate (one batch pass over the
paid employees of a month), status transitions, deletion and the year-end
holdback release.
"""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from .calculators.proration import fiscal_year_of, month_of, month_start
from .calculators.rates import quantize_money
from .config import EngineConfig
from .models import (
    COMMISSION_TYPES, LINE_COLLECTION_FORFEIT, PAYOUT_CLAWBACK, PAYOUT_COLLECTION_RELEASE, PAYOUT_NRR,
    PAYOUT_SPIFF, PAYOUT_VARIABLE_PAY, PAYOUT_YEAR_END_RELEASE, RUN_APPROVED, RUN_DRAFT, RUN_FINALIZED, RUN_REVIEW,
    RUN_STATUSES, Employee, EmployeeFailure, EmployeePayoutResult, MonthlyPayout, PayoutDataset, PayoutRun,
    ProcessingContext, RunCalculationResult, ZERO,
)
from .plan_resolution import PlanResolver
from .processor import EmployeePayoutProcessor
from .store import InMemoryStore, utc_now
from .validators import (
    PayoutValidationError, RunPrerequisiteValidator, RunStateError, ValidationIssue, ValidationReport,
)

logger = logging.getLogger(__name__)

# Payout type families used for run totals
VARIABLE_PAY_TYPES = (PAYOUT_VARIABLE_PAY,)
ADDITIONAL_PAY_TYPES = (PAYOUT_NRR, PAYOUT_SPIFF)
RELEASE_TYPES = (PAYOUT_COLLECTION_RELEASE, PAYOUT_YEAR_END_RELEASE)
DEDUCTION_TYPES = (PAYOUT_CLAWBACK,)

NEXT_STATUS = {
    RUN_DRAFT: RUN_REVIEW,
    RUN_REVIEW: RUN_APPROVED,
    RUN_APPROVED: RUN_FINALIZED,
}


def normalize_month(value) -> str:
    """Parse 'YYYY-MM' (or an ISO date) into a zero-padded month key."""
    try:
        return month_of(month_start(str(value)))
    except (TypeError, ValueError):
        raise PayoutValidationError.single(
            "invalid_month", f"month_year must be formatted YYYY-MM, got: {value}",
        ) from None


def classify_payout_type(payout_type: str) -> str:
    if payout_type in VARIABLE_PAY_TYPES:
        return "variable_pay"
    if payout_type in COMMISSION_TYPES:
        return "commission"
    if payout_type in ADDITIONAL_PAY_TYPES:
        return "additional_pay"
    if payout_type in RELEASE_TYPES:
        return "release"
    if payout_type in DEDUCTION_TYPES:
        return "deduction"
    if payout_type.startswith("Adjustment"):
        return "adjustment"
    return "other"


def summarize_payouts(payouts: list[MonthlyPayout]) -> dict[str, Decimal]:
    """Run totals by family. Releases count toward the total payout only."""
    totals = {
        "total_payout_usd": ZERO,
        "total_variable_pay_usd": ZERO,
        "total_commissions_usd": ZERO,
        "total_additional_pay_usd": ZERO,
        "total_clawbacks_usd": ZERO,
    }
    for payout in payouts:
        amount = payout.calculated_amount_usd
        totals["total_payout_usd"] += amount
        family = classify_payout_type(payout.payout_type)
        if family == "variable_pay":
            totals["total_variable_pay_usd"] += amount
        elif family == "commission":
            totals["total_commissions_usd"] += amount
        elif family == "additional_pay":
            totals["total_additional_pay_usd"] += amount
        elif family == "deduction":
            totals["total_clawbacks_usd"] += -amount
    return {name: quantize_money(value) for name, value in totals.items()}


class CalculationCancelled(Exception):
    """Raised inside a worker when the batch was cancelled."""


class PayoutRunService:
    """Entry point for run-level operations."""

    def __init__(self, store: InMemoryStore, config: EngineConfig | None = None,
                 resolver: PlanResolver | None = None,
                 scope: Callable[[Employee], bool] | None = None):
        self.store = store
        self.config = config or EngineConfig()
        self.resolver = resolver or PlanResolver()
        self.scope = scope
        self.validator = RunPrerequisiteValidator(self.resolver, self.config.base_currency)
        self.processor = EmployeePayoutProcessor(self.resolver, self.config)

    # =========================================================================
    # CREATE / VALIDATE
    # =========================================================================

    def create_run(self, month_year: str, notes: str | None = None) -> PayoutRun:
        month_year = normalize_month(month_year)
        run = self.store.create_run(month_year, notes)
        logger.info(f"Created payout run {run.run_id} for {month_year}")
        return run

    def validate_run_prerequisites(self, month_year: str) -> ValidationReport:
        month_year = normalize_month(month_year)
        dataset = self.store.load_dataset(self.scope)
        return self.validator.validate(month_year, dataset, self.store.run_for_month(month_year),
                                       self.store.settled_employees())

    # =========================================================================
    # CALCULATE
    # =========================================================================

    def calculate_run(self, run_id: str, actor_id: str | None = None,
                      cancel_event: threading.Event | None = None) -> RunCalculationResult:
        """
        Validate, then recompute every paid employee for the run's month.

        Each employee's rows are replaced atomically. Per-employee failures are
        collected and the batch continues; a failed employee keeps the rows
        from its last successful calculation. The run moves from draft to
        review only when every employee succeeded.
        """
        run = self.store.get_run(run_id)
        report = self.validate_run_prerequisites(run.month_year)
        if not report.is_valid:
            logger.info(f"Run {run_id} blocked by {len(report.errors)} validation error(s)")
            raise PayoutValidationError(report.errors)

        run = self.store.begin_calculation(run_id)
        cancel_event = cancel_event or threading.Event()
        try:
            dataset = self.store.load_dataset(self.scope)
            result = RunCalculationResult(
                run_id=run_id,
                month_year=run.month_year,
                calculated_at=utc_now(),
                skipped_employees=list(report.skipped_employee_ids),
            )
            employees = [dataset.employees[e] for e in report.paid_employee_ids]

            with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
                futures = {
                    pool.submit(self._calculate_employee, run, employee, dataset, cancel_event): employee
                    for employee in employees
                }
                for future, employee in futures.items():
                    try:
                        result.employee_results.append(future.result())
                    except CalculationCancelled:
                        result.failures.append(EmployeeFailure(employee.employee_id, "cancelled",
                                                               "Calculation cancelled"))
                    except Exception as e:
                        logger.error(f"Payout calculation failed for {employee.employee_id}: {e}", exc_info=True)
                        result.failures.append(EmployeeFailure(employee.employee_id, "calculation_failed", str(e)))

            # Visible employees no longer paid must not keep rows from an earlier calculation
            visible = self.store.employees_with_results(run_id) & set(dataset.employees)
            stale = visible - set(report.paid_employee_ids)
            for employee_id in stale:
                self.store.clear_employee_results(run_id, employee_id)

            payouts = self.store.payouts_for_run(run_id)
            totals = summarize_payouts(payouts)
            for name, value in totals.items():
                setattr(result, name, value)
            result.total_employees = len({p.employee_id for p in payouts})

            self.store.finish_calculation(run_id, totals, actor_id, advance=result.is_complete)
        except BaseException:
            self.store.abort_calculation(run_id)
            raise

        logger.info(
            f"Run {run_id} calculated: {result.total_employees} employees, "
            f"${result.total_payout_usd:,.2f} total, {len(result.failures)} failure(s)"
        )
        return result

    def _calculate_employee(self, run: PayoutRun, employee: Employee, dataset: PayoutDataset,
                            cancel_event: threading.Event) -> EmployeePayoutResult:
        if cancel_event.is_set():
            raise CalculationCancelled(employee.employee_id)

        ctx = self.build_context(run.run_id, run.month_year, employee, dataset)
        result = self.processor.process(ctx)

        if cancel_event.is_set():
            raise CalculationCancelled(employee.employee_id)
        self.store.replace_employee_results(run.run_id, result)
        return result

    def build_context(self, run_id: str, month_year: str, employee: Employee, dataset: PayoutDataset,
                      as_of=None, history_before: str | None = None) -> ProcessingContext:
        """
        Load the history one employee's calculation depends on: amounts paid by
        finalized runs of months before history_before (default month_year).
        """
        emp_id = employee.employee_id
        history_before = history_before or month_year
        fiscal_year = fiscal_year_of(month_year)
        nrr_rows = self.store.finalized_payouts(emp_id, fiscal_year, history_before, PAYOUT_NRR)
        prior_nrr = sum((p.calculated_amount_usd for p in nrr_rows), ZERO)
        return ProcessingContext(
            run_id=run_id,
            month_year=month_year,
            employee=employee,
            dataset=dataset,
            prior_metric_details=self.store.finalized_metric_details(emp_id, fiscal_year, history_before),
            prior_nrr_paid_usd=prior_nrr,
            paid_lines=self.store.finalized_lines(emp_id, before_month=history_before),
            released_line_ids=self.store.released_line_ids(
                (PAYOUT_COLLECTION_RELEASE, LINE_COLLECTION_FORFEIT), emp_id, exclude_run_id=run_id,
            ),
            clawback_entries=self.store.clawback_entries_for(emp_id, exclude_run_id=run_id),
            as_of=as_of,
        )

    # =========================================================================
    # STATUS TRANSITIONS
    # =========================================================================

    def transition_run_status(self, run_id: str, new_status: str, actor_id: str | None = None) -> PayoutRun:
        """
        Move a run one step forward: draft -> review -> approved -> finalized.

        Implemented as a single compare-and-set, so concurrent calls cannot both
        succeed.
        """
        if new_status not in RUN_STATUSES:
            raise PayoutValidationError.single("invalid_status", f"Unknown run status: {new_status}")

        run = self.store.get_run(run_id)
        current = run.run_status
        if NEXT_STATUS.get(current) != new_status:
            raise RunStateError(f"Cannot move run {run_id} from {current} to {new_status}")
        if new_status == RUN_REVIEW and run.calculated_at is None:
            raise RunStateError(f"Run {run_id} must be calculated before review")

        run = self.store.compare_and_set_status(run_id, current, new_status, actor_id)
        logger.info(f"Run {run_id} moved {current} -> {new_status} by {actor_id}")
        return run

    def delete_run(self, run_id: str) -> None:
        self.store.delete_run(run_id)
        logger.info(f"Deleted payout run {run_id}")

    # =========================================================================
    # YEAR-END RELEASE
    # =========================================================================

    def release_year_end(self, fiscal_year: int, target_month: str, actor_id: str | None = None) -> dict:
        """
        Release every finalized year-end holdback of fiscal_year into target_month.

        A holdback is released at most once; calling again releases nothing new.
        """
        target_month = normalize_month(target_month)
        target_run = self.store.run_for_month(target_month)
        if target_run is not None and target_run.is_locked:
            raise PayoutValidationError.single(
                "month_locked", f"Target month {target_month} is locked", run_id=target_run.run_id,
            )

        dataset = self.store.load_dataset(self.scope)
        pending = []
        issues = []
        for employee in sorted(dataset.employees.values(), key=lambda e: e.employee_id):
            released = self.store.released_line_ids((PAYOUT_YEAR_END_RELEASE,), employee.employee_id)
            lines = self.processor.releases.year_end_releases(
                self.store.finalized_lines(employee.employee_id), released, fiscal_year,
            )
            if not lines:
                continue
            compensation_rate, market_rate = self.processor.rates_for(employee, dataset, target_month)
            if compensation_rate is None or market_rate is None:
                issues.append(ValidationIssue(
                    "missing_exchange_rate",
                    f"No exchange rate for {employee.full_name} ({employee.local_currency}) in {target_month}",
                    {"employee_id": employee.employee_id, "currency": employee.local_currency},
                ))
                continue
            pending.append((employee, lines, compensation_rate, market_rate))
        if issues:
            raise PayoutValidationError(issues)

        released_usd = ZERO
        for employee, lines, compensation_rate, market_rate in pending:
            payout, release_lines = self._year_end_rows(employee, lines, fiscal_year, target_month,
                                                        compensation_rate, market_rate)
            self.store.add_runless_rows([payout], release_lines)
            released_usd += payout.calculated_amount_usd

        logger.info(
            f"Year-end release FY{fiscal_year} into {target_month} by {actor_id}: "
            f"{len(pending)} employees, ${released_usd:,.2f}"
        )
        return {
            "fiscal_year": fiscal_year,
            "target_month": target_month,
            "employees_released": len(pending),
            "total_released_usd": released_usd,
        }

    def _year_end_rows(self, employee: Employee, lines: list, fiscal_year: int, target_month: str,
                       compensation_rate: Decimal, market_rate: Decimal):
        marker_id = f"year-end-{fiscal_year}"
        release_lines = [
            self.processor.release_line(None, target_month, line, PAYOUT_YEAR_END_RELEASE, line.year_end_usd,
                                        settlement_id=marker_id)
            for line in lines
        ]
        amount_usd = sum((line.year_end_usd for line in lines), ZERO)
        amount_local = sum((quantize_money(line.year_end_usd * line.exchange_rate_used) for line in lines), ZERO)
        payout = self.processor.release_row(
            payout_id=f"{marker_id}:{employee.employee_id}:{target_month}",
            run_id=None,
            employee=employee,
            month_year=target_month,
            payout_type=PAYOUT_YEAR_END_RELEASE,
            amount_usd=amount_usd,
            amount_local=amount_local,
            compensation_rate=compensation_rate,
            market_rate=market_rate,
            lines=lines,
            notes=f"Year-end release for FY{fiscal_year}",
        )
        return payout, release_lines
