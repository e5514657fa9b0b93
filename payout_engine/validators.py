"""
Input Validation for the Payout Engine

Collects every blocking problem before a run is calculated so the caller can
report them all at once. Errors block; warnings are informational.
"""

import logging
from dataclasses import dataclass, field

from .calculators.proration import find_overlapping_segments, fiscal_year_of, month_end, month_start
from .calculators.rates import FxResolver
from .models import CompPlan, Employee, PayoutDataset, PayoutRun, PayoutSplit
from .plan_resolution import PlanResolver

logger = logging.getLogger(__name__)


@dataclass
class ValidationIssue:
    """One problem found during validation."""

    code: str
    message: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class PayoutValidationError(ValueError):
    """Raised with the full list of blocking issues."""

    def __init__(self, issues: list[ValidationIssue]):
        self.issues = list(issues)
        super().__init__("; ".join(issue.message for issue in self.issues))

    @classmethod
    def single(cls, code: str, message: str, **details) -> "PayoutValidationError":
        return cls([ValidationIssue(code, message, details)])


class RunStateError(PayoutValidationError):
    """An operation conflicts with the current state of a run, adjustment or settlement."""

    def __init__(self, message: str, code: str = "invalid_state", **details):
        super().__init__([ValidationIssue(code, message, details)])


@dataclass
class ValidationReport:
    """Result of validate_run_prerequisites."""

    month_year: str
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    paid_employee_ids: list[str] = field(default_factory=list)
    skipped_employee_ids: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def is_in_tenure(employee: Employee, month_year: str) -> bool:
    """Employee was employed on at least one day of the month."""
    if employee.date_of_hire is not None and employee.date_of_hire > month_end(month_year):
        return False
    if employee.departure_date is not None and employee.departure_date < month_start(month_year):
        return False
    return employee.is_active or employee.departure_date is not None


def split_issues(owner: str, split: PayoutSplit) -> list[str]:
    problems = []
    for name, pct in (("booking", split.booking_pct),
                      ("collection", split.collection_pct),
                      ("year_end", split.year_end_pct)):
        if pct < 0:
            problems.append(f"{owner}: {name} split percentage cannot be negative, got: {pct}")
    return problems


class RunPrerequisiteValidator:
    """Checks that a month can be calculated."""

    def __init__(self, resolver: PlanResolver | None = None, base_currency: str = "USD"):
        self.resolver = resolver or PlanResolver()
        self.base_currency = base_currency

    def validate(self, month_year: str, dataset: PayoutDataset, run: PayoutRun | None = None,
                 settled: dict[str, str] | None = None) -> ValidationReport:
        """
        settled maps employee_id to the departure month of a Full & Final
        settlement; those employees are paid through the settlement from that
        month on.
        """
        settled = settled or {}
        report = ValidationReport(month_year=month_year)
        fiscal_year = fiscal_year_of(month_year)
        fx = FxResolver(dataset.exchange_rates, self.base_currency)

        if run is not None and run.is_locked:
            report.errors.append(ValidationIssue(
                "month_locked", f"Payout run for {month_year} is finalized and locked",
                {"run_id": run.run_id},
            ))

        in_tenure = [e for e in dataset.employees.values() if is_in_tenure(e, month_year)]
        if not in_tenure:
            report.errors.append(ValidationIssue(
                "no_employees", f"No active employees found for {month_year}",
            ))

        missing_currencies: dict[str, list[str]] = {}
        for employee in sorted(in_tenure, key=lambda e: e.employee_id):
            if employee.employee_id in settled and settled[employee.employee_id] <= month_year:
                report.skipped_employee_ids.append(employee.employee_id)
                report.warnings.append(ValidationIssue(
                    "settled_via_fnf",
                    f"{employee.full_name} is paid through a Full & Final settlement and will be skipped",
                    {"employee_id": employee.employee_id},
                ))
                continue
            segments = self.resolver.year_segments(dataset.assignments_for(employee.employee_id), fiscal_year)
            if employee.tvp_usd <= 0 and not segments:
                report.skipped_employee_ids.append(employee.employee_id)
                report.warnings.append(ValidationIssue(
                    "no_incentive_configuration",
                    f"{employee.full_name} has no TVP or plan assignment and will be skipped",
                    {"employee_id": employee.employee_id},
                ))
                continue

            report.paid_employee_ids.append(employee.employee_id)
            self._validate_employee(report, employee, segments, dataset, month_year, fx)

            if fx.market_rate(employee.local_currency, month_year) is None:
                missing_currencies.setdefault(employee.local_currency, []).append(employee.employee_id)

        for currency, employee_ids in sorted(missing_currencies.items()):
            report.errors.append(ValidationIssue(
                "missing_market_rate",
                f"No market exchange rate for {currency} in {month_year}",
                {"currency": currency, "employee_ids": employee_ids},
            ))

        if report.errors:
            logger.info(f"Validation for {month_year} found {len(report.errors)} error(s)")
        return report

    def _validate_employee(self, report: ValidationReport, employee: Employee, segments, dataset: PayoutDataset,
                           month_year: str, fx: FxResolver) -> None:
        emp_id = employee.employee_id
        fiscal_year = fiscal_year_of(month_year)

        for first, second in find_overlapping_segments(segments):
            report.errors.append(ValidationIssue(
                "overlapping_assignments",
                f"{employee.full_name} has overlapping plan assignments "
                f"{first.assignment_id} and {second.assignment_id}",
                {"employee_id": emp_id, "assignment_ids": [first.assignment_id, second.assignment_id]},
            ))

        assignment = self.resolver.active_assignment(segments, month_end(month_year))
        if assignment is None:
            assignment = self.resolver.active_assignment(segments, month_start(month_year))
        if assignment is None:
            report.errors.append(ValidationIssue(
                "missing_plan_assignment",
                f"{employee.full_name} has no plan assignment covering {month_year}",
                {"employee_id": emp_id},
            ))
        else:
            plan = dataset.plans.get(assignment.plan_id)
            if plan is None:
                report.errors.append(ValidationIssue(
                    "unknown_plan",
                    f"Assignment {assignment.assignment_id} references unknown plan {assignment.plan_id}",
                    {"employee_id": emp_id, "plan_id": assignment.plan_id},
                ))
            else:
                for problem in self._plan_problems(plan):
                    report.errors.append(ValidationIssue(
                        "invalid_plan_configuration", problem, {"plan_id": plan.plan_id},
                    ))

            if fx.compensation_rate(employee, assignment) is None:
                report.errors.append(ValidationIssue(
                    "missing_compensation_rate",
                    f"{employee.full_name} ({employee.local_currency}) has no compensation exchange rate",
                    {"employee_id": emp_id, "currency": employee.local_currency},
                ))

        targets = [t for t in dataset.targets_for(emp_id) if t.effective_year == fiscal_year]
        if not targets:
            report.errors.append(ValidationIssue(
                "missing_performance_target",
                f"{employee.full_name} has no performance targets for {fiscal_year}",
                {"employee_id": emp_id, "fiscal_year": fiscal_year},
            ))

    @staticmethod
    def _plan_problems(plan: CompPlan) -> list[str]:
        problems = []
        for metric in plan.metrics:
            problems.extend(split_issues(f"{plan.name} / {metric.metric_name}", metric.split))
        for commission in plan.commissions:
            problems.extend(split_issues(f"{plan.name} / {commission.commission_type}", commission.split))
        for spiff in plan.spiffs:
            problems.extend(split_issues(f"{plan.name} / {spiff.spiff_name}", spiff.split))
        problems.extend(split_issues(f"{plan.name} / NRR", plan.nrr_split))
        return problems
