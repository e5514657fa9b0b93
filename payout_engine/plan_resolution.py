"""
Plan Resolution

Single owner of the string mappings that tie plan configuration to activity
data: which deal field (or ARR snapshot) feeds a metric name, which deal field
feeds a commission type, and which participant roles each payout family
credits. Evaluators ask the resolver instead of keeping their own tables.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from .models import (
    COMMISSION_CR_ER, COMMISSION_IMPLEMENTATION, COMMISSION_MANAGED_SERVICES, COMMISSION_PERPETUAL,
    PARTICIPANT_ROLES, Assignment, CompPlan, Deal, PerformanceTarget, ZERO,
)

CLOSING_ARR = "closing_arr"
CR_ER_VALUE = "cr_er"


@dataclass(frozen=True)
class MetricSource:
    """Where a metric's actuals come from: a deal field, CR+ER, or ARR snapshots."""

    keyword: str
    source: str

    def matches(self, metric_name: str) -> bool:
        return self.keyword in normalize(metric_name)


def normalize(name: str) -> str:
    return " ".join(name.lower().replace("_", " ").split())


# Ordered: first keyword contained in the normalized metric name wins.
DEFAULT_METRIC_SOURCES = (
    MetricSource("closing arr", CLOSING_ARR),
    MetricSource("new software", "new_software_booking_arr_usd"),
    MetricSource("new booking", "new_software_booking_arr_usd"),
    MetricSource("managed services", "managed_services_usd"),
    MetricSource("perpetual license", "perpetual_license_usd"),
    MetricSource("implementation", "implementation_usd"),
    MetricSource("cr/er", CR_ER_VALUE),
    MetricSource("tcv", "tcv_usd"),
)

DEFAULT_COMMISSION_SOURCES = {
    COMMISSION_PERPETUAL: "perpetual_license_usd",
    COMMISSION_MANAGED_SERVICES: "managed_services_usd",
    COMMISSION_IMPLEMENTATION: "implementation_usd",
    COMMISSION_CR_ER: CR_ER_VALUE,
}

# Participant roles credited per payout family
ACHIEVEMENT_ROLES = PARTICIPANT_ROLES
COMMISSION_ROLES = ("sales_rep",)
NRR_ROLES = ("sales_rep", "sales_head")
SPIFF_ROLES = ("sales_rep", "sales_head")

# Target metric names that make up the NRR denominator
NRR_CR_ER_TARGET = "CR/ER"
NRR_IMPLEMENTATION_TARGET = "Implementation"


class PlanResolver:
    """Resolves metric/commission sources, role scopes, assignments and targets."""

    def __init__(self, metric_sources=None, commission_sources=None,
                 commission_roles=COMMISSION_ROLES, nrr_roles=NRR_ROLES, spiff_roles=SPIFF_ROLES):
        self.metric_sources = tuple(metric_sources or DEFAULT_METRIC_SOURCES)
        self.commission_sources = dict(commission_sources or DEFAULT_COMMISSION_SOURCES)
        self.achievement_roles = ACHIEVEMENT_ROLES
        self.commission_roles = tuple(commission_roles)
        self.nrr_roles = tuple(nrr_roles)
        self.spiff_roles = tuple(spiff_roles)

    # -- sources ----------------------------------------------------------

    def metric_source(self, metric_name: str) -> str | None:
        for entry in self.metric_sources:
            if entry.matches(metric_name):
                return entry.source
        return None

    def is_snapshot_metric(self, metric_name: str) -> bool:
        return self.metric_source(metric_name) == CLOSING_ARR

    def metric_deal_value(self, deal: Deal, metric_name: str) -> Decimal:
        """A deal's value for a metric; snapshot and unmapped metrics give 0."""
        return self._field_value(deal, self.metric_source(metric_name))

    def commission_deal_value(self, deal: Deal, commission_type: str) -> Decimal:
        return self._field_value(deal, self.commission_sources.get(commission_type))

    @staticmethod
    def _field_value(deal: Deal, source: str | None) -> Decimal:
        if source is None or source == CLOSING_ARR:
            return ZERO
        if source == CR_ER_VALUE:
            return deal.cr_er_usd
        return deal.value(source)

    # -- role scopes --------------------------------------------------------

    def achievement_deals(self, deals: list[Deal], employee_id: str) -> list[Deal]:
        return [d for d in deals if d.credits(employee_id, self.achievement_roles)]

    def commission_deals(self, deals: list[Deal], employee_id: str) -> list[Deal]:
        return [d for d in deals if d.credits(employee_id, self.commission_roles)]

    def nrr_deals(self, deals: list[Deal], employee_id: str) -> list[Deal]:
        return [d for d in deals if d.credits(employee_id, self.nrr_roles)]

    def spiff_deals(self, deals: list[Deal], employee_id: str) -> list[Deal]:
        return [d for d in deals if d.credits(employee_id, self.spiff_roles)]

    # -- assignments and targets ------------------------------------------

    @staticmethod
    def active_assignment(assignments: list[Assignment], day: date) -> Assignment | None:
        """The segment covering day; the latest-starting one if data overlaps."""
        covering = [a for a in assignments if a.covers(day)]
        if not covering:
            return None
        return max(covering, key=lambda a: a.effective_start_date)

    @staticmethod
    def year_segments(assignments: list[Assignment], fiscal_year: int) -> list[Assignment]:
        return [
            a for a in assignments
            if a.effective_start_date.year <= fiscal_year <= a.effective_end_date.year
        ]

    @staticmethod
    def target_value(targets: list[PerformanceTarget], metric_name: str, fiscal_year: int) -> Decimal:
        wanted = normalize(metric_name)
        for target in targets:
            if target.effective_year == fiscal_year and normalize(target.metric_name) == wanted:
                return target.annual_target
        return ZERO

    def nrr_targets(self, targets: list[PerformanceTarget], fiscal_year: int) -> tuple[Decimal, Decimal]:
        return (
            self.target_value(targets, NRR_CR_ER_TARGET, fiscal_year),
            self.target_value(targets, NRR_IMPLEMENTATION_TARGET, fiscal_year),
        )

    @staticmethod
    def plan_for(plans: dict[str, CompPlan], assignment: Assignment | None) -> CompPlan | None:
        if assignment is None:
            return None
        return plans.get(assignment.plan_id)
