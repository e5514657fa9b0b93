"""
Domain Models for the Payout Calculation Engine

These dataclasses provide type-safe representations of all business entities.
All monetary values and percentages use Decimal for precision. Percentages are
stored as percent numbers (70 means 70%).
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal

# =============================================================================
# CONSTANTS
# =============================================================================

LINEAR = "Linear"
STEPPED_ACCELERATOR = "Stepped_Accelerator"
GATED_THRESHOLD = "Gated_Threshold"
LOGIC_TYPES = (LINEAR, STEPPED_ACCELERATOR, GATED_THRESHOLD)

# The eight participant slots on a deal, in display order.
PARTICIPANT_ROLES = (
    "sales_rep",
    "sales_head",
    "sales_engineering",
    "sales_engineering_head",
    "product_specialist",
    "product_specialist_head",
    "solution_manager",
    "solution_manager_head",
)

RUN_DRAFT = "draft"
RUN_REVIEW = "review"
RUN_APPROVED = "approved"
RUN_FINALIZED = "finalized"
RUN_STATUSES = (RUN_DRAFT, RUN_REVIEW, RUN_APPROVED, RUN_FINALIZED)

ADJ_PENDING = "pending"
ADJ_APPROVED = "approved"
ADJ_REJECTED = "rejected"
ADJ_APPLIED = "applied"
ADJUSTMENT_TYPES = ("correction", "clawback_reversal", "manual_override")

CLAWBACK_PENDING = "pending"
CLAWBACK_RECOVERING = "recovering"
CLAWBACK_ACTIVE = "active"
CLAWBACK_CLOSED = "closed"

PAYOUT_VARIABLE_PAY = "Variable Pay"
PAYOUT_NRR = "NRR Additional Pay"
PAYOUT_SPIFF = "SPIFF"
PAYOUT_COLLECTION_RELEASE = "Collection Release"
PAYOUT_YEAR_END_RELEASE = "Year-End Release"
PAYOUT_CLAWBACK = "Clawback"
LINE_COLLECTION_FORFEIT = "Collection Forfeit"

COMMISSION_PERPETUAL = "Perpetual License"
COMMISSION_MANAGED_SERVICES = "Managed Services"
COMMISSION_IMPLEMENTATION = "Implementation"
COMMISSION_CR_ER = "CR/ER"
COMMISSION_TYPES = (
    COMMISSION_PERPETUAL,
    COMMISSION_MANAGED_SERVICES,
    COMMISSION_IMPLEMENTATION,
    COMMISSION_CR_ER,
)

RATE_COMPENSATION = "compensation"
RATE_MARKET = "market"

ZERO = Decimal("0")


def to_decimal(value, default: str = "0") -> Decimal:
    """Parse a JSON number (or None) into Decimal."""
    if value is None:
        return Decimal(default)
    return Decimal(str(value))


def to_optional_decimal(value) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None


def to_date(value) -> date | None:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])


def to_month(value: str) -> str:
    """Normalize '2025-04' or '2025-04-01' to 'YYYY-MM'."""
    return value[:7]


# =============================================================================
# INPUT MODELS
# =============================================================================


@dataclass
class Employee:
    """An employee on (or off) an incentive plan."""

    employee_id: str
    full_name: str
    local_currency: str = "USD"
    date_of_hire: date | None = None
    departure_date: date | None = None
    tvp_usd: Decimal = ZERO
    compensation_exchange_rate: Decimal | None = None
    manager_employee_id: str | None = None
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "Employee":
        return cls(
            employee_id=data["employee_id"],
            full_name=data.get("full_name", data["employee_id"]),
            local_currency=data.get("local_currency", "USD"),
            date_of_hire=to_date(data.get("date_of_hire")),
            departure_date=to_date(data.get("departure_date")),
            tvp_usd=to_decimal(data.get("tvp_usd")),
            compensation_exchange_rate=to_optional_decimal(data.get("compensation_exchange_rate")),
            manager_employee_id=data.get("manager_employee_id"),
            is_active=data.get("is_active", True),
        )


@dataclass
class MultiplierTier:
    """A single row in a multiplier grid. max_pct None = unbounded."""

    min_pct: Decimal
    max_pct: Decimal | None
    multiplier: Decimal

    def contains(self, achievement_pct: Decimal) -> bool:
        if achievement_pct < self.min_pct:
            return False
        return self.max_pct is None or achievement_pct < self.max_pct

    @classmethod
    def from_dict(cls, data: dict) -> "MultiplierTier":
        return cls(
            min_pct=to_decimal(data["min_pct"]),
            max_pct=to_optional_decimal(data.get("max_pct")),
            multiplier=to_decimal(data.get("multiplier", data.get("multiplier_value"))),
        )


@dataclass
class PayoutSplit:
    """Booking / collection / year-end percentages."""

    booking_pct: Decimal
    collection_pct: Decimal
    year_end_pct: Decimal

    @classmethod
    def from_dict(cls, data: dict, default: "PayoutSplit") -> "PayoutSplit":
        def pick(key: str, fallback: Decimal) -> Decimal:
            value = data.get(key)
            return Decimal(str(value)) if value is not None else fallback

        return cls(
            booking_pct=pick("payout_on_booking_pct", default.booking_pct),
            collection_pct=pick("payout_on_collection_pct", default.collection_pct),
            year_end_pct=pick("payout_on_year_end_pct", default.year_end_pct),
        )


METRIC_DEFAULT_SPLIT = PayoutSplit(Decimal("70"), Decimal("25"), Decimal("5"))
COMMISSION_DEFAULT_SPLIT = PayoutSplit(Decimal("75"), Decimal("25"), Decimal("0"))
NRR_DEFAULT_SPLIT = PayoutSplit(Decimal("0"), Decimal("100"), Decimal("0"))
SPIFF_DEFAULT_SPLIT = PayoutSplit(Decimal("0"), Decimal("100"), Decimal("0"))


@dataclass
class PlanMetric:
    """A weighted metric on a compensation plan."""

    metric_name: str
    weightage_percent: Decimal
    logic_type: str = LINEAR
    gate_threshold_percent: Decimal | None = None
    split: PayoutSplit = field(default_factory=lambda: METRIC_DEFAULT_SPLIT)
    multiplier_grid: list[MultiplierTier] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "PlanMetric":
        grid = [MultiplierTier.from_dict(t) for t in data.get("multiplier_grid", data.get("multiplier_grids", []))]
        return cls(
            metric_name=data["metric_name"],
            weightage_percent=to_decimal(data["weightage_percent"]),
            logic_type=data.get("logic_type", LINEAR),
            gate_threshold_percent=to_optional_decimal(data.get("gate_threshold_percent")),
            split=PayoutSplit.from_dict(data, METRIC_DEFAULT_SPLIT),
            multiplier_grid=sorted(grid, key=lambda t: t.min_pct),
        )


@dataclass
class PlanCommission:
    """A commission rate for one commission type."""

    commission_type: str
    commission_rate_pct: Decimal
    min_threshold_usd: Decimal | None = None
    min_gp_margin_pct: Decimal | None = None
    is_active: bool = True
    split: PayoutSplit = field(default_factory=lambda: COMMISSION_DEFAULT_SPLIT)

    @classmethod
    def from_dict(cls, data: dict) -> "PlanCommission":
        return cls(
            commission_type=data["commission_type"],
            commission_rate_pct=to_decimal(data.get("commission_rate_pct")),
            min_threshold_usd=to_optional_decimal(data.get("min_threshold_usd")),
            min_gp_margin_pct=to_optional_decimal(data.get("min_gp_margin_pct")),
            is_active=data.get("is_active", True),
            split=PayoutSplit.from_dict(data, COMMISSION_DEFAULT_SPLIT),
        )


@dataclass
class PlanSpiff:
    """A flat-rate SPIFF linked to a metric's deal value."""

    spiff_name: str
    linked_metric_name: str
    spiff_rate_pct: Decimal
    min_deal_value_usd: Decimal | None = None
    is_active: bool = True
    split: PayoutSplit = field(default_factory=lambda: SPIFF_DEFAULT_SPLIT)

    @classmethod
    def from_dict(cls, data: dict) -> "PlanSpiff":
        return cls(
            spiff_name=data["spiff_name"],
            linked_metric_name=data["linked_metric_name"],
            spiff_rate_pct=to_decimal(data.get("spiff_rate_pct")),
            min_deal_value_usd=to_optional_decimal(data.get("min_deal_value_usd")),
            is_active=data.get("is_active", True),
            split=PayoutSplit.from_dict(data, SPIFF_DEFAULT_SPLIT),
        )


@dataclass
class CompPlan:
    """A named, year-scoped compensation plan."""

    plan_id: str
    name: str
    effective_year: int
    metrics: list[PlanMetric] = field(default_factory=list)
    commissions: list[PlanCommission] = field(default_factory=list)
    spiffs: list[PlanSpiff] = field(default_factory=list)
    is_clawback_exempt: bool = False
    clawback_period_days: int = 180
    nrr_ote_percent: Decimal = ZERO
    cr_er_min_gp_margin_pct: Decimal = ZERO
    impl_min_gp_margin_pct: Decimal = ZERO
    nrr_split: PayoutSplit = field(default_factory=lambda: NRR_DEFAULT_SPLIT)

    @classmethod
    def from_dict(cls, data: dict) -> "CompPlan":
        nrr = {
            "payout_on_booking_pct": data.get("nrr_payout_on_booking_pct"),
            "payout_on_collection_pct": data.get("nrr_payout_on_collection_pct"),
            "payout_on_year_end_pct": data.get("nrr_payout_on_year_end_pct"),
        }
        return cls(
            plan_id=data["plan_id"],
            name=data.get("name", data["plan_id"]),
            effective_year=data["effective_year"],
            metrics=[PlanMetric.from_dict(m) for m in data.get("metrics", [])],
            commissions=[PlanCommission.from_dict(c) for c in data.get("commissions", [])],
            spiffs=[PlanSpiff.from_dict(s) for s in data.get("spiffs", [])],
            is_clawback_exempt=data.get("is_clawback_exempt", False),
            clawback_period_days=data.get("clawback_period_days", 180),
            nrr_ote_percent=to_decimal(data.get("nrr_ote_percent")),
            cr_er_min_gp_margin_pct=to_decimal(data.get("cr_er_min_gp_margin_pct")),
            impl_min_gp_margin_pct=to_decimal(data.get("impl_min_gp_margin_pct")),
            nrr_split=PayoutSplit.from_dict(nrr, NRR_DEFAULT_SPLIT),
        )


@dataclass
class Assignment:
    """Time-boxed binding of an employee to a plan (one segment)."""

    assignment_id: str
    employee_id: str
    plan_id: str
    effective_start_date: date
    effective_end_date: date
    target_bonus_usd: Decimal
    compensation_exchange_rate: Decimal | None = None

    def covers(self, day: date) -> bool:
        return self.effective_start_date <= day <= self.effective_end_date

    @classmethod
    def from_dict(cls, data: dict) -> "Assignment":
        return cls(
            assignment_id=data["assignment_id"],
            employee_id=data["employee_id"],
            plan_id=data["plan_id"],
            effective_start_date=to_date(data["effective_start_date"]),
            effective_end_date=to_date(data["effective_end_date"]),
            target_bonus_usd=to_decimal(data.get("target_bonus_usd")),
            compensation_exchange_rate=to_optional_decimal(data.get("compensation_exchange_rate")),
        )


@dataclass
class PerformanceTarget:
    """Annual target for one metric name, optionally split by quarter."""

    employee_id: str
    metric_name: str
    effective_year: int
    target_value_usd: Decimal | None = None
    quarterly_targets: dict[int, Decimal] = field(default_factory=dict)

    @property
    def annual_target(self) -> Decimal:
        if self.target_value_usd is not None:
            return self.target_value_usd
        return sum(self.quarterly_targets.values(), ZERO)

    @classmethod
    def from_dict(cls, data: dict) -> "PerformanceTarget":
        quarters = {int(q): to_decimal(v) for q, v in (data.get("quarterly_targets") or {}).items()}
        return cls(
            employee_id=data["employee_id"],
            metric_name=data["metric_name"],
            effective_year=data["effective_year"],
            target_value_usd=to_optional_decimal(data.get("target_value_usd")),
            quarterly_targets=quarters,
        )


# Monetary fields a deal may carry, keyed by the name used in the input feed.
DEAL_VALUE_FIELDS = (
    "new_software_booking_arr_usd",
    "managed_services_usd",
    "implementation_usd",
    "cr_usd",
    "er_usd",
    "perpetual_license_usd",
    "tcv_usd",
    "first_year_amc_usd",
    "first_year_subscription_usd",
)


@dataclass
class Deal:
    """One sales event with up to eight credited participants."""

    deal_id: str
    month_year: str
    project_id: str = ""
    customer_name: str | None = None
    gp_margin_percent: Decimal | None = None
    values: dict[str, Decimal] = field(default_factory=dict)
    participants: dict[str, str] = field(default_factory=dict)

    def value(self, field_name: str) -> Decimal:
        return self.values.get(field_name, ZERO)

    @property
    def cr_er_usd(self) -> Decimal:
        return self.value("cr_usd") + self.value("er_usd")

    def credits(self, employee_id: str, roles: tuple[str, ...] = PARTICIPANT_ROLES) -> bool:
        return any(self.participants.get(role) == employee_id for role in roles)

    @classmethod
    def from_dict(cls, data: dict) -> "Deal":
        participants = {}
        for role in PARTICIPANT_ROLES:
            emp = data.get(f"{role}_employee_id")
            if emp:
                participants[role] = emp
        values = {name: to_decimal(data[name]) for name in DEAL_VALUE_FIELDS if data.get(name) is not None}
        return cls(
            deal_id=data["deal_id"],
            month_year=to_month(data["month_year"]),
            project_id=data.get("project_id", ""),
            customer_name=data.get("customer_name"),
            gp_margin_percent=to_optional_decimal(data.get("gp_margin_percent")),
            values=values,
            participants=participants,
        )


@dataclass
class DealCollection:
    """Collection status of a booked deal."""

    deal_id: str
    is_collected: bool = False
    collection_date: date | None = None
    first_milestone_due_date: date | None = None

    def collected_by(self, day: date) -> bool:
        return self.is_collected and self.collection_date is not None and self.collection_date <= day

    @classmethod
    def from_dict(cls, data: dict) -> "DealCollection":
        return cls(
            deal_id=data["deal_id"],
            is_collected=data.get("is_collected", False),
            collection_date=to_date(data.get("collection_date")),
            first_milestone_due_date=to_date(data.get("first_milestone_due_date")),
        )


@dataclass
class ClosingARRActual:
    """Point-in-time portfolio snapshot for one customer/project in one month.

    Snapshots are never summed across months; see
    calculators.attribution.latest_closing_arr.
    """

    month_year: str
    customer_code: str
    closing_arr: Decimal
    end_date: date | None = None
    pid: str = ""
    sales_rep_employee_id: str | None = None
    sales_head_employee_id: str | None = None

    def credits(self, employee_id: str) -> bool:
        return employee_id in (self.sales_rep_employee_id, self.sales_head_employee_id)

    @classmethod
    def from_dict(cls, data: dict) -> "ClosingARRActual":
        return cls(
            month_year=to_month(data["month_year"]),
            customer_code=data.get("customer_code", ""),
            closing_arr=to_decimal(data.get("closing_arr")),
            end_date=to_date(data.get("end_date")),
            pid=data.get("pid", ""),
            sales_rep_employee_id=data.get("sales_rep_employee_id"),
            sales_head_employee_id=data.get("sales_head_employee_id"),
        )


@dataclass
class ExchangeRate:
    """Market rate: local currency units per 1 USD for a month."""

    currency_code: str
    month_year: str
    rate: Decimal

    @classmethod
    def from_dict(cls, data: dict) -> "ExchangeRate":
        return cls(
            currency_code=data["currency_code"],
            month_year=to_month(data["month_year"]),
            rate=to_decimal(data.get("rate", data.get("rate_to_usd"))),
        )


@dataclass
class PayoutDataset:
    """All master and activity data one calculation reads."""

    employees: dict[str, Employee] = field(default_factory=dict)
    plans: dict[str, CompPlan] = field(default_factory=dict)
    assignments: list[Assignment] = field(default_factory=list)
    targets: list[PerformanceTarget] = field(default_factory=list)
    deals: list[Deal] = field(default_factory=list)
    collections: dict[str, DealCollection] = field(default_factory=dict)
    closing_arr: list[ClosingARRActual] = field(default_factory=list)
    exchange_rates: list[ExchangeRate] = field(default_factory=list)

    def assignments_for(self, employee_id: str) -> list[Assignment]:
        return [a for a in self.assignments if a.employee_id == employee_id]

    def targets_for(self, employee_id: str) -> list[PerformanceTarget]:
        return [t for t in self.targets if t.employee_id == employee_id]

    def deals_between(self, first_month: str, last_month: str) -> list[Deal]:
        return [d for d in self.deals if first_month <= d.month_year <= last_month]

    @property
    def deals_by_id(self) -> dict[str, Deal]:
        return {d.deal_id: d for d in self.deals}

    @classmethod
    def from_dict(cls, data: dict) -> "PayoutDataset":
        employees = [Employee.from_dict(e) for e in data.get("employees", [])]
        plans = [CompPlan.from_dict(p) for p in data.get("plans", [])]
        collections = [DealCollection.from_dict(c) for c in data.get("deal_collections", [])]
        return cls(
            employees={e.employee_id: e for e in employees},
            plans={p.plan_id: p for p in plans},
            assignments=[Assignment.from_dict(a) for a in data.get("assignments", [])],
            targets=[PerformanceTarget.from_dict(t) for t in data.get("performance_targets", [])],
            deals=[Deal.from_dict(d) for d in data.get("deals", [])],
            collections={c.deal_id: c for c in collections},
            closing_arr=[ClosingARRActual.from_dict(s) for s in data.get("closing_arr_actuals", [])],
            exchange_rates=[ExchangeRate.from_dict(r) for r in data.get("exchange_rates", [])],
        )


# =============================================================================
# LEDGER MODELS (written by the engine)
# =============================================================================


@dataclass
class PayoutRun:
    """One calculation run per calendar month."""

    run_id: str
    month_year: str
    run_status: str = RUN_DRAFT
    is_locked: bool = False
    is_calculating: bool = False
    calculated_at: str | None = None
    calculated_by: str | None = None
    reviewed_at: str | None = None
    reviewed_by: str | None = None
    approved_at: str | None = None
    approved_by: str | None = None
    finalized_at: str | None = None
    finalized_by: str | None = None
    total_payout_usd: Decimal = ZERO
    total_variable_pay_usd: Decimal = ZERO
    total_commissions_usd: Decimal = ZERO
    total_additional_pay_usd: Decimal = ZERO
    total_clawbacks_usd: Decimal = ZERO
    notes: str | None = None


@dataclass
class MonthlyPayout:
    """Ledger of record: one row per (employee, payout_type, run)."""

    payout_id: str
    payout_run_id: str | None
    employee_id: str
    month_year: str
    payout_type: str
    calculated_amount_usd: Decimal
    calculated_amount_local: Decimal
    local_currency: str
    exchange_rate_used: Decimal
    exchange_rate_type: str
    compensation_rate: Decimal
    market_rate: Decimal
    booking_amount_usd: Decimal = ZERO
    booking_amount_local: Decimal = ZERO
    collection_amount_usd: Decimal = ZERO
    collection_amount_local: Decimal = ZERO
    year_end_amount_usd: Decimal = ZERO
    year_end_amount_local: Decimal = ZERO
    plan_id: str | None = None
    adjustment_id: str | None = None
    notes: str | None = None


@dataclass
class PayoutMetricDetail:
    """Per-metric workings behind a Variable Pay row."""

    payout_run_id: str
    employee_id: str
    month_year: str
    metric_name: str
    target_usd: Decimal
    actual_usd: Decimal
    achievement_pct: Decimal
    multiplier: Decimal
    allocation_usd: Decimal
    ytd_eligible_usd: Decimal
    prior_paid_usd: Decimal
    this_month_usd: Decimal


@dataclass
class DealPayoutLine:
    """A deal's share of one payout family for one employee in one run."""

    line_id: str
    payout_run_id: str | None
    employee_id: str
    month_year: str
    deal_id: str | None
    payout_type: str
    plan_id: str | None
    deal_value_usd: Decimal
    proportion_pct: Decimal
    amount_usd: Decimal
    booking_usd: Decimal
    collection_usd: Decimal
    year_end_usd: Decimal
    clawback_eligible_usd: Decimal
    exchange_rate_used: Decimal
    exchange_rate_type: str = RATE_COMPENSATION
    metric_name: str | None = None
    source_line_id: str | None = None
    settlement_id: str | None = None


@dataclass
class ClawbackRecovery:
    """An amount recovered against a clawback entry by a run or settlement."""

    source_id: str
    month_year: str
    amount_usd: Decimal


@dataclass
class ClawbackEntry:
    """Owed recovery of previously paid booking amounts for one deal."""

    entry_id: str
    employee_id: str
    deal_id: str
    payout_run_id: str
    triggered_month: str
    original_amount_usd: Decimal
    status: str = CLAWBACK_PENDING
    recoveries: list[ClawbackRecovery] = field(default_factory=list)
    written_off_usd: Decimal = ZERO

    @property
    def recovered_amount_usd(self) -> Decimal:
        return sum((r.amount_usd for r in self.recoveries), ZERO)

    @property
    def remaining_amount_usd(self) -> Decimal:
        return self.original_amount_usd - self.recovered_amount_usd - self.written_off_usd

    def remaining_excluding(self, source_id: str) -> Decimal:
        """Outstanding balance ignoring recoveries made by source_id."""
        recovered = sum((r.amount_usd for r in self.recoveries if r.source_id != source_id), ZERO)
        return self.original_amount_usd - recovered - self.written_off_usd

    def refresh_status(self, carried_forward: bool = False) -> None:
        if self.remaining_amount_usd <= 0:
            self.status = CLAWBACK_CLOSED
        elif carried_forward:
            self.status = CLAWBACK_ACTIVE
        elif self.recovered_amount_usd > 0:
            self.status = CLAWBACK_RECOVERING
        else:
            self.status = CLAWBACK_PENDING


@dataclass
class PayoutAdjustment:
    """Correction to a locked month, applied into a later month."""

    adjustment_id: str
    payout_run_id: str
    employee_id: str
    adjustment_type: str
    original_amount_usd: Decimal
    adjustment_amount_usd: Decimal
    local_currency: str
    exchange_rate_used: Decimal
    reason: str
    status: str = ADJ_PENDING
    applied_to_month: str | None = None
    requested_by: str | None = None
    approved_by: str | None = None
    applied_payout_id: str | None = None

    @property
    def adjustment_amount_local(self) -> Decimal:
        return self.adjustment_amount_usd * self.exchange_rate_used


@dataclass
class FnFSettlementLine:
    """One line of a Full & Final settlement tranche."""

    settlement_id: str
    tranche: int
    line_type: str
    payout_type: str | None
    amount_usd: Decimal
    amount_local: Decimal
    local_currency: str
    exchange_rate_used: Decimal
    deal_id: str | None = None
    notes: str = ""


@dataclass
class FnFSettlement:
    """Two-tranche departure settlement for one employee."""

    settlement_id: str
    employee_id: str
    departure_date: date
    fiscal_year: int
    collection_grace_days: int = 90
    tranche1_status: str = "draft"
    tranche1_total_usd: Decimal = ZERO
    tranche1_calculated_at: str | None = None
    tranche2_status: str = "pending"
    tranche2_total_usd: Decimal = ZERO
    tranche2_calculated_at: str | None = None
    clawback_carryforward_usd: Decimal = ZERO
    pending_collection_usd: Decimal = ZERO
    lines: list[FnFSettlementLine] = field(default_factory=list)

    @property
    def tranche2_eligible_date(self) -> date:
        return self.departure_date + timedelta(days=self.collection_grace_days)


# =============================================================================
# RESULT MODELS
# =============================================================================


@dataclass
class TrancheSplit:
    """A gross amount split into booking / collection / year-end."""

    gross: Decimal = ZERO
    booking: Decimal = ZERO
    collection: Decimal = ZERO
    year_end: Decimal = ZERO


@dataclass
class ProRationResult:
    """Blended, pro-rated target bonus for one fiscal year."""

    annual_target_bonus_usd: Decimal = ZERO
    effective_target_bonus_usd: Decimal = ZERO
    pro_ration_factor: Decimal = ZERO
    is_blended: bool = False


@dataclass
class MetricResult:
    """Output of the metric evaluator for one metric."""

    metric_name: str
    target_usd: Decimal
    actual_usd: Decimal
    achievement_pct: Decimal
    allocation_usd: Decimal
    multiplier: Decimal
    eligible_usd: Decimal
    logic_type: str
    is_gated_out: bool = False


@dataclass
class CommissionResult:
    """Output of the commission evaluator for one commission type."""

    commission_type: str
    aggregate_usd: Decimal
    rate_pct: Decimal
    min_threshold_usd: Decimal | None
    qualifies: bool
    gross_usd: Decimal
    deal_values: dict[str, Decimal] = field(default_factory=dict)
    excluded_deals: dict[str, str] = field(default_factory=dict)


@dataclass
class NrrResult:
    """Output of the NRR evaluator."""

    eligible_cr_er_usd: Decimal = ZERO
    total_cr_er_usd: Decimal = ZERO
    eligible_impl_usd: Decimal = ZERO
    total_impl_usd: Decimal = ZERO
    nrr_target_usd: Decimal = ZERO
    achievement_pct: Decimal = ZERO
    payout_usd: Decimal = ZERO
    deal_values: dict[str, Decimal] = field(default_factory=dict)
    excluded_deals: dict[str, str] = field(default_factory=dict)

    @property
    def nrr_actuals_usd(self) -> Decimal:
        return self.eligible_cr_er_usd + self.eligible_impl_usd


@dataclass
class SpiffResult:
    """Output of the SPIFF evaluator for one SPIFF."""

    spiff_name: str
    rate_pct: Decimal
    eligible_actuals_usd: Decimal = ZERO
    payout_usd: Decimal = ZERO
    deal_values: dict[str, Decimal] = field(default_factory=dict)
    excluded_deals: dict[str, str] = field(default_factory=dict)


@dataclass
class DealShare:
    """One deal's proportional share of an employee's payout."""

    deal_id: str | None
    deal_value_usd: Decimal
    proportion_pct: Decimal
    amount_usd: Decimal
    split: TrancheSplit


@dataclass
class EmployeeFailure:
    """A per-employee error collected during a batch."""

    employee_id: str
    code: str
    message: str


@dataclass
class EmployeePayoutResult:
    """Everything one employee's calculation writes for one run."""

    employee_id: str
    payouts: list[MonthlyPayout] = field(default_factory=list)
    metric_details: list[PayoutMetricDetail] = field(default_factory=list)
    deal_lines: list[DealPayoutLine] = field(default_factory=list)
    clawback_entries: list[ClawbackEntry] = field(default_factory=list)
    recoveries: dict[str, ClawbackRecovery] = field(default_factory=dict)
    plan_id: str | None = None

    @property
    def total_payout_usd(self) -> Decimal:
        return sum((p.calculated_amount_usd for p in self.payouts), ZERO)


@dataclass
class RunCalculationResult:
    """Summary returned by a calculate call."""

    run_id: str
    month_year: str
    calculated_at: str
    total_employees: int = 0
    total_payout_usd: Decimal = ZERO
    total_variable_pay_usd: Decimal = ZERO
    total_commissions_usd: Decimal = ZERO
    total_additional_pay_usd: Decimal = ZERO
    total_clawbacks_usd: Decimal = ZERO
    employee_results: list[EmployeePayoutResult] = field(default_factory=list)
    failures: list[EmployeeFailure] = field(default_factory=list)
    skipped_employees: list[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.failures


# =============================================================================
# PROCESSING CONTEXT
# =============================================================================


@dataclass
class ProcessingContext:
    """
    Mutable context passed through the per-employee pipeline.

    Inputs are loaded before the pipeline starts; the resolved fields are
    filled in by the first steps.
    """

    # Inputs
    run_id: str
    month_year: str
    employee: Employee
    dataset: PayoutDataset
    prior_metric_details: list[PayoutMetricDetail] = field(default_factory=list)
    prior_nrr_paid_usd: Decimal = ZERO
    paid_lines: list[DealPayoutLine] = field(default_factory=list)
    released_line_ids: set[str] = field(default_factory=set)
    clawback_entries: list[ClawbackEntry] = field(default_factory=list)
    as_of: date | None = None

    # Resolved by the pipeline
    assignment: Assignment | None = None
    plan: CompPlan | None = None
    compensation_rate: Decimal = Decimal("1")
    market_rate: Decimal = Decimal("1")
    proration: ProRationResult | None = None

    @property
    def fiscal_year(self) -> int:
        return int(self.month_year[:4])

    @property
    def employee_id(self) -> str:
        return self.employee.employee_id

    @property
    def target_bonus_usd(self) -> Decimal:
        return self.proration.effective_target_bonus_usd if self.proration else ZERO
