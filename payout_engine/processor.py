"""
Employee Payout Processor - Per-Employee Orchestrator

Runs one employee through the calculation pipeline for one month. Pure with
respect to the store: everything it reads is on the ProcessingContext and
everything it produces is returned as an EmployeePayoutResult.
"""

from decimal import Decimal

from .calculators import (
    ClawbackTracker,
    CommissionEvaluator,
    DealAttributionEngine,
    FxResolver,
    MetricEvaluator,
    NrrEvaluator,
    ProRationCalculator,
    ReleaseCalculator,
    SpiffEvaluator,
    TrancheSplitter,
)
from .calculators.proration import month_end, month_start
from .calculators.rates import quantize_money
from .config import EngineConfig
from .models import (
    PAYOUT_CLAWBACK, PAYOUT_COLLECTION_RELEASE, PAYOUT_NRR, PAYOUT_SPIFF, PAYOUT_VARIABLE_PAY,
    RATE_COMPENSATION, RATE_MARKET, DealPayoutLine, DealShare, EmployeePayoutResult, MonthlyPayout,
    PayoutMetricDetail, ProcessingContext, TrancheSplit, ZERO,
)
from .plan_resolution import PlanResolver


class EmployeePayoutProcessor:
    """
    Per-employee pipeline:
    1. Resolve assignment, plan, exchange rates and pro-rated target bonus
    2. Variable pay (per metric, YTD minus prior finalized)
    3. Commissions (per commission type, this month's deals)
    4. NRR additional pay (YTD minus prior finalized)
    5. SPIFFs (this month's deals)
    6. Clawback triggers
    7. Collection releases (deals clawed back are held)
    8. Clawback recovery
    """

    def __init__(self, resolver: PlanResolver | None = None, config: EngineConfig | None = None):
        self.config = config or EngineConfig()
        self.resolver = resolver or PlanResolver()
        self.proration = ProRationCalculator()
        self.metric_evaluator = MetricEvaluator()
        self.commission_evaluator = CommissionEvaluator(self.resolver)
        self.nrr_evaluator = NrrEvaluator()
        self.spiff_evaluator = SpiffEvaluator(self.resolver)
        self.attribution = DealAttributionEngine(self.resolver)
        self.splitter = TrancheSplitter()
        self.releases = ReleaseCalculator(self.config.collection_grace_days)
        self.clawbacks = ClawbackTracker()

    def process(self, ctx: ProcessingContext) -> EmployeePayoutResult:
        result = EmployeePayoutResult(employee_id=ctx.employee_id)

        # Step 1: Resolve assignment, plan, rates and pro-ration
        if not self.resolve(ctx):
            return result
        result.plan_id = ctx.plan.plan_id

        # Step 2: Variable pay
        self.calculate_variable_pay(ctx, result)

        # Step 3: Commissions
        self.calculate_commissions(ctx, result)

        # Step 4: NRR additional pay
        self.calculate_nrr(ctx, result)

        # Step 5: SPIFFs
        self.calculate_spiffs(ctx, result)

        # Step 6: Clawback triggers
        result.clawback_entries = self.clawbacks.detect(
            ctx.employee_id, ctx.plan, ctx.paid_lines, ctx.dataset.deals_by_id, ctx.dataset.collections,
            {e.deal_id for e in ctx.clawback_entries}, ctx.run_id, ctx.month_year,
        )

        # Step 7: Collection releases
        self.release_collections(ctx, result)

        # Step 8: Clawback recovery
        self.recover_clawbacks(ctx, result)

        return result

    # =========================================================================
    # PIPELINE STEPS
    # =========================================================================

    def resolve(self, ctx: ProcessingContext) -> bool:
        """Fill assignment, plan, rates and pro-ration. False when nothing applies."""
        segments = self.resolver.year_segments(ctx.dataset.assignments_for(ctx.employee_id), ctx.fiscal_year)
        day = ctx.as_of or month_end(ctx.month_year)
        ctx.assignment = (
            self.resolver.active_assignment(segments, day)
            or self.resolver.active_assignment(segments, month_start(ctx.month_year))
        )
        ctx.plan = self.resolver.plan_for(ctx.dataset.plans, ctx.assignment)
        if ctx.plan is None:
            return False

        fx = FxResolver(ctx.dataset.exchange_rates, self.config.base_currency)
        compensation_rate = fx.compensation_rate(ctx.employee, ctx.assignment)
        market_rate = fx.market_rate(ctx.employee.local_currency, ctx.month_year)
        if compensation_rate is None:
            raise ValueError(f"No compensation exchange rate for {ctx.employee_id}")
        if market_rate is None:
            raise ValueError(f"No market exchange rate for {ctx.employee.local_currency} in {ctx.month_year}")
        ctx.compensation_rate = compensation_rate
        ctx.market_rate = market_rate

        ctx.proration = self.proration.calculate(segments, ctx.employee, ctx.fiscal_year, ctx.as_of)
        return True

    def rates_for(self, employee, dataset, month_year: str) -> tuple[Decimal | None, Decimal | None]:
        """(compensation rate, market rate) for an employee outside a run."""
        fx = FxResolver(dataset.exchange_rates, self.config.base_currency)
        assignments = dataset.assignments_for(employee.employee_id)
        assignment = self.resolver.active_assignment(assignments, month_end(month_year))
        if assignment is None and assignments:
            assignment = max(assignments, key=lambda a: a.effective_end_date)
        return (
            fx.compensation_rate(employee, assignment),
            fx.market_rate(employee.local_currency, month_year),
        )

    def calculate_variable_pay(self, ctx: ProcessingContext, result: EmployeePayoutResult) -> TrancheSplit:
        ytd_deals = ctx.dataset.deals_between(f"{ctx.fiscal_year:04d}-01", ctx.month_year)
        targets = ctx.dataset.targets_for(ctx.employee_id)
        target_bonus = quantize_money(ctx.target_bonus_usd)

        parts = []
        for metric in ctx.plan.metrics:
            target = self.resolver.target_value(targets, metric.metric_name, ctx.fiscal_year)
            actual = self.attribution.achievement_actual(
                metric.metric_name, ctx.employee_id, ytd_deals, ctx.dataset.closing_arr,
                ctx.fiscal_year, ctx.month_year,
            )
            evaluated = self.metric_evaluator.evaluate(metric, target, actual, target_bonus)
            ytd_eligible = quantize_money(evaluated.eligible_usd)
            prior_paid = sum(
                (d.this_month_usd for d in ctx.prior_metric_details if d.metric_name == metric.metric_name),
                ZERO,
            )
            this_month = max(ZERO, ytd_eligible - prior_paid)

            result.metric_details.append(PayoutMetricDetail(
                payout_run_id=ctx.run_id,
                employee_id=ctx.employee_id,
                month_year=ctx.month_year,
                metric_name=metric.metric_name,
                target_usd=target,
                actual_usd=actual,
                achievement_pct=evaluated.achievement_pct,
                multiplier=evaluated.multiplier,
                allocation_usd=quantize_money(evaluated.allocation_usd),
                ytd_eligible_usd=ytd_eligible,
                prior_paid_usd=prior_paid,
                this_month_usd=this_month,
            ))
            if this_month <= 0:
                continue

            split = self.splitter.split(this_month, metric.split)
            deal_values = self.attribution.metric_deal_values(metric.metric_name, ctx.employee_id, ytd_deals)
            self._add_lines(ctx, result, PAYOUT_VARIABLE_PAY, split, deal_values, ctx.compensation_rate,
                            RATE_COMPENSATION, metric.metric_name)
            parts.append(split)

        total = self.splitter.combine(parts)
        self._add_row(ctx, result, PAYOUT_VARIABLE_PAY, total, ctx.compensation_rate, RATE_COMPENSATION)
        return total

    def calculate_commissions(self, ctx: ProcessingContext, result: EmployeePayoutResult) -> None:
        month_deals = self.resolver.commission_deals(
            ctx.dataset.deals_between(ctx.month_year, ctx.month_year), ctx.employee_id,
        )
        for commission in ctx.plan.commissions:
            if not commission.is_active:
                continue
            evaluated = self.commission_evaluator.evaluate(commission, month_deals)
            if evaluated.gross_usd <= 0:
                continue
            split = self.splitter.split(evaluated.gross_usd, commission.split)
            self._add_lines(ctx, result, commission.commission_type, split, evaluated.deal_values,
                            ctx.market_rate, RATE_MARKET)
            self._add_row(ctx, result, commission.commission_type, split, ctx.market_rate, RATE_MARKET)

    def calculate_nrr(self, ctx: ProcessingContext, result: EmployeePayoutResult) -> TrancheSplit:
        if ctx.plan.nrr_ote_percent <= 0:
            return TrancheSplit()

        ytd_deals = self.resolver.nrr_deals(
            ctx.dataset.deals_between(f"{ctx.fiscal_year:04d}-01", ctx.month_year), ctx.employee_id,
        )
        cr_er_target, impl_target = self.resolver.nrr_targets(ctx.dataset.targets_for(ctx.employee_id),
                                                              ctx.fiscal_year)
        evaluated = self.nrr_evaluator.evaluate(ctx.plan, ytd_deals, cr_er_target, impl_target,
                                                quantize_money(ctx.target_bonus_usd))
        this_month = max(ZERO, quantize_money(evaluated.payout_usd) - ctx.prior_nrr_paid_usd)
        if this_month <= 0:
            return TrancheSplit()

        split = self.splitter.split(this_month, ctx.plan.nrr_split)
        self._add_lines(ctx, result, PAYOUT_NRR, split, evaluated.deal_values, ctx.compensation_rate,
                        RATE_COMPENSATION)
        self._add_row(ctx, result, PAYOUT_NRR, split, ctx.compensation_rate, RATE_COMPENSATION)
        return split

    def calculate_spiffs(self, ctx: ProcessingContext, result: EmployeePayoutResult) -> None:
        month_deals = self.resolver.spiff_deals(
            ctx.dataset.deals_between(ctx.month_year, ctx.month_year), ctx.employee_id,
        )
        parts = []
        for spiff in ctx.plan.spiffs:
            evaluated = self.spiff_evaluator.evaluate(spiff, month_deals)
            if evaluated.payout_usd <= 0:
                continue
            split = self.splitter.split(evaluated.payout_usd, spiff.split)
            self._add_lines(ctx, result, PAYOUT_SPIFF, split, evaluated.deal_values, ctx.compensation_rate,
                            RATE_COMPENSATION, spiff.spiff_name)
            parts.append(split)
        self._add_row(ctx, result, PAYOUT_SPIFF, self.splitter.combine(parts), ctx.compensation_rate,
                      RATE_COMPENSATION)

    def release_collections(self, ctx: ProcessingContext, result: EmployeePayoutResult) -> None:
        clawed = {e.deal_id for e in ctx.clawback_entries + result.clawback_entries}
        due = self.releases.collection_releases(
            ctx.paid_lines, ctx.dataset.collections, ctx.released_line_ids, clawed, ctx.month_year,
        )
        if not due:
            return

        total_usd = ZERO
        total_local = ZERO
        for line in due:
            total_usd += line.collection_usd
            total_local += quantize_money(line.collection_usd * line.exchange_rate_used)
            result.deal_lines.append(self.release_line(ctx.run_id, ctx.month_year, line,
                                                       PAYOUT_COLLECTION_RELEASE, line.collection_usd))

        result.payouts.append(self.release_row(
            payout_id=f"{ctx.run_id}:{ctx.employee_id}:{PAYOUT_COLLECTION_RELEASE}",
            run_id=ctx.run_id,
            employee=ctx.employee,
            month_year=ctx.month_year,
            payout_type=PAYOUT_COLLECTION_RELEASE,
            amount_usd=total_usd,
            amount_local=total_local,
            compensation_rate=ctx.compensation_rate,
            market_rate=ctx.market_rate,
            lines=due,
            plan_id=ctx.plan.plan_id,
        ))

    def recover_clawbacks(self, ctx: ProcessingContext, result: EmployeePayoutResult) -> None:
        available = sum((p.booking_amount_usd for p in result.payouts if p.booking_amount_usd > 0), ZERO)
        entries = ctx.clawback_entries + result.clawback_entries
        result.recoveries = self.clawbacks.recover(entries, available, ctx.run_id, ctx.month_year)
        recovered = sum((r.amount_usd for r in result.recoveries.values()), ZERO)
        if recovered <= 0:
            return

        deduction = TrancheSplit(gross=-recovered, booking=-recovered)
        self._add_row(ctx, result, PAYOUT_CLAWBACK, deduction, ctx.compensation_rate, RATE_COMPENSATION,
                      notes=f"Recovered against {len(result.recoveries)} clawback entr"
                            f"{'y' if len(result.recoveries) == 1 else 'ies'}")

    # =========================================================================
    # ROW BUILDERS
    # =========================================================================

    def _add_row(self, ctx: ProcessingContext, result: EmployeePayoutResult, payout_type: str,
                 split: TrancheSplit, rate: Decimal, rate_type: str, notes: str | None = None) -> None:
        if split.gross == 0 and split.booking == 0:
            return
        result.payouts.append(MonthlyPayout(
            payout_id=f"{ctx.run_id}:{ctx.employee_id}:{payout_type}",
            payout_run_id=ctx.run_id,
            employee_id=ctx.employee_id,
            month_year=ctx.month_year,
            payout_type=payout_type,
            calculated_amount_usd=split.gross,
            calculated_amount_local=quantize_money(split.gross * rate),
            local_currency=ctx.employee.local_currency,
            exchange_rate_used=rate,
            exchange_rate_type=rate_type,
            compensation_rate=ctx.compensation_rate,
            market_rate=ctx.market_rate,
            booking_amount_usd=split.booking,
            booking_amount_local=quantize_money(split.booking * rate),
            collection_amount_usd=split.collection,
            collection_amount_local=quantize_money(split.collection * rate),
            year_end_amount_usd=split.year_end,
            year_end_amount_local=quantize_money(split.year_end * rate),
            plan_id=ctx.plan.plan_id if ctx.plan else None,
            notes=notes,
        ))

    def _add_lines(self, ctx: ProcessingContext, result: EmployeePayoutResult, payout_type: str,
                   split: TrancheSplit, deal_values: dict[str, Decimal], rate: Decimal, rate_type: str,
                   metric_name: str | None = None) -> None:
        for share in self.attribution.split(split, deal_values):
            result.deal_lines.append(self._line(ctx, payout_type, share, rate, rate_type, metric_name))

    def _line(self, ctx: ProcessingContext, payout_type: str, share: DealShare, rate: Decimal,
              rate_type: str, metric_name: str | None) -> DealPayoutLine:
        label = metric_name or "-"
        return DealPayoutLine(
            line_id=f"{ctx.run_id}:{ctx.employee_id}:{payout_type}:{label}:{share.deal_id or 'unattributed'}",
            payout_run_id=ctx.run_id,
            employee_id=ctx.employee_id,
            month_year=ctx.month_year,
            deal_id=share.deal_id,
            payout_type=payout_type,
            plan_id=ctx.plan.plan_id,
            deal_value_usd=share.deal_value_usd,
            proportion_pct=share.proportion_pct,
            amount_usd=share.amount_usd,
            booking_usd=share.split.booking,
            collection_usd=share.split.collection,
            year_end_usd=share.split.year_end,
            clawback_eligible_usd=self.attribution.clawback_eligible(share, ctx.plan),
            exchange_rate_used=rate,
            exchange_rate_type=rate_type,
            metric_name=metric_name,
        )

    @staticmethod
    def release_line(source_id: str | None, month_year: str, line: DealPayoutLine, payout_type: str,
                     amount_usd: Decimal, settlement_id: str | None = None) -> DealPayoutLine:
        """A line marking a held portion of line as released (or forfeited)."""
        return DealPayoutLine(
            line_id=f"{source_id or settlement_id}:{line.employee_id}:{payout_type}:{line.line_id}",
            payout_run_id=source_id,
            employee_id=line.employee_id,
            month_year=month_year,
            deal_id=line.deal_id,
            payout_type=payout_type,
            plan_id=line.plan_id,
            deal_value_usd=line.deal_value_usd,
            proportion_pct=line.proportion_pct,
            amount_usd=amount_usd,
            booking_usd=amount_usd,
            collection_usd=ZERO,
            year_end_usd=ZERO,
            clawback_eligible_usd=ZERO,
            exchange_rate_used=line.exchange_rate_used,
            exchange_rate_type=line.exchange_rate_type,
            metric_name=line.metric_name,
            source_line_id=line.line_id,
            settlement_id=settlement_id,
        )

    @staticmethod
    def release_row(payout_id: str, run_id: str | None, employee, month_year: str, payout_type: str,
                    amount_usd: Decimal, amount_local: Decimal, compensation_rate: Decimal,
                    market_rate: Decimal, lines: list[DealPayoutLine], plan_id: str | None = None,
                    notes: str | None = None) -> MonthlyPayout:
        """
        Row for released holdbacks. Each held line keeps the rate it was
        calculated at, so the row carries the effective blended rate.
        """
        rate_types = {line.exchange_rate_type for line in lines}
        rate_type = rate_types.pop() if len(rate_types) == 1 else "blended"
        effective_rate = (amount_local / amount_usd).quantize(Decimal("0.000001")) if amount_usd else compensation_rate
        return MonthlyPayout(
            payout_id=payout_id,
            payout_run_id=run_id,
            employee_id=employee.employee_id,
            month_year=month_year,
            payout_type=payout_type,
            calculated_amount_usd=amount_usd,
            calculated_amount_local=amount_local,
            local_currency=employee.local_currency,
            exchange_rate_used=effective_rate,
            exchange_rate_type=rate_type,
            compensation_rate=compensation_rate,
            market_rate=market_rate,
            booking_amount_usd=amount_usd,
            booking_amount_local=amount_local,
            plan_id=plan_id,
            notes=notes,
        )
