"""
Deal Attribution Engine

Two modes:
- achievement crediting: every named participant gets full credit for a deal
- variable-pay splitting: an employee's payout is spread over their deals in
  proportion to each deal's value, so the same dollar is never paid twice
"""

from decimal import Decimal

from ..models import ClosingARRActual, CompPlan, Deal, DealShare, TrancheSplit, ZERO
from ..plan_resolution import PlanResolver
from .proration import fiscal_year_bounds
from .rates import HUNDRED, quantize_money, quantize_pct


def allocate(amount: Decimal, weights: list[Decimal]) -> list[Decimal]:
    """Split a money amount by weights; the last slot absorbs the rounding remainder."""
    if not weights:
        return []
    total = sum(weights, ZERO)
    if total <= 0:
        return [amount] + [ZERO] * (len(weights) - 1)
    parts = [quantize_money(amount * w / total) for w in weights[:-1]]
    parts.append(amount - sum(parts, ZERO))
    return parts


def latest_closing_arr(snapshots: list[ClosingARRActual], employee_id: str,
                       fiscal_year: int, through_month: str) -> Decimal:
    """
    Closing ARR is a point-in-time value: take the latest month in the period
    that has eligible rows for the employee, and sum only that month's rows.

    A row is eligible when its end_date falls after fiscal year end.
    """
    _, year_end = fiscal_year_bounds(fiscal_year)
    start_month = f"{fiscal_year:04d}-01"
    by_month: dict[str, Decimal] = {}
    for snap in snapshots:
        if not (start_month <= snap.month_year <= through_month):
            continue
        if not snap.credits(employee_id):
            continue
        if snap.end_date is None or snap.end_date <= year_end:
            continue
        by_month[snap.month_year] = by_month.get(snap.month_year, ZERO) + snap.closing_arr
    if not by_month:
        return ZERO
    return by_month[max(by_month)]


class DealAttributionEngine:
    """Credits achievement and spreads payouts across deals."""

    def __init__(self, resolver: PlanResolver | None = None):
        self.resolver = resolver or PlanResolver()

    def achievement_actual(self, metric_name: str, employee_id: str, deals: list[Deal],
                           snapshots: list[ClosingARRActual], fiscal_year: int,
                           through_month: str) -> Decimal:
        """Full, undivided credit for every deal naming the employee in any role."""
        if self.resolver.is_snapshot_metric(metric_name):
            return latest_closing_arr(snapshots, employee_id, fiscal_year, through_month)
        credited = self.resolver.achievement_deals(deals, employee_id)
        return sum((self.resolver.metric_deal_value(d, metric_name) for d in credited), ZERO)

    def metric_deal_values(self, metric_name: str, employee_id: str, deals: list[Deal]) -> dict[str, Decimal]:
        values = {}
        for deal in self.resolver.achievement_deals(deals, employee_id):
            value = self.resolver.metric_deal_value(deal, metric_name)
            if value > 0:
                values[deal.deal_id] = values.get(deal.deal_id, ZERO) + value
        return values

    def split(self, amounts: TrancheSplit, deal_values: dict[str, Decimal]) -> list[DealShare]:
        """
        share(deal) = deal value / employee's total over these deals.

        Each tranche is allocated separately so every tranche reconciles across
        deals. With no contributing deals the whole amount stays unattributed
        (deal_id None).
        """
        deal_ids = [deal_id for deal_id, value in deal_values.items() if value > 0]
        if not deal_ids:
            return [DealShare(deal_id=None, deal_value_usd=ZERO, proportion_pct=HUNDRED,
                              amount_usd=amounts.gross, split=amounts)]

        weights = [deal_values[d] for d in deal_ids]
        total = sum(weights, ZERO)
        booking = allocate(amounts.booking, weights)
        collection = allocate(amounts.collection, weights)
        year_end = allocate(amounts.year_end, weights)
        gross = allocate(amounts.gross, weights)

        shares = []
        for i, deal_id in enumerate(deal_ids):
            part = TrancheSplit(
                gross=gross[i],
                booking=booking[i],
                collection=collection[i],
                year_end=year_end[i],
            )
            shares.append(DealShare(
                deal_id=deal_id,
                deal_value_usd=weights[i],
                proportion_pct=quantize_pct(weights[i] / total * HUNDRED),
                amount_usd=part.gross,
                split=part,
            ))
        return shares

    @staticmethod
    def clawback_eligible(share: DealShare, plan: CompPlan) -> Decimal:
        """Booking paid against a deal can be clawed back unless the plan is exempt."""
        if plan.is_clawback_exempt or share.deal_id is None:
            return ZERO
        return share.split.booking
