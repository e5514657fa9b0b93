"""
Commission Evaluator

Aggregates deal values per commission type and applies the commission rate.
"""

from decimal import Decimal

from ..models import CommissionResult, Deal, PlanCommission, ZERO
from ..plan_resolution import PlanResolver
from .rates import percent_of


def meets_margin(deal: Deal, min_margin: Decimal | None) -> bool:
    """Per-deal margin gate. A deal without a margin fails any configured minimum."""
    if not min_margin:
        return True
    if deal.gp_margin_percent is None:
        return False
    return deal.gp_margin_percent >= min_margin


class CommissionEvaluator:
    """
    Calculates gross commission for one commission type.

    - deals failing the margin gate are left out of the aggregate
    - the threshold is all-or-nothing: below it the gross is 0
    """

    def __init__(self, resolver: PlanResolver | None = None):
        self.resolver = resolver or PlanResolver()

    def evaluate(self, commission: PlanCommission, deals: list[Deal]) -> CommissionResult:
        deal_values = {}
        excluded = {}
        for deal in deals:
            value = self.resolver.commission_deal_value(deal, commission.commission_type)
            if value <= 0:
                continue
            if not meets_margin(deal, commission.min_gp_margin_pct):
                excluded[deal.deal_id] = (
                    f"gp margin {deal.gp_margin_percent} below {commission.min_gp_margin_pct}"
                )
                continue
            deal_values[deal.deal_id] = deal_values.get(deal.deal_id, ZERO) + value

        aggregate = sum(deal_values.values(), ZERO)
        threshold = commission.min_threshold_usd
        qualifies = aggregate > 0 and (threshold is None or aggregate >= threshold)
        gross = percent_of(aggregate, commission.commission_rate_pct) if qualifies else ZERO

        return CommissionResult(
            commission_type=commission.commission_type,
            aggregate_usd=aggregate,
            rate_pct=commission.commission_rate_pct,
            min_threshold_usd=threshold,
            qualifies=qualifies,
            gross_usd=gross,
            deal_values=deal_values,
            excluded_deals=excluded,
        )
