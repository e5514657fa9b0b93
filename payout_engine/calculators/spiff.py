"""
SPIFF Evaluator

Flat-rate bonus on deals whose linked-metric value meets a minimum.
"""

from ..models import Deal, PlanSpiff, SpiffResult, ZERO
from ..plan_resolution import PlanResolver
from .rates import percent_of


class SpiffEvaluator:
    """payout = sum(qualifying deal value) x rate%"""

    def __init__(self, resolver: PlanResolver | None = None):
        self.resolver = resolver or PlanResolver()

    def evaluate(self, spiff: PlanSpiff, deals: list[Deal]) -> SpiffResult:
        result = SpiffResult(spiff_name=spiff.spiff_name, rate_pct=spiff.spiff_rate_pct)
        if not spiff.is_active:
            return result

        minimum = spiff.min_deal_value_usd
        for deal in deals:
            value = self.resolver.metric_deal_value(deal, spiff.linked_metric_name)
            if value <= 0:
                continue
            if minimum is not None and value < minimum:
                result.excluded_deals[deal.deal_id] = f"{value} below minimum {minimum}"
                continue
            result.deal_values[deal.deal_id] = result.deal_values.get(deal.deal_id, ZERO) + value

        result.eligible_actuals_usd = sum(result.deal_values.values(), ZERO)
        result.payout_usd = percent_of(result.eligible_actuals_usd, spiff.spiff_rate_pct)
        return result
