"""
NRR Evaluator

Net-revenue-retention bonus: CR/ER plus Implementation actuals against the
combined CR/ER and Implementation targets, weighted by the plan's NRR OTE
percentage of target bonus.
"""

from decimal import Decimal

from ..models import CompPlan, Deal, NrrResult, ZERO
from .commission import meets_margin
from .metric import achievement_pct
from .rates import HUNDRED, percent_of


class NrrEvaluator:
    """Calculates the NRR additional pay for one employee."""

    def evaluate(self, plan: CompPlan, deals: list[Deal], cr_er_target: Decimal,
                 impl_target: Decimal, target_bonus: Decimal) -> NrrResult:
        """
        Each deal's CR/ER and Implementation value is margin-gated on its own,
        against the plan's cr_er / impl minimum margins.

        A plan without a positive nrr_ote_percent has no NRR component.
        """
        if plan.nrr_ote_percent <= 0:
            return NrrResult()

        result = NrrResult(nrr_target_usd=cr_er_target + impl_target)
        for deal in deals:
            cr_er = deal.cr_er_usd
            impl = deal.value("implementation_usd")
            contribution = ZERO

            if cr_er > 0:
                result.total_cr_er_usd += cr_er
                if meets_margin(deal, plan.cr_er_min_gp_margin_pct):
                    result.eligible_cr_er_usd += cr_er
                    contribution += cr_er
                else:
                    result.excluded_deals[deal.deal_id] = "cr/er below margin"

            if impl > 0:
                result.total_impl_usd += impl
                if meets_margin(deal, plan.impl_min_gp_margin_pct):
                    result.eligible_impl_usd += impl
                    contribution += impl
                else:
                    reason = result.excluded_deals.get(deal.deal_id)
                    result.excluded_deals[deal.deal_id] = (
                        f"{reason}, implementation below margin" if reason else "implementation below margin"
                    )

            if contribution > 0:
                result.deal_values[deal.deal_id] = result.deal_values.get(deal.deal_id, ZERO) + contribution

        result.achievement_pct = achievement_pct(result.nrr_actuals_usd, result.nrr_target_usd)
        result.payout_usd = result.achievement_pct / HUNDRED * percent_of(target_bonus, plan.nrr_ote_percent)
        return result
