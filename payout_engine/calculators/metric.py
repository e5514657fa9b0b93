"""
Metric Evaluator

Turns a metric's target and actual into an eligible payout. Pure: no store
access, no side effects.
"""

from decimal import Decimal

from ..models import (
    GATED_THRESHOLD, LINEAR, STEPPED_ACCELERATOR, MetricResult, MultiplierTier, PlanMetric, ZERO,
)
from .rates import HUNDRED, ONE, percent_of


def achievement_pct(actual: Decimal, target: Decimal) -> Decimal:
    """actual / target x 100; a zero or missing target yields 0."""
    if not target or target <= 0:
        return ZERO
    return actual / target * HUNDRED


def stepped_multiplier(grid: list[MultiplierTier], achievement: Decimal) -> Decimal:
    """First row with min <= achievement < max; no matching row yields 0."""
    for tier in sorted(grid, key=lambda t: t.min_pct):
        if tier.contains(achievement):
            return tier.multiplier
    return ZERO


class MetricEvaluator:
    """Resolves multipliers by logic type and computes eligible payout."""

    def resolve_multiplier(self, metric: PlanMetric, achievement: Decimal) -> tuple[Decimal, bool]:
        """
        Returns (multiplier, gated_out).

        Linear:              1
        Stepped_Accelerator: grid lookup, 0 outside every row
        Gated_Threshold:     0 at or below the gate; above it the grid
                             applies when one is configured, else 1
        """
        logic = metric.logic_type
        if logic == LINEAR:
            return ONE, False

        if logic == STEPPED_ACCELERATOR:
            return stepped_multiplier(metric.multiplier_grid, achievement), False

        if logic == GATED_THRESHOLD:
            gate = metric.gate_threshold_percent
            if gate is not None and achievement <= gate:
                return ZERO, True
            if metric.multiplier_grid:
                return stepped_multiplier(metric.multiplier_grid, achievement), False
            return ONE, False

        # Unknown logic types are a configuration gap, which pays nothing
        return ZERO, False

    def evaluate(self, metric: PlanMetric, target: Decimal, actual: Decimal,
                 target_bonus: Decimal) -> MetricResult:
        achievement = achievement_pct(actual, target)
        allocation = percent_of(target_bonus, metric.weightage_percent)
        multiplier, gated_out = self.resolve_multiplier(metric, achievement)

        eligible = ZERO if gated_out else achievement / HUNDRED * allocation * multiplier

        return MetricResult(
            metric_name=metric.metric_name,
            target_usd=target,
            actual_usd=actual,
            achievement_pct=achievement,
            allocation_usd=allocation,
            multiplier=multiplier,
            eligible_usd=eligible,
            logic_type=metric.logic_type,
            is_gated_out=gated_out,
        )
