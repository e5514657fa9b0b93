"""
Calculators Package

Provides the pure calculation components used by the payout pipeline.
"""

from .attribution import DealAttributionEngine
from .clawback import ClawbackTracker
from .commission import CommissionEvaluator
from .metric import MetricEvaluator
from .nrr import NrrEvaluator
from .proration import ProRationCalculator
from .rates import FxResolver
from .release import ReleaseCalculator
from .spiff import SpiffEvaluator
from .tranche import TrancheSplitter

__all__ = [
    "ProRationCalculator",
    "FxResolver",
    "MetricEvaluator",
    "CommissionEvaluator",
    "NrrEvaluator",
    "SpiffEvaluator",
    "DealAttributionEngine",
    "TrancheSplitter",
    "ClawbackTracker",
    "ReleaseCalculator",
]
