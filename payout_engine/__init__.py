"""
PAYOUT CALCULATION ENGINE
Monthly incentive payouts, adjustments and Full & Final settlements
"""

from .adjustments import AdjustmentService
from .config import EngineConfig
from .models import PayoutDataset, PayoutRun, RunCalculationResult
from .output import OutputBuilder
from .runs import PayoutRunService
from .settlement import FnFSettlementService
from .store import InMemoryStore
from .validators import PayoutValidationError, RunStateError

__all__ = [
    'PayoutRunService',
    'AdjustmentService',
    'FnFSettlementService',
    'InMemoryStore',
    'EngineConfig',
    'OutputBuilder',
    'PayoutDataset',
    'PayoutRun',
    'RunCalculationResult',
    'PayoutValidationError',
    'RunStateError',
]
