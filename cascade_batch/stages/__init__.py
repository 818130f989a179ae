"""
cascade_batch.stages -- stage protocol, registry and the ledger-driven stages.
"""

from cascade_batch.stages.base import (
    CascadeStage,
    StageContext,
    StageRegistry,
    StageResult,
)
from cascade_batch.stages.cost_stages import (
    FactoryCostStage,
    OrderValueStage,
    TaskCostStage,
)

__all__ = [
    "CascadeStage",
    "FactoryCostStage",
    "OrderValueStage",
    "StageContext",
    "StageRegistry",
    "StageResult",
    "TaskCostStage",
]
