"""burnbot execution layer: backends, burn, and the cycle executor."""

from burnbot.execution.backends import (
    AggregatorBackend,
    BondingCurveBackend,
    ExecutionBackend,
    PurchaseFill,
    PurchaseRequest,
    build_backend,
)
from burnbot.execution.destroyer import AssetDestroyer
from burnbot.execution.executor import (
    BuybackExecutor,
    BuybackResult,
    CycleState,
    Eligibility,
)

__all__ = [
    "ExecutionBackend",
    "PurchaseRequest",
    "PurchaseFill",
    "AggregatorBackend",
    "BondingCurveBackend",
    "build_backend",
    "AssetDestroyer",
    "BuybackExecutor",
    "BuybackResult",
    "CycleState",
    "Eligibility",
]
