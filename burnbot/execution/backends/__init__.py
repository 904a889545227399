"""Execution backends, one per execution mode."""

from burnbot.execution.backends.aggregator import AggregatorBackend, JupiterClient
from burnbot.execution.backends.base import (
    AGGREGATOR,
    BONDING_CURVE,
    EXECUTION_MODES,
    ExecutionBackend,
    PurchaseFill,
    PurchaseRequest,
)
from burnbot.execution.backends.bonding_curve import BondingCurveBackend, PumpPortalClient

_BACKENDS: dict[str, type[ExecutionBackend]] = {
    AGGREGATOR: AggregatorBackend,
    BONDING_CURVE: BondingCurveBackend,
}


def build_backend(mode: str, ledger) -> ExecutionBackend:
    """Instantiate the backend for execution *mode*."""
    try:
        cls = _BACKENDS[mode]
    except KeyError:
        raise ValueError(f"Unknown execution mode {mode!r}. Use one of: {', '.join(EXECUTION_MODES)}")
    return cls(ledger)


__all__ = [
    "AGGREGATOR",
    "BONDING_CURVE",
    "EXECUTION_MODES",
    "ExecutionBackend",
    "PurchaseRequest",
    "PurchaseFill",
    "AggregatorBackend",
    "JupiterClient",
    "BondingCurveBackend",
    "PumpPortalClient",
    "build_backend",
]
