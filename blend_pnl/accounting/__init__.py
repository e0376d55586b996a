"""Pure accounting components."""
from .backstop import BackstopPosition, BackstopShareReconciler, period_share_yield
from .balances import build_daily_series, carry_forward, carry_snapshots, group_by_position
from .cost_basis import CostBasisAccumulator, bounded_interest
from .emissions import EmissionSchedule
from .realized import RealizedYieldAggregator

__all__ = [
    "BackstopPosition",
    "BackstopShareReconciler",
    "CostBasisAccumulator",
    "EmissionSchedule",
    "RealizedYieldAggregator",
    "bounded_interest",
    "build_daily_series",
    "carry_forward",
    "carry_snapshots",
    "group_by_position",
    "period_share_yield",
]
