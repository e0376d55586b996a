"""Service modules"""
from .aggregator import MultiWalletAggregator
from .compositor import PnlChartCompositor, period_boundaries
from .cost_basis import CostBasisService
from .loader import WalletDataLoader
from .performance import PerformanceHistoryBuilder
from .rates_refresh import DailyRatesRefresher, LocalRefreshCoordinator

__all__ = [
    "CostBasisService",
    "DailyRatesRefresher",
    "LocalRefreshCoordinator",
    "MultiWalletAggregator",
    "PerformanceHistoryBuilder",
    "PnlChartCompositor",
    "WalletDataLoader",
    "period_boundaries",
]
