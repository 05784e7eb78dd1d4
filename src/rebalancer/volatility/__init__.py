"""Volatility layer -- oracle price polling and volatility estimation."""

from rebalancer.volatility.estimator import VolatilityEstimator, volatility_bps
from rebalancer.volatility.monitor import VolatilityMonitor
from rebalancer.volatility.price_source import PriceSource, PythPriceSource

__all__ = [
    "PriceSource",
    "PythPriceSource",
    "VolatilityEstimator",
    "VolatilityMonitor",
    "volatility_bps",
]
