from .base import HttpDexAdapter
from .jupiter import ApeJupiterAdapter, JupiterAggregatorAdapter, JupiterDirectAdapter, parse_jupiter_quote
from .pumpswap import PumpSwapAdapter
from .raydium import PoolState, RaydiumAdapter, choose_best_pool, constant_product_out, price_impact_pct

__all__ = [
    "ApeJupiterAdapter",
    "HttpDexAdapter",
    "JupiterAggregatorAdapter",
    "JupiterDirectAdapter",
    "PoolState",
    "PumpSwapAdapter",
    "RaydiumAdapter",
    "choose_best_pool",
    "constant_product_out",
    "parse_jupiter_quote",
    "price_impact_pct",
]
