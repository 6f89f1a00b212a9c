from .amm import get_amount_out, spot_price
from .oracle import OracleConfig, PoolSource, PriceOracle, PriceQuote

__all__ = [
    "spot_price",
    "get_amount_out",
    "PriceOracle",
    "PriceQuote",
    "PoolSource",
    "OracleConfig",
]
