from .connection import (
    ChainConnection,
    Confirmation,
    ConfirmationStatus,
    PoolSnapshot,
    TradeParams,
    TradeSide,
    TransactionHandle,
)
from .errors import ChainError, ReadFailure, SubmitFailure
from .settings import ChainConfig
from .simulated import SimulatedChainConnection

__all__ = [
    "ChainConnection",
    "ChainConfig",
    "Confirmation",
    "ConfirmationStatus",
    "PoolSnapshot",
    "TradeParams",
    "TradeSide",
    "TransactionHandle",
    "ChainError",
    "ReadFailure",
    "SubmitFailure",
    "SimulatedChainConnection",
]
