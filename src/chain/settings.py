"""Per-chain settings, loaded from ``<NAME>_*`` environment variables."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from config import get_env, get_float, get_int


@dataclass
class ChainConfig:
    name: str
    pool_address: str
    rpc_url: Optional[str] = None
    router_address: Optional[str] = None
    token_a_address: Optional[str] = None
    token_b_address: Optional[str] = None
    evm_chain_id: int = 1
    fee_bps: int = 30  # Uniswap V2 = 0.30%
    # Fixed gas estimate per swap, expressed in quote-token units.
    gas_cost: float = 0.0
    gas_limit: int = 250_000

    @classmethod
    def from_env(cls, name: str, require_pool: bool = True) -> "ChainConfig":
        prefix = name.upper()
        pool = get_env(f"{prefix}_POOL_ADDRESS", required=require_pool) or f"sim:{name}"
        return cls(
            name=name,
            pool_address=pool,
            rpc_url=get_env(f"{prefix}_RPC_URL"),
            router_address=get_env(f"{prefix}_ROUTER_ADDRESS"),
            token_a_address=get_env(f"{prefix}_TOKEN_A_ADDRESS"),
            token_b_address=get_env(f"{prefix}_TOKEN_B_ADDRESS"),
            evm_chain_id=get_int(f"{prefix}_CHAIN_ID", 1),
            fee_bps=get_int(f"{prefix}_FEE_BPS", 30),
            gas_cost=get_float(f"{prefix}_GAS_COST", 0.0),
            gas_limit=get_int(f"{prefix}_GAS_LIMIT", 250_000),
        )
