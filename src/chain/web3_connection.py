"""
Web3-backed chain connection for Uniswap V2 style pools.

Reads go straight to the pair contract (``token0()``, ``getReserves()``)
and swaps go through the V2 router's ``swapExactTokensForTokens``.  All
web3 calls are synchronous, so each public method hands the work to the
default thread pool and never blocks the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any, Callable, Optional, TypeVar

from eth_abi import decode
from eth_abi import encode as abi_encode
from eth_utils.crypto import keccak
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

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

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSFER_TOPIC = keccak(text="Transfer(address,address,uint256)")
MAX_UINT256 = 2**256 - 1


def _selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


class Web3ChainConnection(ChainConnection):
    def __init__(
        self,
        config: ChainConfig,
        private_key: Optional[str] = None,
        request_timeout: float = 10.0,
        poll_latency: float = 1.0,
        w3: Optional[Web3] = None,
    ) -> None:
        if w3 is None:
            if not config.rpc_url:
                raise ValueError(f"{config.name}: rpc_url is required")
            w3 = Web3(
                Web3.HTTPProvider(
                    config.rpc_url, request_kwargs={"timeout": request_timeout}
                )
            )
        self.chain_id = config.name
        self.config = config
        self.w3 = w3
        self.poll_latency = poll_latency
        self._account = w3.eth.account.from_key(private_key) if private_key else None
        self._nonce_lock = threading.Lock()

        # Pool metadata, fetched once on first read
        self._a_is_token0: Optional[bool] = None
        self._decimals_a: Optional[int] = None
        self._decimals_b: Optional[int] = None

    # ── ChainConnection ────────────────────────────────────────

    async def read_pool_reserves(self, pool_address: str) -> PoolSnapshot:
        try:
            return await self._in_thread(lambda: self._read_reserves(pool_address))
        except ReadFailure:
            raise
        except Exception as exc:
            raise ReadFailure(self.chain_id, f"getReserves failed: {exc}") from exc

    async def submit_trade(self, params: TradeParams) -> TransactionHandle:
        self._require_account()
        try:
            return await self._in_thread(lambda: self._submit(params))
        except SubmitFailure:
            raise
        except ContractLogicError as exc:
            # Gas estimation reverted: the swap itself would revert.
            raise SubmitFailure(
                self.chain_id, f"execution reverted: {exc}", retriable=False
            ) from exc
        except Exception as exc:
            raise SubmitFailure(self.chain_id, str(exc)) from exc

    async def await_confirmation(
        self, handle: TransactionHandle, timeout: float
    ) -> Confirmation:
        try:
            receipt = await self._in_thread(
                lambda: self.w3.eth.wait_for_transaction_receipt(
                    handle.tx_hash, timeout=timeout, poll_latency=self.poll_latency
                )
            )
        except TimeExhausted:
            logger.warning(
                "%s tx %s not mined within %.1fs", self.chain_id, handle.tx_hash, timeout
            )
            return Confirmation(ConfirmationStatus.TIMED_OUT, handle.tx_hash)
        except Exception as exc:
            raise ChainError(
                self.chain_id, f"receipt lookup for {handle.tx_hash} failed: {exc}"
            ) from exc

        if not receipt["status"]:
            return Confirmation(
                ConfirmationStatus.REVERTED,
                handle.tx_hash,
                block_number=int(receipt["blockNumber"]),
                gas_used=int(receipt["gasUsed"]),
            )
        return Confirmation(
            ConfirmationStatus.CONFIRMED,
            handle.tx_hash,
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
            amount_out=self._amount_received(receipt),
        )

    # ── reads ──────────────────────────────────────────────────

    def _read_reserves(self, pool_address: str) -> PoolSnapshot:
        pool = Web3.to_checksum_address(pool_address)
        if self._a_is_token0 is None:
            self._load_metadata(pool)

        raw = self._eth_call(pool, _selector("getReserves()"))
        r0, r1, _ = decode(["uint112", "uint112", "uint32"], raw)
        if self._a_is_token0:
            reserve_a, reserve_b = int(r0), int(r1)
        else:
            reserve_a, reserve_b = int(r1), int(r0)

        return PoolSnapshot(
            chain_id=self.chain_id,
            reserve_a=reserve_a,
            reserve_b=reserve_b,
            fee_bps=self.config.fee_bps,
            block_number=int(self.w3.eth.block_number),
            observed_at=time.time(),
            decimals_a=self._decimals_a or 18,
            decimals_b=self._decimals_b or 18,
            pool_address=pool,
        )

    def _load_metadata(self, pool: str) -> None:
        (token0,) = decode(["address"], self._eth_call(pool, _selector("token0()")))
        (token1,) = decode(["address"], self._eth_call(pool, _selector("token1()")))
        token_a = (self.config.token_a_address or token0).lower()
        if token_a not in (token0.lower(), token1.lower()):
            raise ReadFailure(
                self.chain_id, f"token {token_a} is not in pool {pool}"
            )
        self._a_is_token0 = token0.lower() == token_a
        token_b = token1 if self._a_is_token0 else token0
        self._decimals_a = self._token_decimals(token_a)
        self._decimals_b = self._token_decimals(token_b)
        logger.info(
            "%s pool %s loaded: token_a=%s(%d) token_b=%s(%d)",
            self.chain_id,
            pool,
            token_a[:10],
            self._decimals_a,
            token_b[:10],
            self._decimals_b,
        )

    def _token_decimals(self, token: str) -> int:
        raw = self._eth_call(Web3.to_checksum_address(token), _selector("decimals()"))
        (value,) = decode(["uint8"], raw)
        return int(value)

    def _eth_call(self, to: str, data: bytes) -> bytes:
        return bytes(self.w3.eth.call({"to": to, "data": Web3.to_hex(data)}))

    # ── writes ─────────────────────────────────────────────────

    def _submit(self, params: TradeParams) -> TransactionHandle:
        router = self.config.router_address
        token_a = self.config.token_a_address
        token_b = self.config.token_b_address
        if not (router and token_a and token_b):
            raise SubmitFailure(
                self.chain_id,
                "router/token addresses are not configured",
                retriable=False,
            )
        account = self._require_account()

        if params.side == TradeSide.BUY:
            path = [token_b, token_a]
        else:
            path = [token_a, token_b]
        path = [Web3.to_checksum_address(p) for p in path]
        router = Web3.to_checksum_address(router)

        self._ensure_allowance(path[0], router, params.amount_in)

        calldata = _selector(
            "swapExactTokensForTokens(uint256,uint256,address[],address,uint256)"
        ) + abi_encode(
            ["uint256", "uint256", "address[]", "address", "uint256"],
            [
                params.amount_in,
                params.min_amount_out,
                path,
                account.address,
                int(params.deadline),
            ],
        )
        tx_hash = self._send(router, calldata)
        logger.info(
            "%s swap submitted: %s amount_in=%d min_out=%d tx=%s",
            self.chain_id,
            params.side.value,
            params.amount_in,
            params.min_amount_out,
            tx_hash,
        )
        return TransactionHandle(chain_id=self.chain_id, tx_hash=tx_hash)

    def _ensure_allowance(self, token: str, spender: str, min_amount: int) -> None:
        """Approve ``spender`` if the current allowance is below ``min_amount``."""
        account = self._require_account()
        data = _selector("allowance(address,address)") + abi_encode(
            ["address", "address"], [account.address, spender]
        )
        raw = self._eth_call(token, data)
        current = int.from_bytes(raw, "big") if raw else 0
        if current >= min_amount:
            return

        approve = _selector("approve(address,uint256)") + abi_encode(
            ["address", "uint256"], [spender, MAX_UINT256]
        )
        tx_hash = self._send(token, approve)
        receipt = self.w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=120, poll_latency=self.poll_latency
        )
        if not receipt["status"]:
            raise SubmitFailure(
                self.chain_id, "ERC-20 approve transaction reverted", retriable=False
            )
        logger.info("%s approved %s for %s (tx=%s)", self.chain_id, token, spender, tx_hash)

    def _send(self, to: str, data: bytes) -> str:
        account = self._require_account()
        with self._nonce_lock:
            tx: dict[str, Any] = {
                "from": account.address,
                "to": to,
                "data": Web3.to_hex(data),
                "value": 0,
                "chainId": self.config.evm_chain_id,
                "nonce": self.w3.eth.get_transaction_count(account.address, "pending"),
                "gasPrice": self.w3.eth.gas_price,
            }
            estimate = self.w3.eth.estimate_gas(tx)
            tx["gas"] = min(int(estimate * 1.2), self.config.gas_limit)
            signed = account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    def _amount_received(self, receipt: Any) -> Optional[int]:
        """Sum ERC-20 Transfer logs into our wallet."""
        if self._account is None:
            return None
        me = self._account.address.lower()
        total = 0
        found = False
        for log in receipt["logs"]:
            topics = log["topics"]
            if len(topics) != 3 or bytes(topics[0]) != TRANSFER_TOPIC:
                continue
            (recipient,) = decode(["address"], bytes(topics[2]))
            if recipient.lower() != me:
                continue
            data = log["data"]
            raw = bytes(data) if not isinstance(data, str) else bytes.fromhex(data[2:])
            (value,) = decode(["uint256"], raw)
            total += int(value)
            found = True
        return total if found else None

    def _require_account(self) -> Any:
        if self._account is None:
            raise SubmitFailure(self.chain_id, "no signing key configured", retriable=False)
        return self._account

    async def _in_thread(self, fn: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)
