"""Errors raised at the chain connection boundary."""

from __future__ import annotations

from typing import Optional


class ChainError(Exception):
    """Base class for failures talking to a chain."""

    def __init__(self, chain_id: str, message: str):
        super().__init__(f"[{chain_id}] {message}")
        self.chain_id = chain_id
        self.message = message


class ReadFailure(ChainError):
    """Pool state could not be read. Transient: the next refresh cycle retries."""


class SubmitFailure(ChainError):
    """
    A transaction could not be submitted.

    ``retriable`` overrides text-based classification when the connection
    knows better (e.g. a signing error is never worth retrying).
    """

    def __init__(
        self,
        chain_id: str,
        message: str,
        retriable: Optional[bool] = None,
    ):
        super().__init__(chain_id, message)
        self.retriable = retriable
