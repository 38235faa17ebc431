"""Withdrawal dispatcher adapters."""

from matrix_engine.dispatch.base import DisburseResult, WithdrawalDispatcher
from matrix_engine.dispatch.sandbox import SandboxDispatcher

__all__ = [
    "DisburseResult",
    "WithdrawalDispatcher",
    "SandboxDispatcher",
]
