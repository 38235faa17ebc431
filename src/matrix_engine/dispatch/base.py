"""Base protocol and types for withdrawal dispatchers.

A dispatcher sends funds to an external address (a payment gateway). The
engine only depends on this protocol; gateway-specific adapters live outside
the engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol


@dataclass(frozen=True)
class DisburseResult:
    """Result of asking a dispatcher to send funds."""

    success: bool
    external_tx_id: str | None = None
    message: str = ""


class WithdrawalDispatcher(Protocol):
    """Protocol for withdrawal dispatcher adapters.

    Implementations may raise DispatcherError instead of returning an
    unsuccessful result; both are handled the same way by the caller.
    """

    dispatcher_name: str

    async def disburse(
        self,
        user_id: int,
        amount: Decimal,
        currency: str,
        address: str,
    ) -> DisburseResult:
        """Send ``amount`` of ``currency`` to ``address`` for ``user_id``.

        Returns:
            DisburseResult with the gateway's transaction id on success.
        """
        ...
