"""Sandbox dispatcher for local development and testing.

Replace with a real gateway adapter for production.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal

from matrix_engine.dispatch.base import DisburseResult
from matrix_engine.errors import DispatcherError


@dataclass(frozen=True)
class SentDisbursement:
    """A disbursement accepted by the sandbox."""

    user_id: int
    amount: Decimal
    currency: str
    address: str
    external_tx_id: str


class SandboxDispatcher:
    """In-memory dispatcher.

    Records every accepted disbursement. Addresses listed in
    ``reject_addresses`` come back unsuccessful, and ``fail_with`` makes every
    call raise, to exercise the failure paths.
    """

    dispatcher_name = "sandbox"

    def __init__(
        self,
        reject_addresses: set[str] | None = None,
        fail_with: str | None = None,
    ):
        self.reject_addresses = reject_addresses or set()
        self.fail_with = fail_with
        self.sent: list[SentDisbursement] = []

    async def disburse(
        self,
        user_id: int,
        amount: Decimal,
        currency: str,
        address: str,
    ) -> DisburseResult:
        """Accept the disbursement unless configured to fail."""
        if self.fail_with:
            raise DispatcherError(self.fail_with, amount=amount)
        if address in self.reject_addresses:
            return DisburseResult(success=False, message=f"Address {address} rejected")

        external_tx_id = f"SANDBOX-{uuid.uuid4().hex[:12].upper()}"
        self.sent.append(
            SentDisbursement(
                user_id=user_id,
                amount=amount,
                currency=currency,
                address=address,
                external_tx_id=external_tx_id,
            )
        )
        return DisburseResult(success=True, external_tx_id=external_tx_id)
