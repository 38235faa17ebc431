"""Disbursement service - sends queued withdrawals through the dispatcher.

Withdrawal records are written by the ledger inside the event transaction.
They are sent here, each in its own transaction, only after that commit, so a
gateway failure never rolls back a ledger credit and funds are never sent for
a credit that was rolled back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from matrix_engine.config import EngineConfig
from matrix_engine.dispatch import WithdrawalDispatcher
from matrix_engine.errors import DispatcherError
from matrix_engine.models import WithdrawalRecord, WithdrawalStatus, utcnow
from matrix_engine.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchOutcome:
    withdrawal_id: int
    sent: bool
    external_tx_id: str | None = None
    error: str | None = None


class DisbursementService:
    """Dispatches PENDING or FAILED withdrawal records.

    On success the record becomes SENT and the amount moves from unpaid to
    paid earnings. On failure it becomes FAILED with the error; the ledger
    balance is left as unpaid.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: WithdrawalDispatcher,
        config: EngineConfig,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.config = config

    async def dispatch(self, withdrawal_id: int) -> DispatchOutcome:
        """Send one withdrawal. Never raises for gateway failures."""
        async with self.session_factory() as session:
            record = await session.get(WithdrawalRecord, withdrawal_id)
            if record is None:
                logger.warning("Withdrawal %s not found", withdrawal_id)
                return DispatchOutcome(withdrawal_id, sent=False, error="not found")
            if record.status == WithdrawalStatus.SENT.value:
                return DispatchOutcome(
                    withdrawal_id, sent=True, external_tx_id=record.external_tx_id
                )

            try:
                result = await self.dispatcher.disburse(
                    record.user_id, record.amount, record.currency, record.address
                )
                error = None if result.success else (result.message or "rejected")
            except DispatcherError as e:
                result = None
                error = str(e)
            except Exception as e:
                logger.exception("Dispatcher raised sending withdrawal %s", record.id)
                result = None
                error = f"{type(e).__name__}: {e}"

            if error is None:
                record.status = WithdrawalStatus.SENT.value
                record.external_tx_id = result.external_tx_id
                record.error = None
                record.completed_at = utcnow()
                await LedgerService(session, self.config).complete_withdrawal(
                    record.user_id, record.amount
                )
                await session.commit()
                logger.info(
                    "Withdrawal %s of %s %s sent to member %s via %s (%s)",
                    record.id,
                    record.amount,
                    record.currency,
                    record.user_id,
                    self.dispatcher.dispatcher_name,
                    record.external_tx_id,
                )
                return DispatchOutcome(
                    withdrawal_id, sent=True, external_tx_id=record.external_tx_id
                )

            record.status = WithdrawalStatus.FAILED.value
            record.error = error
            await session.commit()
            logger.error(
                "Withdrawal %s of %s %s for member %s failed: %s",
                record.id,
                record.amount,
                record.currency,
                record.user_id,
                error,
            )
            return DispatchOutcome(withdrawal_id, sent=False, error=error)

    async def dispatch_many(self, withdrawal_ids: list[int]) -> list[DispatchOutcome]:
        return [await self.dispatch(withdrawal_id) for withdrawal_id in withdrawal_ids]

    async def retry_failed(self, limit: int = 100) -> list[DispatchOutcome]:
        """Re-send FAILED and stranded PENDING withdrawals, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(WithdrawalRecord.id)
                .where(
                    WithdrawalRecord.status.in_(
                        [WithdrawalStatus.FAILED.value, WithdrawalStatus.PENDING.value]
                    )
                )
                .order_by(WithdrawalRecord.id)
                .limit(limit)
            )
            ids = list(result.scalars().all())
        if ids:
            logger.info("Retrying %d withdrawals", len(ids))
        return await self.dispatch_many(ids)
