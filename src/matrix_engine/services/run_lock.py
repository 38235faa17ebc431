"""Single-flight guard for queue processing runs."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from matrix_engine.models import ProcessorRunState, utcnow

logger = logging.getLogger(__name__)


class ProcessorRunLock:
    """Compare-and-swap flag on the processor_run_state row.

    The flag lives in the database, so it survives process restarts and is
    shared by every processor instance pointed at the same storage. Each
    method runs in the caller's session; callers commit.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.row_id = ProcessorRunState.SINGLETON_ID

    async def initialize(self) -> None:
        """Create the singleton row if it does not exist yet."""
        existing = await self.session.get(ProcessorRunState, self.row_id)
        if existing is None:
            self.session.add(ProcessorRunState(id=self.row_id, active=False))
            await self.session.flush()

    async def acquire(self, now: datetime | None = None) -> bool:
        """Set ``active`` if it is clear.

        Returns True if this caller now holds the lock.
        """
        await self.initialize()
        result = await self.session.execute(
            update(ProcessorRunState)
            .where(
                ProcessorRunState.id == self.row_id,
                ProcessorRunState.active.is_(False),
            )
            .values(active=True, started_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) == 1

    async def release(self, now: datetime | None = None) -> None:
        """Clear ``active`` and stamp the end of the run."""
        await self.session.execute(
            update(ProcessorRunState)
            .where(ProcessorRunState.id == self.row_id)
            .values(active=False, last_run_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )

    async def record_progress(self, event_id: int) -> None:
        await self.session.execute(
            update(ProcessorRunState)
            .where(ProcessorRunState.id == self.row_id)
            .values(last_processed_event_id=event_id)
            .execution_options(synchronize_session=False)
        )

    async def force_release(self) -> bool:
        """Clear a lock left behind by a crashed run (operator action).

        Returns True if the lock was held.
        """
        result = await self.session.execute(
            update(ProcessorRunState)
            .where(
                ProcessorRunState.id == self.row_id,
                ProcessorRunState.active.is_(True),
            )
            .values(active=False)
            .execution_options(synchronize_session=False)
        )
        released = (result.rowcount or 0) == 1
        if released:
            logger.warning("Processor run lock force-released")
        return released

    async def get_state(self) -> ProcessorRunState | None:
        result = await self.session.execute(
            select(ProcessorRunState)
            .where(ProcessorRunState.id == self.row_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
