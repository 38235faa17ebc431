"""Queue processor - the single entry point that drains enrollment events.

Each run:
1) claims the run lock (skips if another run holds it)
2) applies due events one by one, each in its own transaction
3) after each commit, sends the disbursements and notifications it queued
4) releases the lock, whatever happened
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from matrix_engine.config import EngineConfig
from matrix_engine.dispatch import WithdrawalDispatcher
from matrix_engine.errors import LedgerInconsistency, NoAvailableSlot, OwnerNotFound
from matrix_engine.models import EventStatus, Member, utcnow
from matrix_engine.notifications import (
    MATRIX_ENTRY,
    LoggingNotificationSink,
    NotificationSink,
    notify_safely,
)
from matrix_engine.plans import ConfigStore
from matrix_engine.services.disbursement import DisbursementService
from matrix_engine.services.effects import DeferredEffects
from matrix_engine.services.enrollment_queue import EnrollmentQueue
from matrix_engine.services.payout import PayoutEngine
from matrix_engine.services.placement import PlacementEngine
from matrix_engine.services.run_lock import ProcessorRunLock

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    """Summary of one ``run_batch`` call."""

    processed: int = 0
    failed: int = 0
    parked: int = 0
    skipped: bool = False
    disbursed: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None


class QueueProcessor:
    """Applies queued enrollment events.

    Events are strictly sequential. One event's placement, every bonus it
    triggers, the follow-up entries it queues and its own deletion commit
    together or not at all.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config_store: ConfigStore,
        config: EngineConfig | None = None,
        dispatcher: WithdrawalDispatcher | None = None,
        notification_sink: NotificationSink | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.config_store = config_store
        self.config = config or EngineConfig()
        self.notification_sink = notification_sink or LoggingNotificationSink()
        self.clock = clock
        self.disbursements = (
            DisbursementService(session_factory, dispatcher, self.config)
            if dispatcher is not None
            else None
        )

    async def run_batch(self, max_events: int | None = None) -> RunReport:
        """Process up to ``max_events`` due events (default: batch size)."""
        if max_events is not None and max_events < 0:
            raise ValueError(f"max_events must be >= 0, got {max_events}")
        limit = self.config.batch_size if max_events is None else max_events
        report = RunReport(started_at=self.clock())

        async with self.session_factory() as session:
            acquired = await ProcessorRunLock(session).acquire(report.started_at)
            await session.commit()
        if not acquired:
            logger.info("Processor run already active, skipping")
            report.skipped = True
            report.finished_at = self.clock()
            return report

        try:
            async with self.session_factory() as session:
                events = await EnrollmentQueue(session).fetch_due(self.clock(), limit)
                event_ids = [event.id for event in events]

            for event_id in event_ids:
                await self._run_event(event_id, report)
        finally:
            report.finished_at = self.clock()
            async with self.session_factory() as session:
                await ProcessorRunLock(session).release(report.finished_at)
                await session.commit()

        logger.info(
            "Processor run finished: %d processed, %d failed, %d parked, %d disbursed",
            report.processed,
            report.failed,
            report.parked,
            report.disbursed,
        )
        return report

    async def _run_event(self, event_id: int, report: RunReport) -> None:
        try:
            effects = await self.process_one(event_id)
        except NoAvailableSlot as e:
            await self._mark_event(event_id, str(e), park=True)
            report.parked += 1
            report.errors.append(f"event {event_id}: {e}")
            logger.warning("Parked event %s: %s", event_id, e)
            return
        except LedgerInconsistency:
            logger.critical("Ledger inconsistency on event %s, aborting run", event_id)
            raise
        except Exception as e:
            await self._mark_event(event_id, str(e), park=False)
            report.failed += 1
            report.errors.append(f"event {event_id}: {e}")
            logger.exception("Failed to process event %s", event_id)
            return

        if effects is None:
            return
        report.processed += 1
        try:
            report.disbursed += await self._flush_effects(effects)
        except Exception as e:
            # The event is committed; its side effects are retried out of band.
            report.errors.append(f"event {event_id} effects: {e}")
            logger.exception("Sending side effects of event %s failed", event_id)

    async def process_one(self, event_id: int) -> DeferredEffects | None:
        """Apply one event in its own transaction.

        Returns the effects to send after commit, or None if the event is no
        longer pending.
        """
        now = self.clock()
        async with self.session_factory() as session:
            try:
                queue = EnrollmentQueue(session)
                event = await queue.get(event_id)
                if event is None or event.status != EventStatus.PENDING.value:
                    return None

                owner = await session.get(Member, event.owner_id)
                if owner is None:
                    raise OwnerNotFound(event.owner_id)
                plan = self.config_store.get_plan_level(event.plan_level)
                sponsor_id = await self._resolve_sponsor(session, owner, event.sponsor_username)

                effects = DeferredEffects()
                placement = PlacementEngine(session, self.config)
                payout = PayoutEngine(session, self.config, effects)

                position = await placement.place(owner, plan, sponsor_id, now=now)
                await payout.pay_referral_bonus(position, plan, event.kind)
                result = await payout.propagate(position, plan, now=now)

                if plan.notify_on_entry:
                    effects.notify(
                        owner.id,
                        MATRIX_ENTRY,
                        position_id=position.id,
                        plan_level=plan.level,
                        plan_name=plan.name,
                        parent_id=position.parent_id,
                    )

                await queue.delete(event)
                await ProcessorRunLock(session).record_progress(event_id)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.info(
            "Applied %s event %s for member %s at level %s: %d bonuses, %d cycles",
            event.kind,
            event_id,
            owner.username,
            plan.level,
            len(effects.postings),
            len(result.cycled_position_ids),
        )
        return effects

    async def _resolve_sponsor(
        self, session: AsyncSession, owner: Member, sponsor_username: str | None
    ) -> int | None:
        """Sponsor for the placement.

        A username on the event wins and is recorded as the member's sponsor
        when none is set yet; otherwise the member's referral sponsor is used.
        """
        if sponsor_username:
            result = await session.execute(
                select(Member).where(Member.username == sponsor_username)
            )
            sponsor = result.scalar_one_or_none()
            if sponsor is not None and sponsor.id != owner.id:
                if owner.sponsor_id is None:
                    owner.sponsor_id = sponsor.id
                return sponsor.id
            logger.warning(
                "Unknown sponsor %s for member %s, using referral sponsor",
                sponsor_username,
                owner.username,
            )
        return owner.sponsor_id

    async def _mark_event(self, event_id: int, reason: str, park: bool) -> None:
        async with self.session_factory() as session:
            queue = EnrollmentQueue(session)
            if park:
                await queue.park(event_id, reason)
            else:
                await queue.record_failure(event_id, reason)
            await session.commit()

    async def _flush_effects(self, effects: DeferredEffects) -> int:
        """Send post-commit effects. Returns the number of disbursements sent."""
        sent = 0
        if effects.withdrawal_ids:
            if self.disbursements is None:
                logger.warning(
                    "No dispatcher configured, %d withdrawals left pending",
                    len(effects.withdrawal_ids),
                )
            else:
                outcomes = await self.disbursements.dispatch_many(effects.withdrawal_ids)
                sent = sum(1 for outcome in outcomes if outcome.sent)

        for notification in effects.notifications:
            await notify_safely(
                self.notification_sink,
                notification.user_id,
                notification.event_type,
                notification.payload,
            )
        return sent

    async def pending_count(self) -> int:
        """Number of PENDING events due now."""
        async with self.session_factory() as session:
            return await EnrollmentQueue(session).count_due(self.clock())

    async def run_forever(
        self, interval: float, stop: asyncio.Event | None = None
    ) -> None:
        """Call ``run_batch`` every ``interval`` seconds until ``stop`` is set."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            await self.run_batch()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
