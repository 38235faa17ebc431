"""Enrollment event queue operations."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from matrix_engine.models import EnrollmentEvent, EventKind, EventStatus, utcnow
from matrix_engine.services.position_tree import PositionTree


class EnrollmentQueue:
    """Pending placements, consumed in ``(scheduled_at, id)`` order.

    Events in the future are deferred; events at or before ``now`` are due.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(
        self,
        owner_id: int,
        plan_level: int,
        kind: EventKind | str = EventKind.NEW_ENTRY,
        scheduled_at: datetime | None = None,
        sponsor_username: str | None = None,
    ) -> EnrollmentEvent:
        """Add an event to the queue."""
        now = utcnow()
        event = EnrollmentEvent(
            owner_id=owner_id,
            plan_level=plan_level,
            kind=EventKind(kind).value,
            scheduled_at=scheduled_at or now,
            sponsor_username=sponsor_username,
            status=EventStatus.PENDING.value,
            attempts=0,
            created_at=now,
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def schedule_cross_entry(
        self,
        owner_id: int,
        target_level: int,
        now: datetime,
        spacing: timedelta,
    ) -> EnrollmentEvent:
        """Queue a CROSS_ENTRY, spaced out from recent entries for the pair.

        If an event for ``(owner_id, target_level)`` is queued at or after
        ``now - spacing``, the new one is scheduled ``spacing`` after the latest
        such event. Otherwise, if a position for the pair was created in that
        window, it is scheduled ``spacing`` after that position. Otherwise it
        is scheduled at ``now``.
        """
        window_start = now - spacing

        result = await self.session.execute(
            select(EnrollmentEvent)
            .where(
                EnrollmentEvent.owner_id == owner_id,
                EnrollmentEvent.plan_level == target_level,
                EnrollmentEvent.scheduled_at >= window_start,
            )
            .order_by(EnrollmentEvent.scheduled_at.desc(), EnrollmentEvent.id.desc())
            .limit(1)
        )
        recent_event = result.scalar_one_or_none()

        scheduled_at = now
        if recent_event is not None:
            scheduled_at = recent_event.scheduled_at + spacing
        else:
            recent_position = await PositionTree(self.session).latest_created_since(
                owner_id, target_level, window_start
            )
            if recent_position is not None:
                scheduled_at = recent_position.created_at + spacing

        return await self.enqueue(
            owner_id,
            target_level,
            kind=EventKind.CROSS_ENTRY,
            scheduled_at=scheduled_at,
        )

    async def fetch_due(self, now: datetime, limit: int) -> list[EnrollmentEvent]:
        """PENDING events with ``scheduled_at <= now``, oldest first."""
        result = await self.session.execute(
            select(EnrollmentEvent)
            .where(
                EnrollmentEvent.status == EventStatus.PENDING.value,
                EnrollmentEvent.scheduled_at <= now,
            )
            .order_by(EnrollmentEvent.scheduled_at, EnrollmentEvent.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_due(self, now: datetime) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(EnrollmentEvent)
            .where(
                EnrollmentEvent.status == EventStatus.PENDING.value,
                EnrollmentEvent.scheduled_at <= now,
            )
        )
        return int(result.scalar() or 0)

    async def get(self, event_id: int) -> EnrollmentEvent | None:
        return await self.session.get(EnrollmentEvent, event_id)

    async def delete(self, event: EnrollmentEvent) -> None:
        """Remove a consumed event."""
        await self.session.delete(event)
        await self.session.flush()

    async def park(self, event_id: int, reason: str) -> bool:
        """Take an event out of automatic processing.

        Returns True if the event existed.
        """
        result = await self.session.execute(
            update(EnrollmentEvent)
            .where(EnrollmentEvent.id == event_id)
            .values(
                status=EventStatus.PARKED.value,
                attempts=EnrollmentEvent.attempts + 1,
                last_error=reason,
            )
        )
        return (result.rowcount or 0) > 0

    async def record_failure(self, event_id: int, reason: str) -> bool:
        """Note a failed attempt; the event stays PENDING for the next run."""
        result = await self.session.execute(
            update(EnrollmentEvent)
            .where(EnrollmentEvent.id == event_id)
            .values(attempts=EnrollmentEvent.attempts + 1, last_error=reason)
        )
        return (result.rowcount or 0) > 0

    async def requeue_parked(self, plan_level: int | None = None) -> int:
        """Return PARKED events to PENDING (operator action).

        Returns count of requeued events.
        """
        query = (
            update(EnrollmentEvent)
            .where(EnrollmentEvent.status == EventStatus.PARKED.value)
            .values(status=EventStatus.PENDING.value)
        )
        if plan_level is not None:
            query = query.where(EnrollmentEvent.plan_level == plan_level)
        result = await self.session.execute(query)
        return result.rowcount or 0
