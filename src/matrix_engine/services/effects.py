"""Side effects deferred until an event's transaction commits."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from matrix_engine.services.ledger_service import BonusPosting


@dataclass(frozen=True)
class PendingNotification:
    user_id: int
    event_type: str
    payload: dict[str, Any]


@dataclass
class DeferredEffects:
    """Work collected while applying one event.

    Disbursements and notifications reach external systems, so they are only
    sent once the ledger writes they depend on are committed.
    """

    withdrawal_ids: list[int] = field(default_factory=list)
    notifications: list[PendingNotification] = field(default_factory=list)
    postings: list[BonusPosting] = field(default_factory=list)

    def add_posting(self, posting: BonusPosting | None) -> None:
        if posting is None:
            return
        self.postings.append(posting)
        if posting.withdrawal_id is not None:
            self.withdrawal_ids.append(posting.withdrawal_id)

    def notify(self, user_id: int, event_type: str, **payload: Any) -> None:
        self.notifications.append(PendingNotification(user_id, event_type, payload))
