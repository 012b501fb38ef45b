from typing import Any, Dict, List, Optional

import sqlalchemy as sa

from subledger.models import Subscription, SubscriptionEvent
from subledger.utils.helpers import jsonable


class EventLog:
    """Append-only audit trail per subscription. There is no update or delete path."""

    def __init__(self, session):
        self.session = session

    def append(self, subscription: Subscription, event_type: str, *,
               status_from: Optional[str] = None, status_to: Optional[str] = None,
               data: Optional[Dict[str, Any]] = None) -> SubscriptionEvent:
        event = SubscriptionEvent(
            subscription_id=subscription.id,
            type=event_type,
            status_from=status_from,
            status_to=status_to if status_to is not None else subscription.status,
            data=jsonable(data) if data else None,
        )
        self.session.add(event)
        self.session.flush()
        return event

    def history(self, subscription: Subscription, limit: Optional[int] = None) -> List[SubscriptionEvent]:
        stmt = (
            sa.select(SubscriptionEvent)
            .where(SubscriptionEvent.subscription_id == subscription.id)
            .order_by(SubscriptionEvent.id.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars())

    def latest(self, subscription: Subscription) -> Optional[SubscriptionEvent]:
        events = self.history(subscription, limit=1)
        return events[0] if events else None

    def reconstruct_status(self, subscription: Subscription) -> Optional[str]:
        """Status implied by the audit trail alone (last event's status_to)."""
        latest = self.latest(subscription)
        return latest.status_to if latest else None
