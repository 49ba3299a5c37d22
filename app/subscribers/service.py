# app/subscribers/service.py
import uuid
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Union

from app.core.exceptions import DuplicateSubscriberRace, SubscriberNotFound
from app.models.subscriber import (
    STATUS_COUNTERS,
    CampaignRevenue,
    EventType,
    RevenueRecord,
    RevenueStats,
    Subscriber,
    SubscriberAttributes,
    SubscriberEvent,
    SubscriberPage,
    SubscriberStatus,
    SubscriberUpdate,
    TenantUsageStats,
)
from app.storage.base import SORTABLE_FIELDS, StorageBackend, SubscriberTransaction, normalize_email

logger = logging.getLogger(__name__)

# Engagement score bump per tracked interaction
ENGAGEMENT_WEIGHTS = {
    EventType.OPEN: 1.0,
    EventType.CLICK: 3.0,
}

# Counter deltas per lifecycle transition
SUBSCRIBE_DELTA = {"total_subscribers": 1, "active_subscribers": 1, "subscriber_growth": 1}
RESUBSCRIBE_DELTA = {"active_subscribers": 1, "unsubscribed_subscribers": -1, "subscriber_growth": 1}
UNSUBSCRIBE_DELTA = {"active_subscribers": -1, "unsubscribed_subscribers": 1, "subscriber_growth": -1}
BOUNCE_DELTA = {"active_subscribers": -1, "bounced_subscribers": 1, "subscriber_growth": -1}
COMPLAINT_DELTA = {"active_subscribers": -1, "complained_subscribers": 1, "subscriber_growth": -1}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriberStore:
    """Owns subscriber identity, status transitions and tenant counters.

    Each lifecycle operation writes the row, the counter deltas and the event
    in one storage transaction keyed on (tenant_id, email).
    """

    def __init__(self, storage: StorageBackend, clock: Callable[[], datetime] = _utcnow):
        self.storage = storage
        self._clock = clock

    def _event(
        self,
        subscriber: Subscriber,
        event_type: EventType,
        campaign_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SubscriberEvent:
        return SubscriberEvent(
            id=str(uuid.uuid4()),
            tenant_id=subscriber.tenant_id,
            subscriber_id=subscriber.id,
            type=event_type,
            campaign_id=campaign_id,
            timestamp=self._clock(),
            metadata=metadata,
        )

    async def subscribe(
        self,
        tenant_id: str,
        email: str,
        attrs: Optional[SubscriberAttributes] = None,
        campaign_id: Optional[str] = None,
    ) -> Subscriber:
        """Create, reactivate or return the subscriber for (tenant_id, email)"""
        attrs = attrs or SubscriberAttributes()
        try:
            return await self._subscribe_once(tenant_id, email, attrs, campaign_id)
        except DuplicateSubscriberRace:
            logger.warning(f"Subscribe race for {email} (tenant {tenant_id}), retrying once")
            return await self._subscribe_once(tenant_id, email, attrs, campaign_id)

    async def _subscribe_once(
        self,
        tenant_id: str,
        email: str,
        attrs: SubscriberAttributes,
        campaign_id: Optional[str],
    ) -> Subscriber:
        email = normalize_email(email)
        now = self._clock()

        async with self.storage.subscriber_transaction(tenant_id, email) as tx:
            existing = await tx.find_by_email(tenant_id, email)

            if existing is None:
                subscriber = Subscriber(
                    **attrs.model_dump(),
                    id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    email=email,
                    status=SubscriberStatus.ACTIVE,
                    campaigns=[campaign_id] if campaign_id else [],
                    subscribed_at=now,
                )
                await tx.insert(subscriber)
                await tx.apply_stats_delta(tenant_id, SUBSCRIBE_DELTA, now)
                await tx.append_event(self._event(subscriber, EventType.SUBSCRIBE, campaign_id))
                logger.info(f"Subscriber created: {email} (tenant {tenant_id})")
                return subscriber

            if campaign_id and campaign_id not in existing.campaigns:
                existing.campaigns.append(campaign_id)

            if existing.status == SubscriberStatus.UNSUBSCRIBED:
                existing.status = SubscriberStatus.ACTIVE
                existing.subscribed_at = now
                existing.unsubscribed_at = None
                existing.source = attrs.source
                if attrs.first_name:
                    existing.first_name = attrs.first_name
                if attrs.last_name:
                    existing.last_name = attrs.last_name
                if attrs.consent:
                    existing.consent = attrs.consent
                existing.updated_at = now
                await tx.save(existing)
                await tx.apply_stats_delta(tenant_id, RESUBSCRIBE_DELTA, now)
                await tx.append_event(
                    self._event(existing, EventType.SUBSCRIBE, campaign_id, {"resubscribed": True})
                )
                logger.info(f"Reactivated subscription: {email} (tenant {tenant_id})")
                return existing

            if existing.status != SubscriberStatus.ACTIVE:
                # Bounced and complained addresses stay suppressed
                logger.info(f"Subscribe ignored for {existing.status.value} address: {email}")
                return existing

            if campaign_id:
                existing.updated_at = now
                await tx.save(existing)
            return existing

    async def unsubscribe(
        self,
        tenant_id: str,
        email: str,
        campaign_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Process an unsubscribe request. False when the address is unknown."""
        now = self._clock()
        async with self.storage.subscriber_transaction(tenant_id, email) as tx:
            subscriber = await tx.find_by_email(tenant_id, email)
            if subscriber is None:
                return False
            if subscriber.status != SubscriberStatus.ACTIVE:
                return True

            subscriber.status = SubscriberStatus.UNSUBSCRIBED
            subscriber.unsubscribed_at = now
            subscriber.updated_at = now
            await tx.save(subscriber)
            await tx.apply_stats_delta(tenant_id, UNSUBSCRIBE_DELTA, now)
            await tx.append_event(
                self._event(subscriber, EventType.UNSUBSCRIBE, campaign_id, {"reason": reason})
            )
        logger.info(f"Unsubscribed: {subscriber.email} (tenant {tenant_id})")
        return True

    async def mark_bounced(self, tenant_id: str, email: str) -> bool:
        return await self._terminate(tenant_id, email, SubscriberStatus.BOUNCED, EventType.BOUNCE, BOUNCE_DELTA)

    async def mark_complained(self, tenant_id: str, email: str) -> bool:
        return await self._terminate(
            tenant_id, email, SubscriberStatus.COMPLAINED, EventType.COMPLAINT, COMPLAINT_DELTA
        )

    async def _terminate(
        self,
        tenant_id: str,
        email: str,
        status: SubscriberStatus,
        event_type: EventType,
        delta: Dict[str, int],
    ) -> bool:
        """Move an active subscriber to a terminal status. False when the address is unknown."""
        now = self._clock()
        async with self.storage.subscriber_transaction(tenant_id, email) as tx:
            subscriber = await tx.find_by_email(tenant_id, email)
            if subscriber is None:
                logger.warning(f"{event_type.value} reported for unknown subscriber: {email}")
                return False
            if subscriber.status != SubscriberStatus.ACTIVE:
                return True

            subscriber.status = status
            subscriber.updated_at = now
            await tx.save(subscriber)
            await tx.apply_stats_delta(tenant_id, delta, now)
            await tx.append_event(self._event(subscriber, event_type))
        logger.info(f"Subscriber marked {status.value}: {subscriber.email} (tenant {tenant_id})")
        return True

    async def get_stats(self, tenant_id: str) -> TenantUsageStats:
        stats = await self.storage.get_stats(tenant_id)
        return stats or TenantUsageStats(tenant_id=tenant_id)

    async def list(
        self,
        tenant_id: str,
        status: str = "all",
        page: int = 1,
        page_size: int = 50,
        search: str = "",
        sort_by: str = "subscribed_at",
        sort_direction: str = "desc",
    ) -> SubscriberPage:
        """List subscribers; total counts every row matching status and search"""
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be positive")
        if sort_by not in SORTABLE_FIELDS:
            raise ValueError(f"Cannot sort subscribers by {sort_by!r}")
        if sort_direction not in ("asc", "desc"):
            raise ValueError("sort_direction must be 'asc' or 'desc'")
        status_filter = None if status == "all" else SubscriberStatus(status).value

        rows, total = await self.storage.list_subscribers(
            tenant_id,
            status_filter,
            (search or "").strip(),
            sort_by,
            sort_direction == "desc",
            (page - 1) * page_size,
            page_size,
        )
        return SubscriberPage(subscribers=rows, total=total, page=page, page_size=page_size)

    async def get(self, tenant_id: str, subscriber_id: str) -> Subscriber:
        subscriber = await self.storage.get_subscriber(tenant_id, subscriber_id)
        if subscriber is None:
            raise SubscriberNotFound(subscriber_id)
        return subscriber

    async def find_by_email(self, tenant_id: str, email: str) -> Optional[Subscriber]:
        return await self.storage.find_subscriber(tenant_id, email)

    async def update(
        self,
        tenant_id: str,
        subscriber_id: str,
        fields: Union[SubscriberUpdate, Dict[str, Any]],
    ) -> Subscriber:
        """Update profile fields of a subscriber"""
        if isinstance(fields, dict):
            fields = SubscriberUpdate.model_validate(fields)
        changes = fields.model_dump(exclude_unset=True)

        current = await self.get(tenant_id, subscriber_id)
        async with self.storage.subscriber_transaction(tenant_id, current.email) as tx:
            subscriber = await tx.get(tenant_id, subscriber_id)
            if subscriber is None:
                raise SubscriberNotFound(subscriber_id)
            updated = subscriber.model_copy(update={**changes, "updated_at": self._clock()})
            # Re-validate so nested models and enums are coerced
            updated = Subscriber.model_validate(updated.model_dump())
            await tx.save(updated)
        return updated

    async def delete(self, tenant_id: str, subscriber_id: str) -> None:
        """Delete a subscriber and take its row out of the tenant counters"""
        current = await self.get(tenant_id, subscriber_id)
        now = self._clock()
        async with self.storage.subscriber_transaction(tenant_id, current.email) as tx:
            subscriber = await tx.get(tenant_id, subscriber_id)
            if subscriber is None:
                raise SubscriberNotFound(subscriber_id)
            await tx.remove(tenant_id, subscriber_id)

            delta = {"total_subscribers": -1, STATUS_COUNTERS[subscriber.status]: -1}
            if subscriber.status == SubscriberStatus.ACTIVE:
                delta["subscriber_growth"] = -1
            await tx.apply_stats_delta(tenant_id, delta, now)
        logger.info(f"Subscriber {subscriber_id} deleted successfully")

    async def log_event(
        self,
        tenant_id: str,
        email: str,
        event_type: EventType,
        campaign_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[SubscriberEvent]:
        """Append an event for the subscriber with this address, if it exists"""
        async with self.storage.subscriber_transaction(tenant_id, email) as tx:
            subscriber = await tx.find_by_email(tenant_id, email)
            if subscriber is None:
                logger.warning(f"Cannot log {event_type.value} for unknown subscriber: {email}")
                return None
            event = self._event(subscriber, event_type, campaign_id, metadata)
            await tx.append_event(event)
        return event

    async def record_engagement(
        self,
        tenant_id: str,
        email: str,
        event_type: EventType,
        campaign_id: Optional[str] = None,
    ) -> bool:
        """Track an open or click and bump the engagement score"""
        if event_type not in ENGAGEMENT_WEIGHTS:
            raise ValueError(f"{event_type.value} is not an engagement event")
        now = self._clock()
        async with self.storage.subscriber_transaction(tenant_id, email) as tx:
            subscriber = await tx.find_by_email(tenant_id, email)
            if subscriber is None:
                return False
            subscriber.engagement_score = (subscriber.engagement_score or 0) + ENGAGEMENT_WEIGHTS[event_type]
            subscriber.last_engagement = now
            await tx.save(subscriber)
            await tx.append_event(self._event(subscriber, event_type, campaign_id))
        return True

    async def track_revenue(
        self,
        tenant_id: str,
        subscriber_id: str,
        campaign_id: str,
        amount: float,
        order_id: str,
        currency: str = "USD",
    ) -> RevenueRecord:
        """Attribute an order to a subscriber and campaign"""
        if amount <= 0:
            raise ValueError("Revenue amount must be positive")
        current = await self.get(tenant_id, subscriber_id)
        now = self._clock()
        record = RevenueRecord(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            subscriber_id=subscriber_id,
            campaign_id=campaign_id,
            amount=amount,
            currency=currency,
            order_id=order_id,
            timestamp=now,
        )
        async with self.storage.subscriber_transaction(tenant_id, current.email) as tx:
            await tx.add_revenue(record)
            await tx.apply_stats_delta(tenant_id, {"total_revenue": amount, "conversions": 1}, now)
        logger.info(f"Tracked revenue {amount} {currency} for campaign {campaign_id}")
        return record

    async def get_revenue_stats(self, tenant_id: str) -> RevenueStats:
        stats = await self.get_stats(tenant_id)
        since = self._clock() - timedelta(days=30)
        recent = await self.storage.list_revenue(tenant_id, since=since)

        by_campaign: Dict[str, CampaignRevenue] = defaultdict(
            lambda: CampaignRevenue(campaign_id="", revenue=0.0, conversions=0)
        )
        for record in await self.storage.list_revenue(tenant_id):
            entry = by_campaign[record.campaign_id]
            entry.campaign_id = record.campaign_id
            entry.revenue += record.amount
            entry.conversions += 1

        top = sorted(by_campaign.values(), key=lambda c: c.revenue, reverse=True)[:10]
        return RevenueStats(
            total=stats.total_revenue,
            last_thirty_days=sum(record.amount for record in recent),
            by_campaign=top,
        )
