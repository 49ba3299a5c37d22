# app/storage/base.py
"""
Storage contract shared by the PostgreSQL and in-memory backends.

Lifecycle and credit operations run inside a transaction object obtained from
the backend. Everything written through a transaction commits together when
the ``async with`` block exits cleanly and is discarded when it raises.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncContextManager, Dict, List, Optional, Sequence, Tuple

from app.models.campaign import DeliveryOutcome, DeliveryRecord
from app.models.credits import CreditBalance, CreditKind, CreditLogEntry
from app.models.subscriber import (
    RevenueRecord,
    Subscriber,
    SubscriberEvent,
    TenantUsageStats,
)

# Delivery outcomes a later pass may claim again
RECLAIMABLE_OUTCOMES = (
    DeliveryOutcome.SKIPPED_INSUFFICIENT_CREDIT,
    DeliveryOutcome.SKIPPED_INACTIVE,
)

# Scalar subscriber fields that list() may sort on
SORTABLE_FIELDS = (
    "email",
    "first_name",
    "last_name",
    "source",
    "status",
    "engagement_score",
    "last_engagement",
    "subscribed_at",
    "unsubscribed_at",
    "updated_at",
    "country",
)

# Numeric columns on TenantUsageStats that accept deltas
STATS_COUNTERS = (
    "total_subscribers",
    "active_subscribers",
    "unsubscribed_subscribers",
    "bounced_subscribers",
    "complained_subscribers",
    "subscriber_growth",
    "total_revenue",
    "conversions",
)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class SubscriberTransaction(ABC):
    """Unit of work for one (tenant, email) lifecycle operation."""

    @abstractmethod
    async def find_by_email(self, tenant_id: str, email: str) -> Optional[Subscriber]:
        ...

    @abstractmethod
    async def get(self, tenant_id: str, subscriber_id: str) -> Optional[Subscriber]:
        ...

    @abstractmethod
    async def insert(self, subscriber: Subscriber) -> None:
        ...

    @abstractmethod
    async def save(self, subscriber: Subscriber) -> None:
        ...

    @abstractmethod
    async def remove(self, tenant_id: str, subscriber_id: str) -> None:
        ...

    @abstractmethod
    async def apply_stats_delta(
        self, tenant_id: str, deltas: Dict[str, float], now: datetime
    ) -> None:
        """Add deltas to the tenant counters, creating the row at zero first."""

    @abstractmethod
    async def append_event(self, event: SubscriberEvent) -> None:
        ...

    @abstractmethod
    async def add_revenue(self, record: RevenueRecord) -> None:
        ...


class CreditTransaction(ABC):
    """Unit of work holding the balances of one tenant for a set of kinds."""

    @abstractmethod
    async def get_balance(self, kind: CreditKind) -> CreditBalance:
        ...

    @abstractmethod
    async def save_balance(self, balance: CreditBalance) -> None:
        ...

    @abstractmethod
    async def append_log(self, entry: CreditLogEntry) -> None:
        ...


class StorageBackend(ABC):
    @abstractmethod
    def subscriber_transaction(
        self, tenant_id: str, email: str
    ) -> AsyncContextManager[SubscriberTransaction]:
        """Open a transaction serialised on (tenant_id, email)."""

    @abstractmethod
    def credit_transaction(
        self, tenant_id: str, kinds: Sequence[CreditKind]
    ) -> AsyncContextManager[CreditTransaction]:
        """Open a transaction serialised on (tenant_id, kind) for every kind."""

    # Reads

    @abstractmethod
    async def get_subscriber(self, tenant_id: str, subscriber_id: str) -> Optional[Subscriber]:
        ...

    @abstractmethod
    async def find_subscriber(self, tenant_id: str, email: str) -> Optional[Subscriber]:
        ...

    @abstractmethod
    async def list_subscribers(
        self,
        tenant_id: str,
        status: Optional[str],
        search: str,
        sort_by: str,
        descending: bool,
        offset: int,
        limit: int,
    ) -> Tuple[List[Subscriber], int]:
        """Return one page and the count of all rows matching status and search."""

    @abstractmethod
    async def get_stats(self, tenant_id: str) -> Optional[TenantUsageStats]:
        ...

    @abstractmethod
    async def list_events(
        self, tenant_id: str, subscriber_id: Optional[str] = None
    ) -> List[SubscriberEvent]:
        """Events in the order they were appended."""

    @abstractmethod
    async def get_balances(self, tenant_id: str) -> Dict[CreditKind, CreditBalance]:
        ...

    @abstractmethod
    async def list_credit_logs(self, tenant_id: str, limit: int) -> List[CreditLogEntry]:
        """Newest first."""

    @abstractmethod
    async def list_revenue(
        self, tenant_id: str, since: Optional[datetime] = None
    ) -> List[RevenueRecord]:
        ...

    # Campaign send log

    @abstractmethod
    async def get_delivery(self, campaign_id: str, subscriber_id: str) -> Optional[DeliveryRecord]:
        ...

    @abstractmethod
    async def claim_delivery(self, record: DeliveryRecord) -> bool:
        """Atomically write a pending record for (campaign_id, subscriber_id).

        Succeeds when no record exists or the existing one is a skip, which
        is retried on a later pass. Returns False when another pass holds
        the pair or already finished it.
        """

    @abstractmethod
    async def save_delivery(self, record: DeliveryRecord) -> None:
        """Insert or replace the outcome for (campaign_id, subscriber_id)."""

    @abstractmethod
    async def list_deliveries(self, campaign_id: str) -> List[DeliveryRecord]:
        ...

    async def close(self) -> None:
        pass
