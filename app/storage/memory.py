# app/storage/memory.py
import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from app.core.exceptions import DuplicateSubscriberRace
from app.models.campaign import DeliveryRecord
from app.models.credits import CreditBalance, CreditKind, CreditLogEntry
from app.models.subscriber import (
    RevenueRecord,
    Subscriber,
    SubscriberEvent,
    TenantUsageStats,
)
from app.storage.base import (
    RECLAIMABLE_OUTCOMES,
    STATS_COUNTERS,
    CreditTransaction,
    StorageBackend,
    SubscriberTransaction,
    normalize_email,
)

logger = logging.getLogger(__name__)

_DELETED = object()


class _MemorySubscriberTransaction(SubscriberTransaction):
    """Buffers writes; MemoryBackend applies them in one step on commit."""

    def __init__(self, backend: "MemoryBackend"):
        self._backend = backend
        self.staged: Dict[str, object] = {}
        self.deltas: Dict[str, Dict[str, float]] = {}
        self.stats_touched_at: Dict[str, datetime] = {}
        self.events: List[SubscriberEvent] = []
        self.revenue: List[RevenueRecord] = []

    def _visible(self, subscriber_id: str) -> Optional[Subscriber]:
        if subscriber_id in self.staged:
            staged = self.staged[subscriber_id]
            return None if staged is _DELETED else staged.model_copy(deep=True)
        current = self._backend._subscribers.get(subscriber_id)
        return current.model_copy(deep=True) if current else None

    async def find_by_email(self, tenant_id: str, email: str) -> Optional[Subscriber]:
        await asyncio.sleep(0)
        email = normalize_email(email)
        for subscriber_id, staged in self.staged.items():
            if staged is not _DELETED and staged.tenant_id == tenant_id and staged.email == email:
                return staged.model_copy(deep=True)
        subscriber_id = self._backend._email_index.get((tenant_id, email))
        if subscriber_id is None:
            return None
        return self._visible(subscriber_id)

    async def get(self, tenant_id: str, subscriber_id: str) -> Optional[Subscriber]:
        await asyncio.sleep(0)
        subscriber = self._visible(subscriber_id)
        if subscriber is None or subscriber.tenant_id != tenant_id:
            return None
        return subscriber

    async def insert(self, subscriber: Subscriber) -> None:
        if (subscriber.tenant_id, subscriber.email) in self._backend._email_index:
            raise DuplicateSubscriberRace(subscriber.tenant_id, subscriber.email)
        self.staged[subscriber.id] = subscriber.model_copy(deep=True)

    async def save(self, subscriber: Subscriber) -> None:
        self.staged[subscriber.id] = subscriber.model_copy(deep=True)

    async def remove(self, tenant_id: str, subscriber_id: str) -> None:
        self.staged[subscriber_id] = _DELETED

    async def apply_stats_delta(
        self, tenant_id: str, deltas: Dict[str, float], now: datetime
    ) -> None:
        pending = self.deltas.setdefault(tenant_id, {})
        for field, delta in deltas.items():
            if field not in STATS_COUNTERS:
                raise ValueError(f"Unknown stats counter: {field}")
            pending[field] = pending.get(field, 0) + delta
        self.stats_touched_at[tenant_id] = now

    async def append_event(self, event: SubscriberEvent) -> None:
        self.events.append(event)

    async def add_revenue(self, record: RevenueRecord) -> None:
        self.revenue.append(record)


class _MemoryCreditTransaction(CreditTransaction):
    def __init__(self, backend: "MemoryBackend", tenant_id: str, kinds: Sequence[CreditKind]):
        self._backend = backend
        self._tenant_id = tenant_id
        self._kinds = set(kinds)
        self.balances: Dict[CreditKind, CreditBalance] = {}
        self.logs: List[CreditLogEntry] = []

    async def get_balance(self, kind: CreditKind) -> CreditBalance:
        if kind not in self._kinds:
            raise ValueError(f"{kind.value} credits are not locked by this transaction")
        await asyncio.sleep(0)
        if kind not in self.balances:
            current = self._backend._balances.get((self._tenant_id, kind))
            self.balances[kind] = (
                current.model_copy()
                if current
                else CreditBalance(tenant_id=self._tenant_id, kind=kind)
            )
        return self.balances[kind].model_copy()

    async def save_balance(self, balance: CreditBalance) -> None:
        if balance.kind not in self._kinds:
            raise ValueError(f"{balance.kind.value} credits are not locked by this transaction")
        self.balances[balance.kind] = balance.model_copy()

    async def append_log(self, entry: CreditLogEntry) -> None:
        self.logs.append(entry)


class MemoryBackend(StorageBackend):
    """In-process backend for tests and local development.

    Serialises work with one asyncio.Lock per (tenant, email) and per
    (tenant, credit kind); there is no lock spanning tenants.
    """

    def __init__(self):
        self._subscribers: Dict[str, Subscriber] = {}
        self._email_index: Dict[Tuple[str, str], str] = {}
        self._stats: Dict[str, TenantUsageStats] = {}
        self._events: List[SubscriberEvent] = []
        self._revenue: List[RevenueRecord] = []
        self._balances: Dict[Tuple[str, CreditKind], CreditBalance] = {}
        self._credit_logs: List[CreditLogEntry] = []
        self._deliveries: Dict[Tuple[str, str], DeliveryRecord] = {}
        # key -> [lock, holders and waiters]; dropped once nobody uses it
        self._locks: Dict[tuple, list] = {}

    @asynccontextmanager
    async def _locked(self, *key):
        entry = self._locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @asynccontextmanager
    async def subscriber_transaction(self, tenant_id: str, email: str):
        async with self._locked("subscriber", tenant_id, normalize_email(email)):
            tx = _MemorySubscriberTransaction(self)
            yield tx
            self._commit_subscriber(tx)

    def _commit_subscriber(self, tx: _MemorySubscriberTransaction) -> None:
        # No awaits below: the write set lands atomically
        for subscriber_id, staged in tx.staged.items():
            previous = self._subscribers.pop(subscriber_id, None)
            if previous is not None:
                self._email_index.pop((previous.tenant_id, previous.email), None)
            if staged is not _DELETED:
                self._subscribers[subscriber_id] = staged
                self._email_index[(staged.tenant_id, staged.email)] = subscriber_id
        for tenant_id, deltas in tx.deltas.items():
            stats = self._stats.setdefault(tenant_id, TenantUsageStats(tenant_id=tenant_id))
            for field, delta in deltas.items():
                setattr(stats, field, getattr(stats, field) + delta)
            stats.updated_at = tx.stats_touched_at[tenant_id]
        self._events.extend(tx.events)
        self._revenue.extend(tx.revenue)

    @asynccontextmanager
    async def credit_transaction(self, tenant_id: str, kinds: Sequence[CreditKind]):
        ordered = sorted(set(kinds), key=lambda kind: kind.value)
        async with AsyncExitStack() as stack:
            for kind in ordered:
                await stack.enter_async_context(self._locked("credit", tenant_id, kind.value))
            tx = _MemoryCreditTransaction(self, tenant_id, ordered)
            yield tx
            for kind, balance in tx.balances.items():
                self._balances[(tenant_id, kind)] = balance
            self._credit_logs.extend(tx.logs)

    async def get_subscriber(self, tenant_id: str, subscriber_id: str) -> Optional[Subscriber]:
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None or subscriber.tenant_id != tenant_id:
            return None
        return subscriber.model_copy(deep=True)

    async def find_subscriber(self, tenant_id: str, email: str) -> Optional[Subscriber]:
        subscriber_id = self._email_index.get((tenant_id, normalize_email(email)))
        if subscriber_id is None:
            return None
        return self._subscribers[subscriber_id].model_copy(deep=True)

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
        rows = [s for s in self._subscribers.values() if s.tenant_id == tenant_id]
        if status:
            rows = [s for s in rows if s.status.value == status]
        if search:
            needle = search.lower()
            rows = [
                s for s in rows
                if needle in s.email.lower()
                or needle in (s.first_name or "").lower()
                or needle in (s.last_name or "").lower()
            ]
        total = len(rows)

        def sort_key(subscriber: Subscriber):
            value = getattr(subscriber, sort_by)
            if hasattr(value, "value"):
                value = value.value
            # Missing values sort last in ascending order
            return (value is None, value)

        present = [s for s in rows if getattr(s, sort_by) is not None]
        missing = [s for s in rows if getattr(s, sort_by) is None]
        present.sort(key=sort_key, reverse=descending)
        ordered = missing + present if descending else present + missing
        page = ordered[offset:offset + limit]
        return [s.model_copy(deep=True) for s in page], total

    async def get_stats(self, tenant_id: str) -> Optional[TenantUsageStats]:
        stats = self._stats.get(tenant_id)
        return stats.model_copy() if stats else None

    async def list_events(
        self, tenant_id: str, subscriber_id: Optional[str] = None
    ) -> List[SubscriberEvent]:
        return [
            e for e in self._events
            if e.tenant_id == tenant_id
            and (subscriber_id is None or e.subscriber_id == subscriber_id)
        ]

    async def get_balances(self, tenant_id: str) -> Dict[CreditKind, CreditBalance]:
        return {
            kind: balance.model_copy()
            for (owner, kind), balance in self._balances.items()
            if owner == tenant_id
        }

    async def list_credit_logs(self, tenant_id: str, limit: int) -> List[CreditLogEntry]:
        logs = [entry for entry in self._credit_logs if entry.tenant_id == tenant_id]
        logs.reverse()
        return logs[:limit]

    async def list_revenue(
        self, tenant_id: str, since: Optional[datetime] = None
    ) -> List[RevenueRecord]:
        return [
            r for r in self._revenue
            if r.tenant_id == tenant_id and (since is None or r.timestamp >= since)
        ]

    async def get_delivery(self, campaign_id: str, subscriber_id: str) -> Optional[DeliveryRecord]:
        return self._deliveries.get((campaign_id, subscriber_id))

    async def claim_delivery(self, record: DeliveryRecord) -> bool:
        key = (record.campaign_id, record.subscriber_id)
        existing = self._deliveries.get(key)
        if existing is not None and existing.outcome not in RECLAIMABLE_OUTCOMES:
            return False
        self._deliveries[key] = record
        return True

    async def save_delivery(self, record: DeliveryRecord) -> None:
        self._deliveries[(record.campaign_id, record.subscriber_id)] = record

    async def list_deliveries(self, campaign_id: str) -> List[DeliveryRecord]:
        return [r for (cid, _), r in self._deliveries.items() if cid == campaign_id]
