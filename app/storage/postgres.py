# app/storage/postgres.py
"""
PostgreSQL backend built on asyncpg.

Subscriber operations take a transaction-scoped advisory lock on
``tenant_id:email`` so concurrent lifecycle calls for the same pair queue up
inside the database. Credit operations lock the balance rows with
``SELECT ... FOR UPDATE`` in kind order. Counters are changed with
``col = col + $n`` inside the same transaction as the row write.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg

from app.core.exceptions import DuplicateSubscriberRace, StorageUnavailable
from app.database.connection import DatabaseConnection, get_db_connection, release_db_connection
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
    SORTABLE_FIELDS,
    STATS_COUNTERS,
    CreditTransaction,
    StorageBackend,
    SubscriberTransaction,
    normalize_email,
)

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.SerializationError,
    asyncpg.DeadlockDetectedError,
)

SUBSCRIBER_COLUMNS = (
    "id", "tenant_id", "email", "first_name", "last_name", "source", "status",
    "campaigns", "tags", "custom_fields", "engagement_score", "last_engagement",
    "consent", "utm_source", "utm_medium", "utm_campaign", "ip_address",
    "country", "subscribed_at", "unsubscribed_at", "updated_at",
)
_JSON_COLUMNS = ("custom_fields", "consent")
_SELECT_SUBSCRIBER = f"SELECT {', '.join(SUBSCRIBER_COLUMNS)} FROM subscribers"


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_list_query(
    tenant_id: str,
    status: Optional[str],
    search: str,
    sort_by: str,
    descending: bool,
    offset: int,
    limit: int,
) -> Tuple[str, List[Any], str, List[Any]]:
    """Build the page query and the matching count query.

    Both queries share the status and search filters, so the count reflects
    every row the search matches and not just the current page.
    """
    if sort_by not in SORTABLE_FIELDS:
        raise ValueError(f"Cannot sort subscribers by {sort_by!r}")

    args: List[Any] = [tenant_id]
    where = ["tenant_id = $1"]
    if status:
        args.append(status)
        where.append(f"status = ${len(args)}")
    if search:
        args.append(f"%{_escape_like(search.lower())}%")
        n = len(args)
        where.append(
            f"(lower(email) LIKE ${n} ESCAPE '\\'"
            f" OR lower(coalesce(first_name, '')) LIKE ${n} ESCAPE '\\'"
            f" OR lower(coalesce(last_name, '')) LIKE ${n} ESCAPE '\\')"
        )
    clause = " AND ".join(where)
    direction = "DESC" if descending else "ASC"

    count_sql = f"SELECT COUNT(*) FROM subscribers WHERE {clause}"
    page_sql = (
        f"{_SELECT_SUBSCRIBER} WHERE {clause} "
        f"ORDER BY {sort_by} {direction}, id {direction} "
        f"LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}"
    )
    return page_sql, args + [limit, offset], count_sql, list(args)


def _row_to_subscriber(row) -> Subscriber:
    data = dict(row)
    for column in _JSON_COLUMNS:
        if data.get(column) is not None:
            data[column] = json.loads(data[column])
    data["custom_fields"] = data.get("custom_fields") or {}
    data["campaigns"] = list(data.get("campaigns") or [])
    data["tags"] = list(data.get("tags") or [])
    return Subscriber.model_validate(data)


def _subscriber_to_args(subscriber: Subscriber) -> List[Any]:
    dumped = subscriber.model_dump()
    jsonable = subscriber.model_dump(mode="json")
    values = []
    for column in SUBSCRIBER_COLUMNS:
        if column in _JSON_COLUMNS:
            values.append(json.dumps(jsonable[column]) if jsonable[column] is not None else None)
        elif column in ("source", "status"):
            values.append(jsonable[column])
        else:
            values.append(dumped[column])
    return values


class _PostgresSubscriberTransaction(SubscriberTransaction):
    def __init__(self, connection: asyncpg.Connection):
        self.conn = connection

    async def find_by_email(self, tenant_id: str, email: str) -> Optional[Subscriber]:
        row = await self.conn.fetchrow(
            f"{_SELECT_SUBSCRIBER} WHERE tenant_id = $1 AND email = $2",
            tenant_id, normalize_email(email)
        )
        return _row_to_subscriber(row) if row else None

    async def get(self, tenant_id: str, subscriber_id: str) -> Optional[Subscriber]:
        row = await self.conn.fetchrow(
            f"{_SELECT_SUBSCRIBER} WHERE tenant_id = $1 AND id = $2",
            tenant_id, subscriber_id
        )
        return _row_to_subscriber(row) if row else None

    async def insert(self, subscriber: Subscriber) -> None:
        placeholders = ", ".join(f"${i}" for i in range(1, len(SUBSCRIBER_COLUMNS) + 1))
        try:
            await self.conn.execute(
                f"INSERT INTO subscribers ({', '.join(SUBSCRIBER_COLUMNS)}) VALUES ({placeholders})",
                *_subscriber_to_args(subscriber)
            )
        except asyncpg.UniqueViolationError:
            logger.warning(f"Subscriber already exists: {subscriber.email} (tenant {subscriber.tenant_id})")
            raise DuplicateSubscriberRace(subscriber.tenant_id, subscriber.email)

    async def save(self, subscriber: Subscriber) -> None:
        columns = SUBSCRIBER_COLUMNS[1:]
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(columns, start=2))
        await self.conn.execute(
            f"UPDATE subscribers SET {assignments} WHERE id = $1",
            *_subscriber_to_args(subscriber)
        )

    async def remove(self, tenant_id: str, subscriber_id: str) -> None:
        await self.conn.execute(
            "DELETE FROM subscribers WHERE tenant_id = $1 AND id = $2",
            tenant_id, subscriber_id
        )

    async def apply_stats_delta(
        self, tenant_id: str, deltas: Dict[str, float], now: datetime
    ) -> None:
        unknown = set(deltas) - set(STATS_COUNTERS)
        if unknown:
            raise ValueError(f"Unknown stats counters: {sorted(unknown)}")

        await self.conn.execute(
            "INSERT INTO tenant_usage_stats (tenant_id, updated_at) VALUES ($1, $2) "
            "ON CONFLICT (tenant_id) DO NOTHING",
            tenant_id, now
        )
        fields = list(deltas)
        assignments = [f"{field} = {field} + ${i}" for i, field in enumerate(fields, start=3)]
        assignments.append("updated_at = $2")
        await self.conn.execute(
            f"UPDATE tenant_usage_stats SET {', '.join(assignments)} WHERE tenant_id = $1",
            tenant_id, now, *[deltas[field] for field in fields]
        )

    async def append_event(self, event: SubscriberEvent) -> None:
        await self.conn.execute("""
            INSERT INTO subscriber_events (
                id, tenant_id, subscriber_id, type, campaign_id, timestamp, metadata
            ) VALUES ($1, $2, $3, $4, $5, $6, $7)
        """,
            event.id, event.tenant_id, event.subscriber_id, event.type.value,
            event.campaign_id, event.timestamp,
            json.dumps(event.metadata) if event.metadata is not None else None
        )

    async def add_revenue(self, record: RevenueRecord) -> None:
        await self.conn.execute("""
            INSERT INTO revenue_records (
                id, tenant_id, subscriber_id, campaign_id, amount, currency, order_id, timestamp
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        """,
            record.id, record.tenant_id, record.subscriber_id, record.campaign_id,
            record.amount, record.currency, record.order_id, record.timestamp
        )


class _PostgresCreditTransaction(CreditTransaction):
    def __init__(self, connection: asyncpg.Connection, tenant_id: str,
                 balances: Dict[CreditKind, CreditBalance]):
        self.conn = connection
        self._tenant_id = tenant_id
        self._balances = balances

    async def get_balance(self, kind: CreditKind) -> CreditBalance:
        if kind not in self._balances:
            raise ValueError(f"{kind.value} credits are not locked by this transaction")
        return self._balances[kind].model_copy()

    async def save_balance(self, balance: CreditBalance) -> None:
        if balance.kind not in self._balances:
            raise ValueError(f"{balance.kind.value} credits are not locked by this transaction")
        await self.conn.execute("""
            UPDATE credit_balances
            SET allowance = $3, purchased_extra = $4, used_this_period = $5,
                period_started_at = $6, updated_at = CURRENT_TIMESTAMP
            WHERE tenant_id = $1 AND kind = $2
        """,
            balance.tenant_id, balance.kind.value, balance.allowance,
            balance.purchased_extra, balance.used_this_period, balance.period_started_at
        )
        self._balances[balance.kind] = balance.model_copy()

    async def append_log(self, entry: CreditLogEntry) -> None:
        await self.conn.execute("""
            INSERT INTO credit_logs (id, tenant_id, kind, amount, type, timestamp, metadata)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
        """,
            entry.id, entry.tenant_id, entry.kind.value if entry.kind else None,
            entry.amount, entry.type.value, entry.timestamp, json.dumps(entry.metadata)
        )


def _row_to_balance(row) -> CreditBalance:
    return CreditBalance(
        tenant_id=row['tenant_id'],
        kind=CreditKind(row['kind']),
        allowance=row['allowance'],
        purchased_extra=row['purchased_extra'],
        used_this_period=row['used_this_period'],
        period_started_at=row['period_started_at'],
    )


class PostgresBackend(StorageBackend):
    @asynccontextmanager
    async def _connection(self):
        try:
            connection = await get_db_connection()
        except TRANSIENT_ERRORS as e:
            logger.error(f"Failed to acquire database connection: {e}")
            raise StorageUnavailable() from e
        try:
            yield connection
        except TRANSIENT_ERRORS as e:
            logger.error(f"Database operation failed: {e}")
            raise StorageUnavailable() from e
        finally:
            await release_db_connection(connection)

    @asynccontextmanager
    async def subscriber_transaction(self, tenant_id: str, email: str):
        async with self._connection() as connection:
            async with connection.transaction():
                await connection.execute(
                    "SELECT pg_advisory_xact_lock(hashtextextended($1, 0))",
                    f"{tenant_id}:{normalize_email(email)}"
                )
                yield _PostgresSubscriberTransaction(connection)

    @asynccontextmanager
    async def credit_transaction(self, tenant_id: str, kinds: Sequence[CreditKind]):
        kind_values = sorted({kind.value for kind in kinds})
        async with self._connection() as connection:
            async with connection.transaction():
                await connection.execute("""
                    INSERT INTO credit_balances (tenant_id, kind)
                    SELECT $1, unnest($2::text[])
                    ON CONFLICT (tenant_id, kind) DO NOTHING
                """, tenant_id, kind_values)
                rows = await connection.fetch("""
                    SELECT tenant_id, kind, allowance, purchased_extra,
                           used_this_period, period_started_at
                    FROM credit_balances
                    WHERE tenant_id = $1 AND kind = ANY($2::text[])
                    ORDER BY kind
                    FOR UPDATE
                """, tenant_id, kind_values)
                balances = {CreditKind(row['kind']): _row_to_balance(row) for row in rows}
                yield _PostgresCreditTransaction(connection, tenant_id, balances)

    async def get_subscriber(self, tenant_id: str, subscriber_id: str) -> Optional[Subscriber]:
        async with self._connection() as connection:
            row = await connection.fetchrow(
                f"{_SELECT_SUBSCRIBER} WHERE tenant_id = $1 AND id = $2",
                tenant_id, subscriber_id
            )
            return _row_to_subscriber(row) if row else None

    async def find_subscriber(self, tenant_id: str, email: str) -> Optional[Subscriber]:
        async with self._connection() as connection:
            row = await connection.fetchrow(
                f"{_SELECT_SUBSCRIBER} WHERE tenant_id = $1 AND email = $2",
                tenant_id, normalize_email(email)
            )
            return _row_to_subscriber(row) if row else None

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
        page_sql, page_args, count_sql, count_args = build_list_query(
            tenant_id, status, search, sort_by, descending, offset, limit
        )
        async with self._connection() as connection:
            total = await connection.fetchval(count_sql, *count_args)
            rows = await connection.fetch(page_sql, *page_args)
            return [_row_to_subscriber(row) for row in rows], total

    async def get_stats(self, tenant_id: str) -> Optional[TenantUsageStats]:
        async with self._connection() as connection:
            row = await connection.fetchrow(
                f"SELECT tenant_id, {', '.join(STATS_COUNTERS)}, updated_at "
                "FROM tenant_usage_stats WHERE tenant_id = $1",
                tenant_id
            )
            return TenantUsageStats.model_validate(dict(row)) if row else None

    async def list_events(
        self, tenant_id: str, subscriber_id: Optional[str] = None
    ) -> List[SubscriberEvent]:
        query = """
            SELECT id, tenant_id, subscriber_id, type, campaign_id, timestamp, metadata
            FROM subscriber_events
            WHERE tenant_id = $1 AND ($2::text IS NULL OR subscriber_id = $2)
            ORDER BY seq
        """
        async with self._connection() as connection:
            rows = await connection.fetch(query, tenant_id, subscriber_id)
        events = []
        for row in rows:
            data = dict(row)
            data["metadata"] = json.loads(data["metadata"]) if data["metadata"] else None
            events.append(SubscriberEvent.model_validate(data))
        return events

    async def get_balances(self, tenant_id: str) -> Dict[CreditKind, CreditBalance]:
        async with self._connection() as connection:
            rows = await connection.fetch("""
                SELECT tenant_id, kind, allowance, purchased_extra,
                       used_this_period, period_started_at
                FROM credit_balances WHERE tenant_id = $1
            """, tenant_id)
        return {CreditKind(row['kind']): _row_to_balance(row) for row in rows}

    async def list_credit_logs(self, tenant_id: str, limit: int) -> List[CreditLogEntry]:
        async with self._connection() as connection:
            rows = await connection.fetch("""
                SELECT id, tenant_id, kind, amount, type, timestamp, metadata
                FROM credit_logs WHERE tenant_id = $1
                ORDER BY timestamp DESC
                LIMIT $2
            """, tenant_id, limit)
        entries = []
        for row in rows:
            data = dict(row)
            data["metadata"] = json.loads(data["metadata"]) if data["metadata"] else {}
            entries.append(CreditLogEntry.model_validate(data))
        return entries

    async def list_revenue(
        self, tenant_id: str, since: Optional[datetime] = None
    ) -> List[RevenueRecord]:
        async with self._connection() as connection:
            rows = await connection.fetch("""
                SELECT id, tenant_id, subscriber_id, campaign_id, amount, currency,
                       order_id, timestamp
                FROM revenue_records
                WHERE tenant_id = $1 AND ($2::timestamptz IS NULL OR timestamp >= $2)
            """, tenant_id, since)
        return [RevenueRecord.model_validate(dict(row)) for row in rows]

    async def get_delivery(self, campaign_id: str, subscriber_id: str) -> Optional[DeliveryRecord]:
        async with self._connection() as connection:
            row = await connection.fetchrow("""
                SELECT campaign_id, subscriber_id, tenant_id, email, subject, outcome,
                       message_id, error, recorded_at
                FROM campaign_deliveries
                WHERE campaign_id = $1 AND subscriber_id = $2
            """, campaign_id, subscriber_id)
            return DeliveryRecord.model_validate(dict(row)) if row else None

    async def claim_delivery(self, record: DeliveryRecord) -> bool:
        async with self._connection() as connection:
            claimed = await connection.fetchval("""
                INSERT INTO campaign_deliveries (
                    campaign_id, subscriber_id, tenant_id, email, subject, outcome,
                    message_id, error, recorded_at
                ) VALUES ($1, $2, $3, $4, $5, $6, NULL, NULL, $7)
                ON CONFLICT (campaign_id, subscriber_id) DO UPDATE SET
                    outcome = EXCLUDED.outcome,
                    message_id = NULL,
                    error = NULL,
                    recorded_at = EXCLUDED.recorded_at
                WHERE campaign_deliveries.outcome = ANY($8::text[])
                RETURNING TRUE
            """,
                record.campaign_id, record.subscriber_id, record.tenant_id, record.email,
                record.subject, record.outcome.value, record.recorded_at,
                [outcome.value for outcome in RECLAIMABLE_OUTCOMES]
            )
        return bool(claimed)

    async def save_delivery(self, record: DeliveryRecord) -> None:
        async with self._connection() as connection:
            await connection.execute("""
                INSERT INTO campaign_deliveries (
                    campaign_id, subscriber_id, tenant_id, email, subject, outcome,
                    message_id, error, recorded_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (campaign_id, subscriber_id) DO UPDATE SET
                    outcome = EXCLUDED.outcome,
                    message_id = EXCLUDED.message_id,
                    error = EXCLUDED.error,
                    recorded_at = EXCLUDED.recorded_at
            """,
                record.campaign_id, record.subscriber_id, record.tenant_id, record.email,
                record.subject, record.outcome.value, record.message_id, record.error,
                record.recorded_at
            )

    async def list_deliveries(self, campaign_id: str) -> List[DeliveryRecord]:
        async with self._connection() as connection:
            rows = await connection.fetch("""
                SELECT campaign_id, subscriber_id, tenant_id, email, subject, outcome,
                       message_id, error, recorded_at
                FROM campaign_deliveries WHERE campaign_id = $1
                ORDER BY recorded_at
            """, campaign_id)
        return [DeliveryRecord.model_validate(dict(row)) for row in rows]

    async def close(self) -> None:
        await DatabaseConnection.close_pool()
