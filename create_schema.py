import asyncio
import asyncpg
import os
from dotenv import load_dotenv

load_dotenv()

async def create_schema():
    conn = await asyncpg.connect(os.getenv('DATABASE_URL'))

    # Create all tables
    tables_sql = '''
        -- Subscribers, one row per (tenant_id, email)
        CREATE TABLE IF NOT EXISTS subscribers (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            email TEXT NOT NULL,
            first_name TEXT,
            last_name TEXT,
            source VARCHAR(20) NOT NULL DEFAULT 'manual',
            status VARCHAR(20) NOT NULL DEFAULT 'active',
            campaigns TEXT[] NOT NULL DEFAULT '{}',
            tags TEXT[] NOT NULL DEFAULT '{}',
            custom_fields JSONB NOT NULL DEFAULT '{}',
            engagement_score DOUBLE PRECISION,
            last_engagement TIMESTAMPTZ,
            consent JSONB,
            utm_source TEXT,
            utm_medium TEXT,
            utm_campaign TEXT,
            ip_address TEXT,
            country TEXT,
            subscribed_at TIMESTAMPTZ NOT NULL,
            unsubscribed_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ,
            UNIQUE(tenant_id, email)
        );

        -- Append-only lifecycle and engagement events
        CREATE TABLE IF NOT EXISTS subscriber_events (
            seq BIGSERIAL UNIQUE,
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            subscriber_id TEXT NOT NULL,
            type VARCHAR(20) NOT NULL,
            campaign_id TEXT,
            timestamp TIMESTAMPTZ NOT NULL,
            metadata JSONB
        );

        CREATE TABLE IF NOT EXISTS tenant_usage_stats (
            tenant_id TEXT PRIMARY KEY,
            total_subscribers INTEGER NOT NULL DEFAULT 0,
            active_subscribers INTEGER NOT NULL DEFAULT 0,
            unsubscribed_subscribers INTEGER NOT NULL DEFAULT 0,
            bounced_subscribers INTEGER NOT NULL DEFAULT 0,
            complained_subscribers INTEGER NOT NULL DEFAULT 0,
            subscriber_growth INTEGER NOT NULL DEFAULT 0,
            total_revenue DOUBLE PRECISION NOT NULL DEFAULT 0,
            conversions INTEGER NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ
        );

        CREATE TABLE IF NOT EXISTS credit_balances (
            tenant_id TEXT NOT NULL,
            kind VARCHAR(10) NOT NULL,
            allowance INTEGER NOT NULL DEFAULT 0,
            purchased_extra INTEGER NOT NULL DEFAULT 0,
            used_this_period INTEGER NOT NULL DEFAULT 0,
            period_started_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(tenant_id, kind)
        );

        CREATE TABLE IF NOT EXISTS credit_logs (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            kind VARCHAR(10),
            amount INTEGER NOT NULL DEFAULT 0,
            type VARCHAR(10) NOT NULL,
            timestamp TIMESTAMPTZ NOT NULL,
            metadata JSONB
        );

        CREATE TABLE IF NOT EXISTS revenue_records (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            subscriber_id TEXT NOT NULL,
            campaign_id TEXT NOT NULL,
            amount DOUBLE PRECISION NOT NULL,
            currency VARCHAR(3) NOT NULL DEFAULT 'USD',
            order_id TEXT NOT NULL,
            timestamp TIMESTAMPTZ NOT NULL
        );

        -- Per-recipient send log; also what a resumed send pass reads
        CREATE TABLE IF NOT EXISTS campaign_deliveries (
            campaign_id TEXT NOT NULL,
            subscriber_id TEXT NOT NULL,
            tenant_id TEXT NOT NULL,
            email TEXT NOT NULL,
            subject TEXT NOT NULL,
            outcome VARCHAR(40) NOT NULL,
            message_id TEXT,
            error TEXT,
            recorded_at TIMESTAMPTZ NOT NULL,
            UNIQUE(campaign_id, subscriber_id)
        );

        CREATE INDEX IF NOT EXISTS idx_subscribers_tenant_status ON subscribers(tenant_id, status);
        CREATE INDEX IF NOT EXISTS idx_subscriber_events_tenant ON subscriber_events(tenant_id, subscriber_id);
        CREATE INDEX IF NOT EXISTS idx_credit_logs_tenant ON credit_logs(tenant_id, timestamp);
        CREATE INDEX IF NOT EXISTS idx_revenue_records_tenant ON revenue_records(tenant_id, timestamp);
    '''

    await conn.execute(tables_sql)
    print("Created all database tables")

    await conn.close()
    return True

if __name__ == "__main__":
    success = asyncio.run(create_schema())
    print("✅ Schema creation completed!" if success else "❌ Schema creation failed!")
