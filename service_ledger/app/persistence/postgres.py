"""
PostgreSQL ledger store.

One transaction per batch. Guards are expressed as conditional statements
(``WHERE version = $n``, ``WHERE usage_count = $n``) and provider event
dedupe rests on a partial unique index, so concurrent service instances
stay consistent without application-level locks.
"""

import json
from typing import List, Optional

import asyncpg
from shared.errors import (
    AlreadyExistsError, ConcurrencyConflict, DuplicateEventError, NotFoundError, ServiceError,
)
from shared.logging import get_logger
from .base import LedgerStore, WriteBatch
from ..audit.events import AuditEvent, dump_event_data, load_event_data
from ..domain.models import (
    Account, AppSyncRecord, BillingInterval, Coupon, CouponType, SubscriptionStatus, SyncStatus,
)


_ACCOUNT_COLUMNS = """
    id, email, name, subscription_status, trial_started_at, trial_expires_at,
    subscription_ends_at, billing_interval, entitled_apps, onboarding_completed,
    payment_customer_ref, payment_subscription_ref, coupon_code, coupon_redeemed_at,
    created_at, last_login_at, version
"""


class PostgresLedgerStore(LedgerStore):
    """asyncpg-backed store."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger("ledger.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30,
                init=self._init_connection,
            )
            await self._create_tables()
            self.logger.info("PostgreSQL ledger store started")
        except (OSError, asyncpg.PostgresError) as e:
            self.logger.error("Failed to start PostgreSQL ledger store", error=str(e))
            raise ServiceError("Failed to start PostgreSQL ledger store", {"error": str(e)})

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL ledger store stopped")

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (OSError, asyncpg.PostgresError) as e:
            self.logger.error("PostgreSQL health check failed", error=str(e))
            return False

    @staticmethod
    async def _init_connection(conn):
        await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    id VARCHAR(64) PRIMARY KEY,
                    email VARCHAR(320) NOT NULL UNIQUE,
                    name TEXT,
                    subscription_status VARCHAR(20) NOT NULL,
                    trial_started_at TIMESTAMP WITH TIME ZONE,
                    trial_expires_at TIMESTAMP WITH TIME ZONE,
                    subscription_ends_at TIMESTAMP WITH TIME ZONE,
                    billing_interval VARCHAR(10),
                    entitled_apps TEXT[] NOT NULL DEFAULT '{}',
                    onboarding_completed JSONB NOT NULL DEFAULT '{}',
                    payment_customer_ref VARCHAR(255),
                    payment_subscription_ref VARCHAR(255),
                    coupon_code VARCHAR(64),
                    coupon_redeemed_at TIMESTAMP WITH TIME ZONE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    last_login_at TIMESTAMP WITH TIME ZONE,
                    version INTEGER NOT NULL DEFAULT 1
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS coupons (
                    code VARCHAR(64) PRIMARY KEY,
                    type VARCHAR(20) NOT NULL,
                    active BOOLEAN NOT NULL DEFAULT TRUE,
                    expires_at TIMESTAMP WITH TIME ZONE,
                    usage_limit INTEGER,
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    granted_apps TEXT[],
                    trial_days INTEGER,
                    description TEXT,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    CHECK (usage_limit IS NULL OR usage_count <= usage_limit)
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_events (
                    id VARCHAR(64) PRIMARY KEY,
                    account_id VARCHAR(64),
                    email VARCHAR(320),
                    event_type VARCHAR(64) NOT NULL,
                    event_data JSONB NOT NULL,
                    subscription_status VARCHAR(20),
                    provider_event_id VARCHAR(255),
                    error_message TEXT,
                    timestamp TIMESTAMP WITH TIME ZONE NOT NULL
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS app_sync_status (
                    account_id VARCHAR(64) NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
                    app VARCHAR(64) NOT NULL,
                    sync_status VARCHAR(20) NOT NULL,
                    last_synced_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    app_user_id VARCHAR(255),
                    last_error TEXT,
                    PRIMARY KEY (account_id, app)
                );
            """)

            # Create indexes
            await conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_audit_provider_event
                ON audit_events(provider_event_id) WHERE provider_event_id IS NOT NULL;
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_account ON audit_events(account_id, timestamp);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_email ON audit_events(email, timestamp);
            """)

    async def get_account(self, account_id: str) -> Optional[Account]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE id = $1", account_id)
        return self._row_to_account(row) if row else None

    async def get_account_by_email(self, email: str) -> Optional[Account]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE email = $1", email)
        return self._row_to_account(row) if row else None

    async def list_accounts(self) -> List[Account]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts ORDER BY created_at")
        return [self._row_to_account(row) for row in rows]

    async def get_coupon(self, code: str) -> Optional[Coupon]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM coupons WHERE code = $1", code)
        return self._row_to_coupon(row) if row else None

    async def get_event_by_provider_id(self, event_id: str) -> Optional[AuditEvent]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM audit_events WHERE provider_event_id = $1", event_id)
        return self._row_to_event(row) if row else None

    async def events_for_account(self, account_id: str) -> List[AuditEvent]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM audit_events WHERE account_id = $1 ORDER BY timestamp", account_id)
        return [self._row_to_event(row) for row in rows]

    async def events_for_email(self, email: str) -> List[AuditEvent]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM audit_events WHERE email = $1 ORDER BY timestamp", email)
        return [self._row_to_event(row) for row in rows]

    async def sync_records(self, account_id: str) -> List[AppSyncRecord]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM app_sync_status WHERE account_id = $1 ORDER BY app", account_id)
        return [
            AppSyncRecord(
                account_id=row["account_id"],
                app=row["app"],
                sync_status=SyncStatus(row["sync_status"]),
                last_synced_at=row["last_synced_at"],
                app_user_id=row["app_user_id"],
                last_error=row["last_error"],
            )
            for row in rows
        ]

    async def commit(self, batch: WriteBatch) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for account in batch.new_accounts:
                    await self._insert_account(conn, account)
                for account in batch.account_updates:
                    await self._update_account(conn, account)
                for coupon in batch.new_coupons:
                    await self._insert_coupon(conn, coupon)
                for code, expected in batch.coupon_claims:
                    claimed = await conn.fetchval("""
                        UPDATE coupons SET usage_count = usage_count + 1
                        WHERE code = $1 AND usage_count = $2
                        RETURNING usage_count
                    """, code, expected)
                    if claimed is None:
                        raise ConcurrencyConflict("Coupon usage changed since it was read",
                                                  {"code": code, "expected_usage_count": expected})
                for code, active in batch.coupon_toggles:
                    status = await conn.execute("UPDATE coupons SET active = $2 WHERE code = $1", code, active)
                    if status.endswith(" 0"):
                        raise NotFoundError("Coupon not found", {"code": code})
                for record in batch.sync_upserts:
                    await conn.execute("""
                        INSERT INTO app_sync_status (
                            account_id, app, sync_status, last_synced_at, app_user_id, last_error
                        ) VALUES ($1, $2, $3, $4, $5, $6)
                        ON CONFLICT (account_id, app) DO UPDATE SET
                            sync_status = EXCLUDED.sync_status,
                            last_synced_at = EXCLUDED.last_synced_at,
                            app_user_id = COALESCE(EXCLUDED.app_user_id, app_sync_status.app_user_id),
                            last_error = EXCLUDED.last_error
                    """, record.account_id, record.app, record.sync_status.value,
                        record.last_synced_at, record.app_user_id, record.last_error)
                for event in batch.events:
                    await self._insert_event(conn, event)
                for account in batch.account_deletes:
                    status = await conn.execute(
                        "DELETE FROM accounts WHERE id = $1 AND version = $2", account.id, account.version)
                    if status.endswith(" 0"):
                        raise ConcurrencyConflict("Account changed since it was read",
                                                  {"account_id": account.id})

    async def _insert_account(self, conn, account: Account):
        inserted = await conn.fetchval("""
            INSERT INTO accounts (
                id, email, name, subscription_status, trial_started_at, trial_expires_at,
                subscription_ends_at, billing_interval, entitled_apps, onboarding_completed,
                payment_customer_ref, payment_subscription_ref, coupon_code, coupon_redeemed_at,
                created_at, last_login_at, version
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, 1)
            ON CONFLICT (email) DO NOTHING
            RETURNING id
        """, *self._account_values(account))
        if inserted is None:
            raise AlreadyExistsError("Account already exists", {"email": account.email})

    async def _update_account(self, conn, account: Account):
        new_version = await conn.fetchval("""
            UPDATE accounts SET
                email = $2, name = $3, subscription_status = $4, trial_started_at = $5,
                trial_expires_at = $6, subscription_ends_at = $7, billing_interval = $8,
                entitled_apps = $9, onboarding_completed = $10, payment_customer_ref = $11,
                payment_subscription_ref = $12, coupon_code = $13, coupon_redeemed_at = $14,
                created_at = $15, last_login_at = $16, version = version + 1
            WHERE id = $1 AND version = $17
            RETURNING version
        """, *self._account_values(account), account.version)
        if new_version is None:
            raise ConcurrencyConflict("Account changed since it was read",
                                      {"account_id": account.id, "expected_version": account.version})

    async def _insert_coupon(self, conn, coupon: Coupon):
        inserted = await conn.fetchval("""
            INSERT INTO coupons (
                code, type, active, expires_at, usage_limit, usage_count,
                granted_apps, trial_days, description, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT (code) DO NOTHING
            RETURNING code
        """, coupon.code, coupon.type.value, coupon.active, coupon.expires_at, coupon.usage_limit,
            coupon.usage_count,
            sorted(coupon.granted_apps) if coupon.granted_apps is not None else None,
            coupon.trial_days, coupon.description, coupon.created_at)
        if inserted is None:
            raise AlreadyExistsError("Coupon already exists", {"code": coupon.code})

    async def _insert_event(self, conn, event: AuditEvent):
        inserted = await conn.fetchval("""
            INSERT INTO audit_events (
                id, account_id, email, event_type, event_data, subscription_status,
                provider_event_id, error_message, timestamp
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (provider_event_id) WHERE provider_event_id IS NOT NULL DO NOTHING
            RETURNING id
        """, event.id, event.account_id, event.email, event.event_type, dump_event_data(event.data),
            event.subscription_status, event.provider_event_id, event.error_message, event.timestamp)
        if inserted is None:
            raise DuplicateEventError(event.provider_event_id)

    @staticmethod
    def _account_values(account: Account) -> tuple:
        return (
            account.id, account.email, account.name, account.subscription_status.value,
            account.trial_started_at, account.trial_expires_at, account.subscription_ends_at,
            account.billing_interval.value if account.billing_interval else None,
            sorted(account.entitled_apps), account.onboarding_completed,
            account.payment_customer_ref, account.payment_subscription_ref,
            account.coupon_code, account.coupon_redeemed_at,
            account.created_at, account.last_login_at,
        )

    def _row_to_account(self, row) -> Account:
        """Convert database row to Account object."""
        return Account(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            subscription_status=SubscriptionStatus(row["subscription_status"]),
            trial_started_at=row["trial_started_at"],
            trial_expires_at=row["trial_expires_at"],
            subscription_ends_at=row["subscription_ends_at"],
            billing_interval=BillingInterval(row["billing_interval"]) if row["billing_interval"] else None,
            entitled_apps=set(row["entitled_apps"] or []),
            onboarding_completed=dict(row["onboarding_completed"] or {}),
            payment_customer_ref=row["payment_customer_ref"],
            payment_subscription_ref=row["payment_subscription_ref"],
            coupon_code=row["coupon_code"],
            coupon_redeemed_at=row["coupon_redeemed_at"],
            created_at=row["created_at"],
            last_login_at=row["last_login_at"],
            version=row["version"],
        )

    def _row_to_coupon(self, row) -> Coupon:
        return Coupon(
            code=row["code"],
            type=CouponType(row["type"]),
            active=row["active"],
            expires_at=row["expires_at"],
            usage_limit=row["usage_limit"],
            usage_count=row["usage_count"],
            granted_apps=set(row["granted_apps"]) if row["granted_apps"] is not None else None,
            trial_days=row["trial_days"],
            description=row["description"],
            created_at=row["created_at"],
        )

    def _row_to_event(self, row) -> AuditEvent:
        return AuditEvent(
            id=row["id"],
            data=load_event_data(row["event_data"]),
            timestamp=row["timestamp"],
            account_id=row["account_id"],
            email=row["email"],
            subscription_status=row["subscription_status"],
            provider_event_id=row["provider_event_id"],
            error_message=row["error_message"],
        )
