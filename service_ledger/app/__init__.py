"""
Accounts Ledger service package.

This package decides whether a user may use one of the consumer apps
right now and keeps the account records that answer depends on. It
provides:

- app.main: API surface for accounts, access checks, coupons, admin and webhooks.
- app.domain: Data model, subscription state machine and entitlement resolver.
- app.ledger: Account commands with optimistic-concurrency retries.
- app.coupons: Coupon validation and atomic redemption.
- app.webhooks: Exactly-once application of payment-provider events.
- app.audit: Append-only audit history.
- app.auth: Administrative credentials (shared key or service tokens).
- app.cache: Redis cache for access decisions.
- app.persistence: In-memory and PostgreSQL stores.

Guidelines:
- Access checks are pure reads; never write on the read path.
- Every write is one atomic batch that includes its audit entry.
"""
