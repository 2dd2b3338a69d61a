"""
Persistence package for the Accounts Ledger.

- base: the ``LedgerStore`` contract and the atomic ``WriteBatch``.
- memory: in-process store for local runs and tests.
- postgres: asyncpg store with conditional updates for optimistic concurrency.
"""
