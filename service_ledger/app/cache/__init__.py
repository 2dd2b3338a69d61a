"""
Cache package for the Accounts Ledger.

Provides a Redis-backed cache of access decisions whose TTLs are capped
at the next instant a decision can change without a write.
"""
