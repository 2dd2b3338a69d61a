"""
Domain package.

Holds the ledger's data model and the two pieces of pure logic every
other module leans on:

- models: Account, Coupon and sync rows plus request/response shapes.
- state_machine: effective status derivation and provider status mapping.
- resolver: the per-app access decision.

Nothing in this package performs I/O.
"""
