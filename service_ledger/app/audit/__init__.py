"""
Audit package for the Accounts Ledger.

Append-only history of every state change: typed event payloads
(``events``) and the facade that builds and queries them (``log``).
"""
