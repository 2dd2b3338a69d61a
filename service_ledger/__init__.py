"""
Accounts Ledger service.
"""
