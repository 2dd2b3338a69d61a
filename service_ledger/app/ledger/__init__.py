"""
Account ledger: signup, entitlement edits, lifecycle and administration.
"""
