"""
Payment-provider webhook handling with exactly-once application.
"""
