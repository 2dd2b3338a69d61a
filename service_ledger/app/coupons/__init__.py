"""
Coupon registry and redemption engine.
"""
