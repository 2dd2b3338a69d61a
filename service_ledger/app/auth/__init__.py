"""
Credential checks for administrative and webhook routes.
"""
