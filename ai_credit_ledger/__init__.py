"""
AI Credit Ledger.

Credit reservation and settlement for metered AI operations.
"""
