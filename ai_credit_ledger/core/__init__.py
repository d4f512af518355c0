"""
Core modules for AI Credit Ledger.

This package contains the ledger engine, the daily-spend gate, pricing,
and the chat and image settlement orchestrators.
"""
