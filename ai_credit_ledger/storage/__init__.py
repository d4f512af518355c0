"""
Storage layer: SQLite account store and append-only credit ledger.
"""
