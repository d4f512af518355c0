"""
Ledger configuration loading.
"""
