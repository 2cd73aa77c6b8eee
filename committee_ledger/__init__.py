"""
Committee Ledger

A rotating-savings and member-loan ledger. Balances, accrued interest and
arrears are replayed from append-only history as a pure function of an
explicit as-of instant, using Decimal money throughout.
"""

__version__ = "1.0.0"
