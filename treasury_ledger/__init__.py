"""
Treasury Ledger

Money-movement core for a small treasury: fund accounts, a two-level
petty-cash hierarchy and fixed-term investor deposits, with Decimal money,
compensating multi-step writes and a hash-chained audit trail.
"""

__version__ = "1.0.0"
