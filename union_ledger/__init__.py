"""
Union Ledger

Account ledger and loan amortization engine for a credit union: integer
minor-unit money, an append-only transaction log, per-account guards and a
hash-chained audit trail.
"""

__version__ = "1.0.0"
