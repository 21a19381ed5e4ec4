"""Insulin ledger.

Dose reconciliation, insulin-on-board integration and incremental,
tombstone-aware event ledgers for an automated insulin-dosing platform.
"""

__version__ = "0.1.0"
