"""
Bank Ledger Core

Account registry and ledger engine that move money between user-owned
accounts with exact decimal arithmetic, per-account atomicity and an
append-only transaction history.
"""

__version__ = "1.0.0"
