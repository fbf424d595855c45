"""LedgerMatch: inbox document ↔ bank transaction matching."""

__version__ = "0.1.0"
