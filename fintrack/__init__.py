"""
Fintrack - Transaction Engine Package

The ingestion, reconciliation and recurrence engine behind a personal
finance tracker: accounts, transactions, budgets and recurring bills.

DESIGN PRINCIPLES:
1. Re-importing the same statement never creates new transactions
2. An account balance always equals the signed sum of its transactions
3. Bad rows are reported, never silently dropped or "fixed"
4. Background work (recurrence, alerts) never fails a user request
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Fintrack Team"
