"""Balance reconciliation package."""

from fintrack.reconciliation.reconciler import BalanceReconciler, net_delta

__all__ = ["BalanceReconciler", "net_delta"]
